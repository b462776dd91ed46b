"""Build completion notifications.

The orchestrator hands a BuildEvent to a Notifier whenever a build
reaches completed or failed. Delivery (push, email, websockets) belongs
to the notifier implementation.
"""

import logging
from typing import Protocol

from appbuilder.types import BuildEvent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Receives build completion and failure events."""

    def notify(self, event: BuildEvent) -> None: ...


class LoggingNotifier:
    """Notifier that records events in the log."""

    def notify(self, event: BuildEvent) -> None:
        if event.error:
            logger.info("Build %s %s: %s", event.build_id, event.status, event.error)
        else:
            logger.info(
                "Build %s %s (download: %s)",
                event.build_id,
                event.status,
                event.download_url,
            )


__all__ = ["LoggingNotifier", "Notifier"]
