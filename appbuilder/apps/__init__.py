"""App snapshot module.

This module handles:
- App, page and component snapshot schemas
- Build request validation
- Loading app definitions through an AppRepository
"""

from appbuilder.apps.schema import (
    AppConfig,
    AppPage,
    AppSnapshot,
    BuildRequest,
    PageComponent,
)

__all__ = ["AppConfig", "AppPage", "AppSnapshot", "BuildRequest", "PageComponent"]
