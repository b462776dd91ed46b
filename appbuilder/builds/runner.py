"""Platform build runner.

This module handles:
- Composing ``docker run`` commands for isolated builds
- Spawning and supervising build containers
- Tracking active builds in a lock-guarded registry
- Detecting completion (exit event, with interval polling as fallback)
- Parsing best-effort progress from build output
- Enforcing wall-clock timeouts and cooperative-then-forced cancellation

A manager never touches build records. Every started build produces
exactly one BuildOutcome through its completion callback, whichever of
process exit, timeout or cancellation happens first.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from appbuilder.builds.artifacts import find_build_output
from appbuilder.errors import (
    BuildCancelledError,
    BuildEngineError,
    BuildFailureError,
    BuildTimeoutError,
    ProcessSpawnError,
)
from appbuilder.types import BuildOutcome, BuildProgress

if TYPE_CHECKING:
    from appbuilder.config import Settings

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[BuildOutcome], None]
ProgressCallback = Callable[[BuildProgress], None]

# Lines of build output kept for failure messages
OUTPUT_TAIL_LINES = 20

# Seconds to wait for ``docker kill``
DOCKER_KILL_TIMEOUT = 5


@dataclass
class BuildOptions:
    """Options for one platform build.

    Attributes:
        build_id: Build identifier; names the container and output file.
        build_type: Build type value.
        build_mode: debug or release.
        app_name: Sanitized app name.
        project_path: Staging directory, mounted read-only.
        output_path: Output directory, mounted read-write.
        timeout: Wall-clock timeout in seconds (None = manager default).
        bundle_id: iOS bundle identifier.
        team_id: iOS signing team.
        provisioning_profile: iOS provisioning profile name.
        env: Extra environment variables for the build container.
    """

    build_id: str
    build_type: str
    build_mode: str
    app_name: str
    project_path: Path
    output_path: Path
    timeout: float | None = None
    bundle_id: str | None = None
    team_id: str | None = None
    provisioning_profile: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ActiveBuildProcess:
    """A running build container.

    Attributes:
        build_id: Build identifier.
        process: The ``docker run`` client process.
        container_name: Name of the container.
        started_at: Monotonic start time.
        timer: Timeout timer.
        output_tail: Last lines of combined output.
    """

    build_id: str
    process: subprocess.Popen[str]
    container_name: str
    started_at: float
    timer: threading.Timer | None = None
    output_tail: deque[str] = field(
        default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES)
    )


@dataclass
class _PendingCompletion:
    options: BuildOptions
    on_complete: CompletionCallback
    on_progress: ProgressCallback | None = None
    exit_code: int | None = None
    output_tail: list[str] = field(default_factory=list)


class ActiveBuildRegistry:
    """Lock-guarded map of build_id to ActiveBuildProcess.

    The lock is re-entrant and exposed so the owning manager can make
    compound updates atomic with respect to its poll loop.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._entries: dict[str, ActiveBuildProcess] = {}

    def add(self, entry: ActiveBuildProcess) -> None:
        """Register an entry.

        Raises:
            ProcessSpawnError: If the build_id is already registered.
        """
        with self.lock:
            if entry.build_id in self._entries:
                raise ProcessSpawnError(f"Build {entry.build_id} is already active")
            self._entries[entry.build_id] = entry

    def get(self, build_id: str) -> ActiveBuildProcess | None:
        with self.lock:
            return self._entries.get(build_id)

    def remove(
        self, build_id: str, entry: ActiveBuildProcess | None = None
    ) -> ActiveBuildProcess | None:
        """Remove and return an entry.

        Args:
            build_id: Build identifier.
            entry: If given, only remove when the registered entry is this one.

        Returns:
            The removed entry, or None if nothing was removed.
        """
        with self.lock:
            current = self._entries.get(build_id)
            if current is None or (entry is not None and current is not entry):
                return None
            return self._entries.pop(build_id)

    def build_ids(self) -> list[str]:
        with self.lock:
            return list(self._entries)

    def __contains__(self, build_id: object) -> bool:
        with self.lock:
            return build_id in self._entries

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)


class PlatformBuildManager:
    """Runs builds as isolated containers.

    Subclasses choose the image, resource caps, timeouts, container
    naming and progress markers for their platform.
    """

    platform_name = "container"
    container_prefix = "appbuilder-build"
    default_timeout: float = 15 * 60
    default_poll_interval: float = 5.0
    memory = "2g"
    cpus = 2

    # (substring, progress, message) checked in order
    progress_markers: tuple[tuple[str, int, str], ...] = ()

    def __init__(
        self,
        docker_bin: str = "docker",
        timeout: float | None = None,
        poll_interval: float | None = None,
        kill_grace_period: float = 5.0,
    ) -> None:
        self.docker_bin = docker_bin
        self.timeout = timeout if timeout is not None else self.default_timeout
        self.poll_interval = (
            poll_interval if poll_interval is not None else self.default_poll_interval
        )
        self.kill_grace_period = kill_grace_period
        self.registry = ActiveBuildRegistry()
        self._pending: dict[str, _PendingCompletion] = {}
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._poll_thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> PlatformBuildManager:
        """Create a manager configured from settings."""
        raise NotImplementedError

    # Command composition

    def image_for(self, options: BuildOptions) -> str:
        """Return the container image for a build."""
        raise NotImplementedError

    def container_name(self, options: BuildOptions) -> str:
        """Return the container name for a build."""
        return f"{self.container_prefix}-{options.build_id}"

    def build_env(self, options: BuildOptions) -> dict[str, str]:
        """Return environment variables passed into the container."""
        env = {
            "BUILD_TYPE": options.build_type,
            "BUILD_MODE": options.build_mode,
            "APP_NAME": options.app_name,
            "BUILD_ID": options.build_id,
        }
        env.update(options.env)
        return env

    def compose_command(self, options: BuildOptions) -> list[str]:
        """Compose the ``docker run`` command for a build.

        The staging tree is mounted read-only at /workspace and the
        output directory read-write at /output.

        Args:
            options: Build options.

        Returns:
            Command as list of strings suitable for subprocess.
        """
        cmd = [
            self.docker_bin,
            "run",
            "--rm",
            "--name",
            self.container_name(options),
            "-v",
            f"{options.project_path}:/workspace:ro",
            "-v",
            f"{options.output_path}:/output",
        ]
        for key, value in self.build_env(options).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(f"--memory={self.memory}")
        cmd.append(f"--cpus={self.cpus}")
        cmd.append(self.image_for(options))
        return cmd

    # Lifecycle

    def start_build(
        self,
        options: BuildOptions,
        on_complete: CompletionCallback,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Spawn a build container and start supervising it.

        Returns as soon as the process is running; the outcome arrives
        later through ``on_complete``.

        Args:
            options: Build options.
            on_complete: Called exactly once with the build outcome.
            on_progress: Called with best-effort progress updates.

        Raises:
            ProcessSpawnError: If the container process cannot be started.
        """
        build_id = options.build_id
        if build_id in self.registry:
            raise ProcessSpawnError(f"Build {build_id} is already active")

        options.output_path.mkdir(parents=True, exist_ok=True)
        cmd = self.compose_command(options)
        logger.info(
            "Starting %s build %s: %s",
            self.platform_name,
            build_id,
            " ".join(cmd),
        )

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start build engine: {e}") from e

        entry = ActiveBuildProcess(
            build_id=build_id,
            process=process,
            container_name=self.container_name(options),
            started_at=time.monotonic(),
        )
        timeout = options.timeout if options.timeout is not None else self.timeout

        with self.registry.lock:
            try:
                self.registry.add(entry)
            except ProcessSpawnError:
                # The container name belongs to the registered build
                logger.error("Build %s started twice, killing the duplicate", build_id)
                process.kill()
                process.wait()
                raise
            self._pending[build_id] = _PendingCompletion(
                options=options, on_complete=on_complete, on_progress=on_progress
            )
            entry.timer = threading.Timer(
                timeout, self._on_timeout, args=(build_id, timeout)
            )
            entry.timer.daemon = True
            entry.timer.start()

        reader = threading.Thread(
            target=self._consume_output,
            args=(entry,),
            name=f"build-output-{build_id}",
            daemon=True,
        )
        reader.start()
        self._ensure_poll_loop()

        self._emit_progress(
            on_progress,
            BuildProgress(
                build_id=build_id,
                status="starting",
                progress=5,
                message=f"Starting {self.platform_name} build...",
            ),
        )

    def cancel_build(self, build_id: str, reason: str = "cancelled") -> bool:
        """Cancel a running build.

        Kills the container, sends SIGTERM to the client process and
        escalates to SIGKILL after the grace period. The failure outcome
        is reported through the build's completion callback.

        Args:
            build_id: Build identifier.
            reason: Short reason included in the failure message.

        Returns:
            True if an active build was cancelled, False if none was active.
        """
        with self.registry.lock:
            entry = self.registry.remove(build_id)
            if entry is None:
                return False
            pending = self._pending.pop(build_id, None)

        logger.info("Cancelling %s build %s: %s", self.platform_name, build_id, reason)
        if entry.timer is not None:
            entry.timer.cancel()
        self._kill_container(entry.container_name)
        self._terminate(entry.process)

        if pending is not None:
            self._emit_progress(
                pending.on_progress,
                BuildProgress(
                    build_id=build_id,
                    status="failed",
                    progress=0,
                    message=f"Build {reason}",
                    error=f"Build was {reason}",
                ),
            )
            self._report(
                pending,
                self._failure(build_id, self._cancel_error(reason, entry)),
            )
        return True

    def get_active_builds(self) -> list[str]:
        """Return the build_ids of all running builds."""
        return self.registry.build_ids()

    def shutdown(self, cancel_active: bool = True) -> None:
        """Stop the poll loop, optionally cancelling running builds."""
        if cancel_active:
            for build_id in self.get_active_builds():
                self.cancel_build(build_id, "shutdown")
        self._stopped.set()
        self._wake.set()
        thread = self._poll_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval + 1)

    # Completion detection

    def poll_once(self) -> int:
        """Resolve builds whose process is no longer registered.

        Returns:
            Number of builds reported.
        """
        with self.registry.lock:
            finished = [bid for bid in self._pending if bid not in self.registry]
            completions = [self._pending.pop(bid) for bid in finished]

        for pending in completions:
            outcome = self._resolve(pending)
            self._report(pending, outcome)
        return len(completions)

    def _poll_loop(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self.poll_interval)
            self._wake.clear()
            self.poll_once()

    def _ensure_poll_loop(self) -> None:
        with self.registry.lock:
            if self._poll_thread is not None and self._poll_thread.is_alive():
                return
            self._stopped.clear()
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                name=f"{self.platform_name}-build-poll",
                daemon=True,
            )
            self._poll_thread.start()

    def _consume_output(self, entry: ActiveBuildProcess) -> None:
        with self.registry.lock:
            pending = self._pending.get(entry.build_id)
        on_progress = pending.on_progress if pending else None

        stdout = entry.process.stdout
        if stdout is not None:
            for raw_line in stdout:
                line = raw_line.rstrip()
                if not line:
                    continue
                entry.output_tail.append(line)
                logger.debug("Build %s: %s", entry.build_id, line)
                parsed = self.parse_progress(line)
                if parsed is not None:
                    progress, message = parsed
                    self._emit_progress(
                        on_progress,
                        BuildProgress(
                            build_id=entry.build_id,
                            status="building",
                            progress=progress,
                            message=message,
                        ),
                    )
        exit_code = entry.process.wait()
        self._on_process_exit(entry, exit_code)

    def _on_process_exit(self, entry: ActiveBuildProcess, exit_code: int) -> None:
        with self.registry.lock:
            if self.registry.remove(entry.build_id, entry) is None:
                return  # already cancelled
            pending = self._pending.get(entry.build_id)
            if pending is not None:
                pending.exit_code = exit_code
                pending.output_tail = list(entry.output_tail)
        if entry.timer is not None:
            entry.timer.cancel()
        duration = time.monotonic() - entry.started_at
        logger.info(
            "Build %s process exited with code %d after %.1fs",
            entry.build_id,
            exit_code,
            duration,
        )
        self._wake.set()

    def _resolve(self, pending: _PendingCompletion) -> BuildOutcome:
        options = pending.options
        if pending.exit_code not in (None, 0):
            tail = "\n".join(pending.output_tail[-5:])
            message = f"Build failed with exit code {pending.exit_code}"
            if tail:
                message = f"{message}\n{tail}"
            logger.error("Build %s failed: %s", options.build_id, message)
            return self._failure(
                options.build_id,
                BuildFailureError(message, exit_code=pending.exit_code),
            )

        output_file = find_build_output(
            options.output_path, options.build_id, options.build_type
        )
        if output_file is None:
            logger.error(
                "Build %s completed but no output file found", options.build_id
            )
            return self._failure(
                options.build_id,
                BuildFailureError("Build completed but no output file found"),
            )

        logger.info(
            "Build %s produced %s (%d bytes)",
            options.build_id,
            output_file.name,
            output_file.stat().st_size,
        )
        self._emit_progress(
            pending.on_progress,
            BuildProgress(
                build_id=options.build_id,
                status="completed",
                progress=100,
                message="Build completed successfully",
            ),
        )
        return BuildOutcome(
            build_id=options.build_id, success=True, output_file=output_file
        )

    @staticmethod
    def _failure(build_id: str, error: BuildEngineError) -> BuildOutcome:
        return BuildOutcome(
            build_id=build_id, success=False, error=str(error), error_code=error.code
        )

    def _report(self, pending: _PendingCompletion, outcome: BuildOutcome) -> None:
        try:
            pending.on_complete(outcome)
        except Exception:
            logger.exception("Completion callback failed for %s", outcome.build_id)

    # Timeout and termination

    def _on_timeout(self, build_id: str, timeout: float) -> None:
        logger.warning("Build %s exceeded timeout of %ss", build_id, timeout)
        self.cancel_build(build_id, "timeout")

    def _cancel_error(
        self, reason: str, entry: ActiveBuildProcess
    ) -> BuildEngineError:
        elapsed = int(time.monotonic() - entry.started_at)
        if reason == "timeout":
            return BuildTimeoutError(
                f"Build timeout after {elapsed} seconds", timeout=elapsed
            )
        return BuildCancelledError(f"Build {reason}", reason=reason)

    def _kill_container(self, container_name: str) -> None:
        try:
            subprocess.run(
                [self.docker_bin, "kill", container_name],
                capture_output=True,
                timeout=DOCKER_KILL_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            # The container may already be gone
            logger.warning("Failed to kill container %s: %s", container_name, e)

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        killer = threading.Timer(
            self.kill_grace_period, self._force_kill, args=(process,)
        )
        killer.daemon = True
        killer.start()

    @staticmethod
    def _force_kill(process: subprocess.Popen[str]) -> None:
        if process.poll() is None:
            logger.warning("Process %d ignored SIGTERM, sending SIGKILL", process.pid)
            process.kill()

    # Progress

    def parse_progress(self, line: str) -> tuple[int, str] | None:
        """Map a line of build output to a coarse progress milestone.

        Args:
            line: One line of build output.

        Returns:
            Tuple of (progress 0-100, message), or None for other lines.
        """
        for marker, progress, message in self.progress_markers:
            if marker in line:
                return progress, message
        return None

    def _emit_progress(
        self, on_progress: ProgressCallback | None, progress: BuildProgress
    ) -> None:
        logger.debug(
            "Build %s progress: %s %d%% %s",
            progress.build_id,
            progress.status,
            progress.progress,
            progress.message,
        )
        if on_progress is None:
            return
        try:
            on_progress(progress)
        except Exception:
            logger.exception("Progress callback failed for %s", progress.build_id)


__all__ = [
    "ActiveBuildProcess",
    "ActiveBuildRegistry",
    "BuildOptions",
    "CompletionCallback",
    "PlatformBuildManager",
    "ProgressCallback",
]
