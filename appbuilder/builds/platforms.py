"""Platform-specific build managers.

This module handles:
- Android and source builds in the Flutter builder container
- iOS builds, either on a local macOS host or through a cloud builder
- Builder image inspection and creation
- iOS toolchain and credential checks
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from appbuilder.builds.runner import BuildOptions, PlatformBuildManager
from appbuilder.errors import ProcessSpawnError

if TYPE_CHECKING:
    from appbuilder.config import Settings

logger = logging.getLogger(__name__)

# Seconds allowed for ``docker build`` of a builder image
IMAGE_BUILD_TIMEOUT = 30 * 60


class ContainerBuildManager(PlatformBuildManager):
    """Runs Android and source builds in the Flutter builder container."""

    platform_name = "container"
    container_prefix = "appbuilder-build"
    default_timeout = 15 * 60
    default_poll_interval = 5.0

    progress_markers = (
        ("Getting Flutter dependencies", 20, "Getting dependencies..."),
        ("Starting Flutter build", 30, "Starting build process..."),
        ("Running Gradle task", 50, "Compiling Android code..."),
        ("Built build/app/outputs", 90, "Finalizing build..."),
        ("Build completed successfully", 100, "Build completed!"),
    )

    def __init__(
        self,
        image: str = "appbuilder/flutter-builder:latest",
        memory: str = "2g",
        cpus: int = 2,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.image = image
        self.memory = memory
        self.cpus = cpus

    @classmethod
    def from_settings(cls, settings: Settings) -> ContainerBuildManager:
        return cls(
            image=settings.container_image,
            memory=settings.container_memory,
            cpus=settings.container_cpus,
            timeout=settings.build_timeout,
            poll_interval=settings.poll_interval,
            kill_grace_period=settings.kill_grace_period,
        )

    def image_for(self, options: BuildOptions) -> str:
        return self.image

    def check_image(self) -> bool:
        """Check whether the builder image is present locally."""
        try:
            result = subprocess.run(
                [self.docker_bin, "image", "inspect", self.image],
                capture_output=True,
                timeout=30,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not inspect image %s: %s", self.image, e)
            return False
        return result.returncode == 0

    def ensure_image(self, context_dir: Path) -> bool:
        """Build the builder image from ``context_dir`` if it is missing.

        Args:
            context_dir: Docker build context containing a Dockerfile.

        Returns:
            True if the image was built, False if it already existed.

        Raises:
            ProcessSpawnError: If the image build fails.
        """
        if self.check_image():
            return False

        logger.info("Building builder image %s from %s", self.image, context_dir)
        try:
            result = subprocess.run(
                [self.docker_bin, "build", "-t", self.image, str(context_dir)],
                capture_output=True,
                text=True,
                timeout=IMAGE_BUILD_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProcessSpawnError(f"Failed to build image {self.image}: {e}") from e

        if result.returncode != 0:
            raise ProcessSpawnError(
                f"Failed to build image {self.image}: {result.stderr.strip()}"
            )
        logger.info("Built builder image %s", self.image)
        return True


class NativeBuildManager(PlatformBuildManager):
    """Runs iOS builds locally on macOS or through a cloud builder."""

    platform_name = "ios"
    container_prefix = "appbuilder-ios-build"
    cloud_container_prefix = "appbuilder-ios-cloud-build"
    default_timeout = 25 * 60
    default_poll_interval = 10.0

    progress_markers = (
        ("Starting iOS Cloud Build", 15, "Starting cloud build..."),
        ("Getting Flutter dependencies", 20, "Getting dependencies..."),
        ("Triggering iOS build", 25, "Triggering cloud build..."),
        ("Installing iOS dependencies", 30, "Installing iOS dependencies..."),
        ("Monitoring build progress", 35, "Cloud build in progress..."),
        ("Starting iOS build", 40, "Starting iOS build..."),
        ("Building Xcode project", 60, "Compiling iOS code..."),
        ("Creating IPA", 85, "Creating IPA package..."),
        ("Downloading build artifact", 90, "Downloading artifact..."),
        ("iOS Build completed", 100, "iOS build completed!"),
    )

    def __init__(
        self,
        image: str = "appbuilder/ios-builder:latest",
        cloud_image: str = "appbuilder/ios-cloud-builder:latest",
        memory: str = "4g",
        cpus: int = 4,
        use_cloud: bool | None = None,
        github_token: str = "",
        build_repo: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.image = image
        self.cloud_image = cloud_image
        self.memory = memory
        self.cpus = cpus
        self.use_cloud = not self.is_macos() if use_cloud is None else use_cloud
        self.github_token = github_token
        self.build_repo = build_repo

    @classmethod
    def from_settings(cls, settings: Settings) -> NativeBuildManager:
        return cls(
            image=settings.ios_image,
            cloud_image=settings.ios_cloud_image,
            memory=settings.ios_memory,
            cpus=settings.ios_cpus,
            use_cloud=settings.ios_use_cloud,
            github_token=settings.github_token,
            build_repo=settings.ios_build_repo,
            timeout=settings.ios_build_timeout,
            poll_interval=settings.ios_poll_interval,
            kill_grace_period=settings.kill_grace_period,
        )

    @staticmethod
    def is_macos() -> bool:
        return sys.platform == "darwin"

    def image_for(self, options: BuildOptions) -> str:
        return self.cloud_image if self.use_cloud else self.image

    def container_name(self, options: BuildOptions) -> str:
        prefix = (
            self.cloud_container_prefix if self.use_cloud else self.container_prefix
        )
        return f"{prefix}-{options.build_id}"

    def build_env(self, options: BuildOptions) -> dict[str, str]:
        env = super().build_env(options)
        env["BUNDLE_ID"] = options.bundle_id or ""
        env["TEAM_ID"] = options.team_id or ""
        env["PROVISIONING_PROFILE"] = options.provisioning_profile or ""
        if self.use_cloud:
            env["GITHUB_TOKEN"] = self.github_token
            env["GITHUB_REPO"] = self.build_repo
        return env

    def compose_command(self, options: BuildOptions) -> list[str]:
        if self.use_cloud and not self.github_token:
            raise ProcessSpawnError("Cloud iOS builds require a GitHub token")
        return super().compose_command(options)

    def check_environment(self) -> dict[str, Any]:
        """Report iOS toolchain and cloud credential availability.

        Returns:
            Dict with the active mode and what each mode needs.
        """
        xcode_path: str | None = None
        if self.is_macos():
            try:
                result = subprocess.run(
                    ["xcode-select", "-p"],
                    capture_output=True,
                    text=True,
                    timeout=10,
                    check=False,
                )
                if result.returncode == 0:
                    xcode_path = result.stdout.strip()
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.debug("xcode-select failed: %s", e)

        return {
            "mode": "cloud" if self.use_cloud else "local",
            "macos": self.is_macos(),
            "xcode_path": xcode_path,
            "local_available": xcode_path is not None,
            "cloud_available": bool(self.github_token and self.build_repo),
            "docker_available": shutil.which(self.docker_bin) is not None,
        }


__all__ = ["ContainerBuildManager", "NativeBuildManager"]
