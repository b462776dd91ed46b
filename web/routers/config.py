"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from appbuilder.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Secrets are never included.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "db_url": settings.db_url,
        "staging_dir": str(settings.staging_dir),
        "output_dir": str(settings.output_dir),
        "artifacts_dir": str(settings.artifacts_dir),
        "apps_dir": str(settings.apps_dir),
        "log_level": settings.log_level,
        "max_concurrent_builds": settings.max_concurrent_builds,
        "container_image": settings.container_image,
        "ios_image": settings.ios_image,
        "ios_cloud_image": settings.ios_cloud_image,
        "build_timeout": settings.build_timeout,
        "ios_build_timeout": settings.ios_build_timeout,
        "download_url_expiry": settings.download_url_expiry,
        "cache_freshness_days": settings.cache_freshness_days,
        "retention_days": settings.retention_days,
        "retention_keep": settings.retention_keep,
    }
