"""Build orchestration module.

This module handles:
- Build hash computation and cache reuse
- Project generation into per-build staging directories
- Running platform builds in isolated containers
- Artifact storage and signed download URLs
- Build records and retention
"""

from appbuilder.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Submodules are imported on use: appbuilder.builds.service, etc.
