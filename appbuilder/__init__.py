"""App Build Engine - build orchestration and caching for app artifacts.

This package turns build requests into tracked, cancellable builds that run
inside isolated containers, deduplicates identical builds via content
hashing, and manages the lifecycle of build records and their artifacts.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
