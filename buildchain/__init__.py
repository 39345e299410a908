"""buildchain - deterministic build orchestration in disposable sandboxes.

This package prepares cached build environments, runs builds inside
isolated containers, and publishes artifacts together with a
content-addressed manifest.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
