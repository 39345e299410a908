"""Build orchestration module.

This module handles:
- Environment identity computation
- Environment image caching
- Running builds inside sandboxes
- Manifest generation and verification
- Workspace lifecycle and atomic promotion
- Build records
"""

from buildchain.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Submodules are imported explicitly: buildchain.builds.service, etc.
