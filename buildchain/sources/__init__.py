"""Source fetching.

This module handles:
- Git, tarball and local directory sources
- Deterministic source timestamps
"""

from buildchain.sources.fetch import FetchError, Source, download_source

__all__ = ["FetchError", "Source", "download_source"]
