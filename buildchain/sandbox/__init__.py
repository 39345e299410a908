"""Sandbox backends.

This module handles:
- The backend contract used by the build pipeline
- The LXD implementation of that contract
"""

from buildchain.sandbox.base import (
    LOCAL,
    CommandFailedError,
    Instance,
    Location,
    SandboxBackend,
    SandboxError,
    Snapshot,
)
from buildchain.sandbox.lxd import LxdBackend

__all__ = [
    "LOCAL",
    "CommandFailedError",
    "Instance",
    "Location",
    "LxdBackend",
    "SandboxBackend",
    "SandboxError",
    "Snapshot",
]
