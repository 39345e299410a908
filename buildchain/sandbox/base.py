"""Sandbox backend contract.

The build pipeline only talks to sandboxes through the protocols defined
here, so any container/VM technology can back it. An instance is a
disposable execution context; a snapshot of a prepared instance can be
published as a durable, named image that later instances start from.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Protocol


class SandboxError(Exception):
    """Raised when a sandbox operation fails."""

    def __init__(
        self,
        message: str,
        code: str = "sandbox_error",
        argv: Sequence[str] | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.argv = list(argv) if argv is not None else None
        self.exit_code = exit_code


class CommandFailedError(SandboxError):
    """Raised when a command inside an instance exits non-zero."""

    def __init__(
        self,
        argv: Sequence[str],
        exit_code: int | None,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Command {list(argv)!r} failed with exit code {exit_code}",
            code="command_failed",
            argv=argv,
            exit_code=exit_code,
        )


@dataclass(frozen=True)
class Location:
    """Where sandboxes run: locally, or on a named remote.

    Attributes:
        remote: Remote name, or None for the local execution context.
    """

    remote: str | None = None

    @property
    def is_local(self) -> bool:
        return self.remote is None

    def qualify(self, name: str) -> str:
        """Return ``name`` addressed at this location."""
        if self.remote is None:
            return name
        return f"{self.remote}:{name}"

    def describe(self) -> str:
        return "locally" if self.remote is None else f"on {self.remote}"


LOCAL = Location()


class Snapshot(Protocol):
    """A point-in-time copy of an instance."""

    name: str

    def publish(self, name: str) -> None:
        """Publish the snapshot as a durable, reusable image called ``name``."""
        ...


class Instance(Protocol):
    """A running, disposable sandbox."""

    name: str

    def exec(self, argv: Sequence[str]) -> None:
        """Run a command; raise CommandFailedError on non-zero exit."""
        ...

    def push(self, local_path: Path, remote_path: str, recursive: bool = False) -> None:
        ...

    def pull(self, remote_path: str, local_path: Path, recursive: bool = False) -> None:
        ...

    def snapshot(self, name: str) -> Snapshot:
        ...

    def delete(self) -> None:
        ...

    def __enter__(self) -> Instance:
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        ...


class SandboxBackend(Protocol):
    """Factory and image registry for sandboxes."""

    def image_exists(self, location: Location, name: str) -> bool:
        ...

    def create_instance(self, location: Location, name: str, image: str) -> Instance:
        """Create and start an instance called ``name`` from ``image``."""
        ...


__all__ = [
    "LOCAL",
    "CommandFailedError",
    "Instance",
    "Location",
    "SandboxBackend",
    "SandboxError",
    "Snapshot",
]
