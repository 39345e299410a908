"""Shared fixtures: an in-memory sandbox backend that records every call.

FakeBackend implements the sandbox protocols without any container
runtime. Tests arrange state through its attributes:

- ``images``: image names that exist
- ``artifacts``: relative path -> bytes produced by ``pull``
- ``failing_commands``: argv lists that exit non-zero
- ``fail_ops``: operation names (create, push, pull, snapshot, publish,
  image_exists) that raise SandboxError
"""

from collections.abc import Sequence
from pathlib import Path, PurePosixPath

import pytest

from buildchain.sandbox.base import CommandFailedError, Location, SandboxError


class FakeSnapshot:
    def __init__(self, instance: "FakeInstance", name: str) -> None:
        self.instance = instance
        self.name = name

    def publish(self, name: str) -> None:
        backend = self.instance.backend
        backend.calls.append(("publish", self.instance.name, name))
        backend.maybe_fail("publish")
        backend.images.add(self.instance.location.qualify(name))


class FakeInstance:
    def __init__(
        self, backend: "FakeBackend", location: Location, name: str, image: str
    ) -> None:
        self.backend = backend
        self.location = location
        self.name = name
        self.image = image
        self.deleted = False
        self.pushed_files: list[str] = []

    def exec(self, argv: Sequence[str]) -> None:
        self.backend.calls.append(("exec", self.name, list(argv)))
        if list(argv) in self.backend.failing_commands:
            raise CommandFailedError(argv, 1)

    def push(self, local_path: Path, remote_path: str, recursive: bool = False) -> None:
        self.backend.calls.append(("push", self.name, remote_path))
        self.backend.maybe_fail("push")
        self.pushed_files = sorted(
            p.relative_to(local_path).as_posix()
            for p in Path(local_path).rglob("*")
            if p.is_file()
        )

    def pull(self, remote_path: str, local_path: Path, recursive: bool = False) -> None:
        self.backend.calls.append(("pull", self.name, remote_path))
        self.backend.maybe_fail("pull")
        target = Path(local_path) / PurePosixPath(remote_path).name
        target.mkdir(parents=True)
        for relative_path, content in self.backend.artifacts.items():
            file_path = target / relative_path
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)

    def snapshot(self, name: str) -> FakeSnapshot:
        self.backend.calls.append(("snapshot", self.name, name))
        self.backend.maybe_fail("snapshot")
        return FakeSnapshot(self, name)

    def delete(self) -> None:
        if self.deleted:
            return
        self.backend.calls.append(("delete", self.name))
        self.deleted = True

    def __enter__(self) -> "FakeInstance":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.delete()


class FakeBackend:
    def __init__(self) -> None:
        self.images: set[str] = set()
        self.artifacts: dict[str, bytes] = {}
        self.failing_commands: list[list[str]] = []
        self.fail_ops: set[str] = set()
        self.calls: list[tuple] = []
        self.instances: list[FakeInstance] = []

    def maybe_fail(self, op: str) -> None:
        if op in self.fail_ops:
            raise SandboxError(f"{op} failed", code=f"{op}_failed")

    def image_exists(self, location: Location, name: str) -> bool:
        self.calls.append(("image_exists", location.qualify(name)))
        self.maybe_fail("image_exists")
        return location.qualify(name) in self.images

    def create_instance(self, location: Location, name: str, image: str) -> FakeInstance:
        self.calls.append(("create", name, image))
        self.maybe_fail("create")
        instance = FakeInstance(self, location, name, image)
        self.instances.append(instance)
        return instance

    def exec_calls(self, instance_name: str | None = None) -> list[list[str]]:
        """Argv of every exec, optionally restricted to one instance."""
        return [
            call[2]
            for call in self.calls
            if call[0] == "exec" and (instance_name is None or call[1] == instance_name)
        ]

    def ops(self) -> list[str]:
        """Operation names in call order."""
        return [call[0] for call in self.calls]


@pytest.fixture
def backend() -> FakeBackend:
    """Create an empty fake sandbox backend."""
    return FakeBackend()
