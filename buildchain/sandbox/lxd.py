"""LXD sandbox backend.

This module drives the ``lxc`` command line client:
- Looking up published images by alias
- Launching ephemeral containers from images
- Executing commands and copying files in and out
- Snapshotting containers and publishing snapshots as images

Remote execution uses LXD's ``<remote>:<name>`` addressing; the remote
must already be configured with ``lxc remote add``.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from pathlib import Path
from types import TracebackType

from buildchain.sandbox.base import CommandFailedError, Location, SandboxError

logger = logging.getLogger(__name__)

DEFAULT_LXC_BINARY = "lxc"


class LxdBackend:
    """Sandbox backend backed by LXD containers.

    Args:
        lxc_binary: Path or name of the ``lxc`` client.
        timeout: Timeout in seconds for each command (None = no timeout).
    """

    def __init__(
        self,
        lxc_binary: str = DEFAULT_LXC_BINARY,
        timeout: int | None = None,
    ) -> None:
        self.lxc_binary = lxc_binary
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        capture: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run an ``lxc`` subcommand.

        Args:
            args: Arguments after the ``lxc`` executable.
            capture: Capture output instead of inheriting stdout/stderr.

        Returns:
            The completed process; the caller checks the return code.

        Raises:
            SandboxError: If the client cannot be started or times out.
        """
        cmd = [self.lxc_binary, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("Executing: %s", cmd_str)

        try:
            return subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SandboxError(
                f"Command timed out after {self.timeout} seconds: {cmd_str}",
                code="timeout",
                argv=cmd,
            ) from e
        except OSError as e:
            raise SandboxError(
                f"Failed to execute {cmd_str}: {e}",
                code="execution_error",
                argv=cmd,
            ) from e

    def check(self, args: Sequence[str], code: str) -> None:
        """Run an ``lxc`` subcommand and raise SandboxError if it fails."""
        result = self.run(args)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise SandboxError(
                f"lxc {shlex.join(args)} failed with exit code "
                f"{result.returncode}: {stderr}",
                code=code,
                argv=[self.lxc_binary, *args],
                exit_code=result.returncode,
            )

    def image_exists(self, location: Location, name: str) -> bool:
        """Check whether an image alias exists at ``location``."""
        result = self.run(["image", "info", location.qualify(name)])
        exists = result.returncode == 0
        logger.debug("Image %s exists %s: %s", name, location.describe(), exists)
        return exists

    def create_instance(
        self,
        location: Location,
        name: str,
        image: str,
    ) -> LxdInstance:
        """Launch an ephemeral container called ``name`` from ``image``.

        Image references that already name a remote (``images:debian/12``)
        are used as-is; bare aliases are resolved at ``location``.
        """
        image_ref = image if ":" in image else location.qualify(image)
        instance_ref = location.qualify(name)
        logger.info("Launching %s from %s", instance_ref, image_ref)
        self.check(
            ["launch", image_ref, instance_ref, "--ephemeral"],
            code="create_failed",
        )
        return LxdInstance(self, location, name)


class LxdInstance:
    """A running LXD container.

    Used as a context manager, the container is deleted on exit.
    """

    def __init__(self, backend: LxdBackend, location: Location, name: str) -> None:
        self.backend = backend
        self.location = location
        self.name = name
        self.deleted = False

    @property
    def ref(self) -> str:
        return self.location.qualify(self.name)

    def exec(self, argv: Sequence[str]) -> None:
        """Run ``argv`` inside the container, streaming its output.

        Raises:
            CommandFailedError: If the command exits non-zero.
        """
        logger.info("Exec in %s: %s", self.name, shlex.join(argv))
        result = self.backend.run(["exec", self.ref, "--", *argv], capture=False)
        if result.returncode != 0:
            raise CommandFailedError(argv, result.returncode)

    def push(self, local_path: Path, remote_path: str, recursive: bool = False) -> None:
        args = ["file", "push"]
        if recursive:
            args += ["--recursive", "--create-dirs"]
        args += [str(local_path), f"{self.ref}{remote_path}"]
        self.backend.check(args, code="push_failed")

    def pull(self, remote_path: str, local_path: Path, recursive: bool = False) -> None:
        args = ["file", "pull"]
        if recursive:
            args.append("--recursive")
        args += [f"{self.ref}{remote_path}", str(local_path)]
        self.backend.check(args, code="pull_failed")

    def snapshot(self, name: str) -> LxdSnapshot:
        self.backend.check(["snapshot", self.ref, name], code="snapshot_failed")
        return LxdSnapshot(self, name)

    def delete(self) -> None:
        """Force-delete the container; safe to call more than once."""
        if self.deleted:
            return
        self.backend.check(["delete", "--force", self.ref], code="delete_failed")
        self.deleted = True

    def __enter__(self) -> LxdInstance:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self.delete()
        except SandboxError as e:
            # Do not mask the error that ended the block
            if exc is None:
                raise
            logger.warning("Failed to delete %s: %s", self.ref, e)


class LxdSnapshot:
    """A snapshot of an LXD container."""

    def __init__(self, instance: LxdInstance, name: str) -> None:
        self.instance = instance
        self.name = name

    def publish(self, name: str) -> None:
        """Publish the snapshot as an image with alias ``name``."""
        location = self.instance.location
        args = ["publish", f"{self.instance.ref}/{self.name}"]
        if not location.is_local:
            args.append(f"{location.remote}:")
        args += ["--alias", name]
        self.instance.backend.check(args, code="publish_failed")


__all__ = ["DEFAULT_LXC_BINARY", "LxdBackend", "LxdInstance", "LxdSnapshot"]
