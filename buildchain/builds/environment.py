"""Environment image cache.

This module provides ensure_environment(), which returns a published
environment image for a build configuration, preparing and publishing
it first when no image with the derived name exists yet.

Published images outlive the build that created them; every later build
with the same ``{base, prepare}`` reuses them.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from buildchain.builds.identity import (
    compute_environment_identity,
    environment_image_name,
    prepare_instance_name,
)
from buildchain.sandbox.base import SandboxError
from buildchain.types import BuildEvent, EventKind, EventSink, Stage, discard_event

if TYPE_CHECKING:
    from buildchain.recipes.schema import BuildConfigSchema
    from buildchain.sandbox.base import Location, SandboxBackend

logger = logging.getLogger(__name__)


class EnvironmentPrepareError(Exception):
    """Raised when an environment image cannot be looked up or prepared."""

    def __init__(
        self,
        message: str,
        stage: str,
        code: str = "prepare_error",
        argv: list[str] | None = None,
        index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.argv = argv
        self.index = index


@dataclass(frozen=True)
class EnvironmentResult:
    """Outcome of ensure_environment().

    Attributes:
        image: Name of the published environment image.
        identity: Environment identity the name was derived from.
        cache_hit: True if the image already existed.
    """

    image: str
    identity: str
    cache_hit: bool


@contextmanager
def environment_lock(
    lock_dir: Path,
    image: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for preparing an environment image.

    Uses a file-based lock so that concurrent builds on this host never
    prepare and publish the same image twice.

    Args:
        lock_dir: Directory for lock files.
        image: Environment image name to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_name = image.replace(":", "_").replace("/", "_")
    lock_file = lock_dir / f"env_{safe_name}.lock"

    logger.debug("Acquiring environment lock for %s", image)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for environment lock on {image}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Environment lock acquired for %s", image)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Environment lock released for %s", image)
        os.close(fd)


def _image_exists(backend: SandboxBackend, location: Location, image: str) -> bool:
    try:
        return backend.image_exists(location, image)
    except SandboxError as e:
        raise EnvironmentPrepareError(
            f"Failed to look up image {image}: {e}", stage="lookup", code=e.code
        ) from e


def _prepare_image(
    config: BuildConfigSchema,
    backend: SandboxBackend,
    location: Location,
    image: str,
    instance_name: str,
    emit: EventSink,
) -> None:
    """Build the environment image from ``config.base`` and publish it."""
    logger.info("Create instance %s from %s", instance_name, config.base)
    try:
        instance = backend.create_instance(location, instance_name, config.base)
    except SandboxError as e:
        raise EnvironmentPrepareError(
            f"Failed to create instance {instance_name} from {config.base}: {e}",
            stage="create",
            code=e.code,
        ) from e

    with instance:
        for index, command in enumerate(config.prepare, start=1):
            emit(
                BuildEvent(
                    EventKind.COMMAND,
                    Stage.PREPARE,
                    f"Prepare command {command!r}",
                    {"argv": list(command), "index": index},
                )
            )
            try:
                instance.exec(command)
            except SandboxError as e:
                raise EnvironmentPrepareError(
                    f"Prepare command {index} {command!r} failed: {e}",
                    stage="exec",
                    code=e.code,
                    argv=list(command),
                    index=index,
                ) from e

        logger.info("Snapshot build environment as %s", image)
        try:
            snapshot = instance.snapshot(image)
        except SandboxError as e:
            raise EnvironmentPrepareError(
                f"Failed to snapshot {image}: {e}", stage="snapshot", code=e.code
            ) from e

        logger.info("Publish build environment as %s", image)
        try:
            snapshot.publish(image)
        except SandboxError as e:
            raise EnvironmentPrepareError(
                f"Failed to publish {image}: {e}", stage="publish", code=e.code
            ) from e


def _cache_hit(emit: EventSink, image: str, identity: str) -> EnvironmentResult:
    logger.info("Build environment cached as %s", image)
    emit(
        BuildEvent(
            EventKind.CACHE_HIT,
            Stage.PREPARE,
            f"Build environment cached as {image}",
            {"image": image, "identity": identity},
        )
    )
    return EnvironmentResult(image=image, identity=identity, cache_hit=True)


def _cache_miss(
    config: BuildConfigSchema,
    backend: SandboxBackend,
    location: Location,
    image: str,
    identity: str,
    emit: EventSink,
) -> EnvironmentResult:
    emit(
        BuildEvent(
            EventKind.CACHE_MISS,
            Stage.PREPARE,
            f"Preparing build environment {image}",
            {"image": image, "identity": identity, "base": config.base},
        )
    )
    instance_name = prepare_instance_name(config, identity)
    _prepare_image(config, backend, location, image, instance_name, emit)
    return EnvironmentResult(image=image, identity=identity, cache_hit=False)


def ensure_environment(
    config: BuildConfigSchema,
    backend: SandboxBackend,
    location: Location,
    emit: EventSink | None = None,
    lock_dir: Path | None = None,
    lock_timeout: float | None = None,
) -> EnvironmentResult:
    """Return a published environment image for ``config``.

    If an image named after the config's environment identity exists at
    ``location`` it is reused and no commands run. Otherwise a fresh
    instance is created from ``config.base``, every prepare command runs
    in order (stopping at the first failure), and the instance is
    snapshotted and published under that name.

    Args:
        config: Build configuration.
        backend: Sandbox backend.
        location: Where the image lives.
        emit: Optional event sink for cache hit/miss and command events.
        lock_dir: Directory for the per-image lock; no locking if None.
        lock_timeout: Lock acquisition timeout in seconds.

    Returns:
        EnvironmentResult with the image name.

    Raises:
        EnvironmentPrepareError: If any backend operation fails.
    """
    emit = emit or discard_event
    identity = compute_environment_identity(config)
    image = environment_image_name(config, identity)

    if _image_exists(backend, location, image):
        return _cache_hit(emit, image, identity)

    if lock_dir is None:
        return _cache_miss(config, backend, location, image, identity, emit)

    try:
        with environment_lock(lock_dir, image, timeout=lock_timeout):
            # Another build may have published it while we waited
            if _image_exists(backend, location, image):
                return _cache_hit(emit, image, identity)
            return _cache_miss(config, backend, location, image, identity, emit)
    except TimeoutError as e:
        raise EnvironmentPrepareError(str(e), stage="lock", code="lock_timeout") from e


__all__ = [
    "EnvironmentPrepareError",
    "EnvironmentResult",
    "ensure_environment",
    "environment_lock",
]
