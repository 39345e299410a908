"""Build runner for executing a build inside a sandbox.

This module handles:
- Starting a run instance from the prepared environment image
- Pushing the source tree into the instance
- Running build and publish commands in order
- Pulling the artifact directory back out

Stages run strictly in sequence; the first failing command aborts the run.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from buildchain.builds.identity import run_instance_name
from buildchain.sandbox.base import SandboxError
from buildchain.types import BuildEvent, EventKind, EventSink, Stage, discard_event

if TYPE_CHECKING:
    from buildchain.recipes.schema import BuildConfigSchema
    from buildchain.sandbox.base import Instance, Location, SandboxBackend

logger = logging.getLogger(__name__)

# Fixed paths inside the instance
SOURCE_ROOT = "/root"
ARTIFACTS_DIR = "/root/artifacts"


class BuildExecutionError(Exception):
    """Raised when a build run fails."""

    def __init__(
        self,
        message: str,
        stage: str,
        code: str = "build_error",
        argv: list[str] | None = None,
        index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.argv = argv
        self.index = index


@dataclass
class RunResult:
    """Result of a build run.

    Attributes:
        instance_name: Name of the instance the build ran in.
        image: Environment image the instance was created from.
        artifacts_path: Local directory holding the pulled artifacts.
        commands_run: Number of build and publish commands executed.
        started_at: Run start time.
        finished_at: Run finish time.
    """

    instance_name: str
    image: str
    artifacts_path: Path
    commands_run: int
    started_at: datetime
    finished_at: datetime


def _run_commands(
    instance: Instance,
    commands: Sequence[Sequence[str]],
    stage: str,
    emit: EventSink,
) -> int:
    """Run commands in order, stopping at the first failure."""
    for index, command in enumerate(commands, start=1):
        argv = list(command)
        logger.info("%s command %r", stage.capitalize(), argv)
        emit(
            BuildEvent(
                EventKind.COMMAND,
                Stage.RUN,
                f"{stage.capitalize()} command {argv!r}",
                {"phase": stage, "argv": argv, "index": index},
            )
        )
        try:
            instance.exec(argv)
        except SandboxError as e:
            raise BuildExecutionError(
                f"{stage.capitalize()} command {index} {argv!r} failed: {e}",
                stage=stage,
                code=e.code,
                argv=argv,
                index=index,
            ) from e
    return len(commands)


def run_build(
    config: BuildConfigSchema,
    image: str,
    source_time: int,
    source_path: Path,
    staging_path: Path,
    backend: SandboxBackend,
    location: Location,
    emit: EventSink | None = None,
) -> RunResult:
    """Run a build against a fresh instance of the environment image.

    The source tree is pushed under ``/root``, build commands run, the
    artifact directory ``/root/artifacts`` is created, publish commands
    run, and the artifact directory is pulled into ``staging_path`` (so
    artifacts end up in ``staging_path / "artifacts"``).

    Args:
        config: Build configuration.
        image: Environment image to start from.
        source_time: Deterministic source timestamp; names the instance.
        source_path: Local source tree.
        staging_path: Local directory that receives the artifact directory.
        backend: Sandbox backend.
        location: Where the instance runs.
        emit: Optional event sink for command events.

    Returns:
        RunResult with execution details.

    Raises:
        BuildExecutionError: If any stage fails.
    """
    emit = emit or discard_event
    name = run_instance_name(config, source_time)
    started_at = datetime.now(timezone.utc)

    logger.info("Create instance %s from %s", name, image)
    try:
        instance = backend.create_instance(location, name, image)
    except SandboxError as e:
        raise BuildExecutionError(
            f"Failed to create instance {name} from {image}: {e}",
            stage="create",
            code=e.code,
        ) from e

    with instance:
        logger.info("Push source %s", source_path)
        try:
            instance.push(source_path, SOURCE_ROOT, recursive=True)
        except SandboxError as e:
            raise BuildExecutionError(
                f"Failed to push source to {name}: {e}", stage="push", code=e.code
            ) from e

        commands_run = _run_commands(instance, config.build, "build", emit)

        logger.info("Create artifact directory")
        mkdir = ["mkdir", ARTIFACTS_DIR]
        try:
            instance.exec(mkdir)
        except SandboxError as e:
            raise BuildExecutionError(
                f"Failed to create artifact directory: {e}",
                stage="artifacts",
                code=e.code,
                argv=mkdir,
            ) from e

        commands_run += _run_commands(instance, config.publish, "publish", emit)

        logger.info("Pull artifacts into %s", staging_path)
        try:
            instance.pull(ARTIFACTS_DIR, staging_path, recursive=True)
        except SandboxError as e:
            raise BuildExecutionError(
                f"Failed to pull artifacts from {name}: {e}", stage="pull", code=e.code
            ) from e

    return RunResult(
        instance_name=name,
        image=image,
        artifacts_path=staging_path / Path(ARTIFACTS_DIR).name,
        commands_run=commands_run,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )


__all__ = [
    "ARTIFACTS_DIR",
    "SOURCE_ROOT",
    "BuildExecutionError",
    "RunResult",
    "run_build",
]
