"""Build service module.

This module provides the high-level build API:
- run_pipeline(): fetch, prepare, build, manifest and promote in one call
- build_and_record(): run_pipeline() with a persisted BuildRecord
- Build history queries

Every stage runs inside a stage scope that emits start/finish events and
wraps failures in BuildFailedError naming the stage. Output only appears
at the requested path through the final rename of the workspace.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from buildchain.builds.environment import (
    EnvironmentPrepareError,
    EnvironmentResult,
    ensure_environment,
)
from buildchain.builds.manifest import (
    Manifest,
    ManifestError,
    generate_manifest,
    write_manifest,
)
from buildchain.builds.models import BuildRecord
from buildchain.builds.runner import BuildExecutionError, RunResult, run_build
from buildchain.builds.workspace import PromotionError, scoped_workspace
from buildchain.config import Settings, get_settings
from buildchain.recipes.io import DEFAULT_CONFIG_PATH, ConfigLoadError, load_config
from buildchain.sandbox.base import LOCAL, Location
from buildchain.sources.fetch import FetchError, Source, download_source
from buildchain.types import (
    BuildEvent,
    BuildStatus,
    EventKind,
    EventSink,
    Stage,
    discard_event,
)

if TYPE_CHECKING:
    from buildchain.sandbox.base import SandboxBackend

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_PATH = "buildchain.out"

# Errors a stage reports as a build failure; anything else is a bug and propagates
STAGE_ERRORS = (
    ConfigLoadError,
    FetchError,
    EnvironmentPrepareError,
    BuildExecutionError,
    ManifestError,
    PromotionError,
    OSError,
)

Fetcher = Callable[[Source, Path, Settings | None], int]


class BuildFailedError(Exception):
    """Raised when any pipeline stage fails.

    Attributes:
        stage: Stage that failed.
        code: Error code of the underlying failure.
        workspace_path: Retained workspace, if the failure left one.
    """

    def __init__(
        self,
        message: str,
        stage: Stage,
        code: str = "build_failed",
        workspace_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.workspace_path = workspace_path


class BuildNotFoundError(Exception):
    """Raised when a build record is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


@dataclass
class BuildRequest:
    """What to build and where to put it.

    Attributes:
        source: Source reference to fetch.
        config_path: Configuration path, relative to the source root.
        output_path: Final output directory; must not exist yet.
        location: Where sandboxes run.
    """

    source: Source
    config_path: str = DEFAULT_CONFIG_PATH
    output_path: Path = field(default_factory=lambda: Path(DEFAULT_OUTPUT_PATH))
    location: Location = LOCAL


@dataclass
class BuildOutcome:
    """Result of a successful pipeline run."""

    config_name: str
    source_time: int
    output_path: Path
    manifest: Manifest
    environment: EnvironmentResult
    run: RunResult


@contextmanager
def stage_scope(
    stage: Stage,
    emit: EventSink,
    failure: str,
) -> Iterator[dict[str, Any]]:
    """Run one pipeline stage.

    Emits ``stage_started`` on entry and ``stage_finished`` (with the
    details the body filled in) on success. Stage errors are re-raised
    as BuildFailedError prefixed with ``failure``.

    Yields:
        Mutable details dict attached to the finish event.
    """
    details: dict[str, Any] = {}
    emit(BuildEvent(EventKind.STAGE_STARTED, stage, f"Starting {stage.value}"))
    try:
        yield details
    except STAGE_ERRORS as e:
        code = getattr(e, "code", None) or "io_error"
        logger.error("%s: %s", failure, e)
        raise BuildFailedError(
            f"{failure}: {e}",
            stage=stage,
            code=code,
            workspace_path=getattr(e, "workspace_path", None),
        ) from e
    emit(
        BuildEvent(EventKind.STAGE_FINISHED, stage, f"Finished {stage.value}", details)
    )


def run_pipeline(
    request: BuildRequest,
    backend: SandboxBackend,
    settings: Settings | None = None,
    emit: EventSink | None = None,
    fetch: Fetcher | None = None,
) -> BuildOutcome:
    """Build a source reference and publish the results atomically.

    Steps: create workspace, fetch source, load config, ensure the
    environment image, run the build, generate and write the manifest,
    rename the workspace to the output path.

    Args:
        request: Build request.
        backend: Sandbox backend.
        settings: Application settings.
        emit: Optional event sink.
        fetch: Source fetcher; defaults to download_source().

    Returns:
        BuildOutcome describing the published output.

    Raises:
        BuildFailedError: If any stage fails. The output path is untouched.
    """
    if settings is None:
        settings = get_settings()
    emit = emit or discard_event
    fetch = fetch or download_source

    output_path = request.output_path
    if output_path.exists() or output_path.is_symlink():
        raise BuildFailedError(
            f"Output path already exists: {output_path}",
            stage=Stage.WORKSPACE,
            code="output_exists",
        )
    workspace_parent = settings.tmp_dir or output_path.absolute().parent

    with ExitStack() as stack:
        with stage_scope(
            Stage.WORKSPACE, emit, "failed to create temporary directory"
        ) as details:
            workspace = stack.enter_context(scoped_workspace(workspace_parent))
            details["path"] = str(workspace.root)

        with stage_scope(
            Stage.FETCH, emit, f"failed to download source {request.source.url}"
        ) as details:
            source_time = fetch(request.source, workspace.source_path, settings)
            details["source_time"] = source_time

        with stage_scope(
            Stage.CONFIG, emit, f"failed to load config {request.config_path}"
        ) as details:
            config = load_config(workspace.source_path / request.config_path)
            details["name"] = config.name
            logger.info("Building %s %s", config.name, request.location.describe())

        with stage_scope(
            Stage.PREPARE, emit, f"failed to prepare config {request.config_path}"
        ) as details:
            environment = ensure_environment(
                config,
                backend,
                request.location,
                emit=emit,
                lock_dir=settings.cache_dir / "locks",
                lock_timeout=settings.lock_timeout,
            )
            details["image"] = environment.image
            details["cache_hit"] = environment.cache_hit

        with stage_scope(
            Stage.RUN, emit, f"failed to run config {request.config_path}"
        ) as details:
            run = run_build(
                config,
                environment.image,
                source_time,
                workspace.source_path,
                workspace.root,
                backend,
                request.location,
                emit=emit,
            )
            details["instance"] = run.instance_name

        with stage_scope(
            Stage.MANIFEST, emit, "failed to generate manifest"
        ) as details:
            manifest = generate_manifest(source_time, workspace.artifacts_path)
            write_manifest(manifest, workspace.manifest_path)
            details["files"] = len(manifest.files)
            details["digest"] = manifest.digest()

        with stage_scope(
            Stage.PROMOTE, emit, "failed to publish build results"
        ) as details:
            workspace.promote(output_path)
            details["output_path"] = str(output_path)

    logger.info("Placed results of %s in %s", config.name, output_path)
    return BuildOutcome(
        config_name=config.name,
        source_time=source_time,
        output_path=output_path,
        manifest=manifest,
        environment=environment,
        run=run,
    )


def _recording_sink(
    record: BuildRecord, emit: EventSink, started: list[Stage]
) -> EventSink:
    """Wrap ``emit`` so that pipeline events fill in ``record``.

    Stages are appended to ``started`` as they begin.
    """

    def sink(event: BuildEvent) -> None:
        if event.kind is EventKind.STAGE_STARTED:
            started.append(event.stage)
        elif event.kind is EventKind.STAGE_FINISHED:
            if event.stage is Stage.FETCH:
                record.source_time = event.details.get("source_time")
            elif event.stage is Stage.CONFIG:
                record.config_name = event.details.get("name")
        elif event.kind in (EventKind.CACHE_HIT, EventKind.CACHE_MISS):
            record.environment_image = event.details.get("image")
            record.is_cache_hit = event.kind is EventKind.CACHE_HIT
        emit(event)

    return sink


def build_and_record(
    session: Session,
    request: BuildRequest,
    backend: SandboxBackend,
    settings: Settings | None = None,
    emit: EventSink | None = None,
    fetch: Fetcher | None = None,
) -> tuple[BuildRecord, BuildOutcome]:
    """Run the pipeline and persist a BuildRecord for it.

    The record is flushed in every case; failures are re-raised after
    the record is marked failed. Unexpected exceptions are recorded
    against the stage that was running, with the exception type as the
    error type.

    Returns:
        Tuple of (BuildRecord, BuildOutcome).

    Raises:
        BuildFailedError: If the pipeline fails.
    """
    record = BuildRecord(
        source_kind=request.source.kind.value,
        source_url=request.source.url,
        location=request.location.remote,
        status=BuildStatus.PENDING.value,
    )
    session.add(record)
    session.flush()
    logger.info("Created build record %d", record.id)

    record.mark_running()
    session.flush()

    started: list[Stage] = []
    try:
        outcome = run_pipeline(
            request,
            backend,
            settings=settings,
            emit=_recording_sink(record, emit or discard_event, started),
            fetch=fetch,
        )
    except BuildFailedError as e:
        record.mark_failed(stage=e.stage.value, error_type=e.code, message=str(e))
        session.flush()
        raise
    except Exception as e:
        logger.exception("Build %d raised an unexpected error", record.id)
        record.mark_failed(
            stage=started[-1].value if started else None,
            error_type=type(e).__name__,
            message=str(e),
        )
        session.flush()
        raise

    record.output_path = str(outcome.output_path)
    record.manifest_digest = outcome.manifest.digest()
    record.artifact_count = len(outcome.manifest.files)
    record.mark_succeeded()
    session.flush()
    logger.info(
        "Build %d succeeded with %d artifacts", record.id, record.artifact_count
    )
    return record, outcome


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    config_name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records, newest first.

    Args:
        session: Database session.
        config_name: Filter by configuration name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if config_name is not None:
        stmt = stmt.where(BuildRecord.config_name == config_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "DEFAULT_OUTPUT_PATH",
    "BuildFailedError",
    "BuildNotFoundError",
    "BuildOutcome",
    "BuildRequest",
    "build_and_record",
    "get_build",
    "list_builds",
    "run_pipeline",
    "stage_scope",
]
