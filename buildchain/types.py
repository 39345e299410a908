"""Shared type definitions for buildchain.

This module contains enums, dataclasses and type aliases shared across
subpackages to avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BuildStatus(str, Enum):
    """Status of a recorded build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SourceKind(str, Enum):
    """How a source reference is fetched."""

    GIT = "git"
    TAR = "tar"
    DIR = "dir"


class Stage(str, Enum):
    """Pipeline stage, in execution order."""

    WORKSPACE = "workspace"
    FETCH = "fetch"
    CONFIG = "config"
    PREPARE = "prepare"
    RUN = "run"
    MANIFEST = "manifest"
    PROMOTE = "promote"


class EventKind(str, Enum):
    """Kind of progress event emitted by the pipeline."""

    STAGE_STARTED = "stage_started"
    STAGE_FINISHED = "stage_finished"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    COMMAND = "command"


@dataclass(frozen=True)
class BuildEvent:
    """A single progress event.

    Attributes:
        kind: What happened.
        stage: Pipeline stage the event belongs to.
        message: Human-readable summary.
        details: Structured payload (image names, argv, paths).
    """

    kind: EventKind
    stage: Stage
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "kind": self.kind.value,
            "stage": self.stage.value,
            "message": self.message,
            "details": self.details,
        }


EventSink = Callable[[BuildEvent], None]


def discard_event(event: BuildEvent) -> None:
    """Event sink that ignores everything."""


__all__ = [
    "BuildEvent",
    "BuildStatus",
    "EventKind",
    "EventSink",
    "SourceKind",
    "Stage",
    "discard_event",
]
