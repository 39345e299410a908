"""Tests for shared types module."""

from buildchain.types import (
    BuildEvent,
    BuildStatus,
    EventKind,
    SourceKind,
    Stage,
    discard_event,
)


class TestEnums:
    """Test enum definitions."""

    def test_build_status_values(self) -> None:
        """BuildStatus should have expected values."""
        assert BuildStatus.PENDING.value == "pending"
        assert BuildStatus.RUNNING.value == "running"
        assert BuildStatus.SUCCEEDED.value == "succeeded"
        assert BuildStatus.FAILED.value == "failed"

    def test_source_kind_values(self) -> None:
        """SourceKind should have expected values."""
        assert [k.value for k in SourceKind] == ["git", "tar", "dir"]

    def test_stages_in_pipeline_order(self) -> None:
        """Stage members should be declared in execution order."""
        assert [s.value for s in Stage] == [
            "workspace",
            "fetch",
            "config",
            "prepare",
            "run",
            "manifest",
            "promote",
        ]


class TestBuildEvent:
    """Test BuildEvent dataclass."""

    def test_to_dict(self) -> None:
        """to_dict should produce plain JSON types."""
        event = BuildEvent(
            EventKind.CACHE_HIT,
            Stage.PREPARE,
            "Build environment cached as img",
            {"image": "img"},
        )
        assert event.to_dict() == {
            "kind": "cache_hit",
            "stage": "prepare",
            "message": "Build environment cached as img",
            "details": {"image": "img"},
        }

    def test_details_default_empty(self) -> None:
        """Details should default to an empty dict."""
        event = BuildEvent(EventKind.STAGE_STARTED, Stage.FETCH, "Starting fetch")
        assert event.details == {}

    def test_discard_event(self) -> None:
        """discard_event should accept any event and return None."""
        event = BuildEvent(EventKind.COMMAND, Stage.RUN, "cmd")
        assert discard_event(event) is None
