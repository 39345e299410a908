"""Tests for scoped workspaces and atomic promotion."""

from pathlib import Path
from unittest.mock import patch

import pytest

from buildchain.builds.workspace import (
    WORKSPACE_PREFIX,
    PromotionError,
    WorkspaceState,
    scoped_workspace,
)


class TestScopedWorkspace:
    """Tests for scoped_workspace."""

    def test_created_in_parent(self, tmp_path: Path):
        """The workspace should be a fresh directory in the parent."""
        with scoped_workspace(tmp_path) as workspace:
            assert workspace.root.parent == tmp_path
            assert workspace.root.name.startswith(WORKSPACE_PREFIX)
            assert workspace.root.is_dir()
            assert workspace.state is WorkspaceState.OPEN

    def test_layout(self, tmp_path: Path):
        """Source, artifacts and manifest live directly in the workspace."""
        with scoped_workspace(tmp_path) as workspace:
            assert workspace.source_path == workspace.root / "source"
            assert workspace.artifacts_path == workspace.root / "artifacts"
            assert workspace.manifest_path == workspace.root / "manifest.json"

    def test_removed_on_exit(self, tmp_path: Path):
        """An unpromoted workspace should be removed on exit."""
        with scoped_workspace(tmp_path) as workspace:
            (workspace.root / "file").write_text("x")
            root = workspace.root
        assert not root.exists()

    def test_removed_on_error(self, tmp_path: Path):
        """An unpromoted workspace should be removed when the body raises."""
        with pytest.raises(RuntimeError):
            with scoped_workspace(tmp_path) as workspace:
                root = workspace.root
                raise RuntimeError("boom")
        assert not root.exists()

    def test_creates_missing_parent(self, tmp_path: Path):
        """A missing parent directory should be created."""
        parent = tmp_path / "a" / "b"
        with scoped_workspace(parent) as workspace:
            assert workspace.root.parent == parent


class TestPromote:
    """Tests for Workspace.promote."""

    def test_promote_renames(self, tmp_path: Path):
        """Promotion should move the whole workspace to the output path."""
        output = tmp_path / "out"
        with scoped_workspace(tmp_path) as workspace:
            (workspace.root / "manifest.json").write_text("{}")
            old_root = workspace.root
            workspace.promote(output)

            assert workspace.state is WorkspaceState.PROMOTED
            assert workspace.root == output
        assert (output / "manifest.json").read_text() == "{}"
        assert not old_root.exists()

    def test_existing_output_retains_workspace(self, tmp_path: Path):
        """An existing output should be left alone and the workspace kept."""
        output = tmp_path / "out"
        output.mkdir()
        (output / "keep").write_text("old")

        with scoped_workspace(tmp_path) as workspace:
            with pytest.raises(PromotionError) as exc_info:
                workspace.promote(output)
            root = workspace.root

        assert exc_info.value.code == "output_exists"
        assert exc_info.value.workspace_path == root
        assert root.exists()
        assert (output / "keep").read_text() == "old"

    def test_rename_failure_retains_workspace(self, tmp_path: Path):
        """A failed rename should keep the workspace and report it."""
        with scoped_workspace(tmp_path) as workspace:
            with patch(
                "buildchain.builds.workspace.os.rename",
                side_effect=OSError("cross-device link"),
            ):
                with pytest.raises(PromotionError) as exc_info:
                    workspace.promote(tmp_path / "out")
            root = workspace.root

        assert exc_info.value.code == "rename_failed"
        assert "cross-device link" in str(exc_info.value)
        assert root.exists()
        assert not (tmp_path / "out").exists()

    def test_promote_twice(self, tmp_path: Path):
        """A promoted workspace cannot be promoted again."""
        with scoped_workspace(tmp_path) as workspace:
            workspace.promote(tmp_path / "out")
            with pytest.raises(PromotionError) as exc_info:
                workspace.promote(tmp_path / "out2")
        assert exc_info.value.code == "workspace_closed"

    def test_empty_output_dir_not_replaced(self, tmp_path: Path):
        """An existing empty output directory also blocks promotion."""
        output = tmp_path / "out"
        output.mkdir()

        with scoped_workspace(tmp_path) as workspace:
            (workspace.root / "manifest.json").write_text("{}")
            with pytest.raises(PromotionError) as exc_info:
                workspace.promote(output)

        assert exc_info.value.code == "output_exists"
        assert list(output.iterdir()) == []
