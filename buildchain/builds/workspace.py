"""Scoped build workspace.

A workspace is a private temporary directory holding the fetched source,
the pulled artifacts and the manifest of one build. It is either renamed
into place as a whole or removed; nothing is ever written to the final
output path directly.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from buildchain.builds.manifest import ARTIFACTS_DIRNAME, MANIFEST_FILENAME

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = ".buildchain-"
SOURCE_DIRNAME = "source"


class PromotionError(Exception):
    """Raised when a workspace cannot be moved to its output path.

    The workspace is kept on disk; ``workspace_path`` points at it.
    """

    def __init__(
        self,
        message: str,
        workspace_path: Path,
        code: str = "promotion_error",
    ) -> None:
        super().__init__(message)
        self.workspace_path = workspace_path
        self.code = code


class WorkspaceState(str, Enum):
    """Lifecycle state of a workspace."""

    OPEN = "open"
    PROMOTED = "promoted"
    RETAINED = "retained"


@dataclass
class Workspace:
    """Temporary directory owned by a single build.

    Attributes:
        root: Workspace directory.
        state: Lifecycle state.
    """

    root: Path
    state: WorkspaceState = WorkspaceState.OPEN

    @property
    def source_path(self) -> Path:
        return self.root / SOURCE_DIRNAME

    @property
    def artifacts_path(self) -> Path:
        return self.root / ARTIFACTS_DIRNAME

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME

    def promote(self, output_path: Path) -> Path:
        """Rename the workspace to ``output_path`` in a single operation.

        Args:
            output_path: Final output directory; must not exist.

        Returns:
            The output path.

        Raises:
            PromotionError: If the output exists or the rename fails. The
                workspace is retained for inspection in both cases.

        Note:
            The existence check and the rename are two steps. On Linux
            ``os.rename`` replaces an empty directory, so an empty output
            directory created between them is replaced silently. A
            non-empty one makes the rename fail.
        """
        if self.state is not WorkspaceState.OPEN:
            raise PromotionError(
                f"Workspace {self.root} is already {self.state.value}",
                workspace_path=self.root,
                code="workspace_closed",
            )

        if output_path.exists() or output_path.is_symlink():
            self.state = WorkspaceState.RETAINED
            raise PromotionError(
                f"Output path {output_path} already exists; "
                f"results kept in {self.root}",
                workspace_path=self.root,
                code="output_exists",
            )

        try:
            os.rename(self.root, output_path)
        except OSError as e:
            self.state = WorkspaceState.RETAINED
            raise PromotionError(
                f"Failed to move temporary directory {self.root} "
                f"to {output_path}: {e}",
                workspace_path=self.root,
                code="rename_failed",
            ) from e

        logger.info("Placed results in %s", output_path)
        self.root = output_path
        self.state = WorkspaceState.PROMOTED
        return output_path


@contextmanager
def scoped_workspace(parent_dir: Path | None = None) -> Iterator[Workspace]:
    """Create a workspace that is removed on exit unless promoted.

    Args:
        parent_dir: Directory to create the workspace in. Use a directory
            on the same filesystem as the output so promotion is a rename.

    Yields:
        The open Workspace.
    """
    if parent_dir is not None:
        parent_dir.mkdir(parents=True, exist_ok=True)
    root = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=parent_dir))
    workspace = Workspace(root=root)
    logger.debug("Created workspace %s", root)
    try:
        yield workspace
    finally:
        if workspace.state is WorkspaceState.OPEN:
            logger.debug("Removing workspace %s", root)
            shutil.rmtree(root, ignore_errors=True)
        elif workspace.state is WorkspaceState.RETAINED:
            logger.warning("Workspace retained at %s", root)


__all__ = [
    "SOURCE_DIRNAME",
    "WORKSPACE_PREFIX",
    "PromotionError",
    "Workspace",
    "WorkspaceState",
    "scoped_workspace",
]
