"""Build history ORM models.

This module defines the BuildRecord model, one row per build invocation,
keeping the provenance of every published output: which source state
was built, in which environment image, and the digest of its manifest.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from buildchain.db import Base
from buildchain.types import BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    Attributes:
        id: Primary key.
        config_name: Name from the build configuration (unknown until loaded).
        source_kind: Source kind (git, tar, dir).
        source_url: Source reference.
        location: Remote name, or None for local builds.
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the build started executing.
        finished_at: Timestamp when the build finished.
        source_time: Deterministic source timestamp.
        environment_image: Environment image the build ran in.
        is_cache_hit: Whether the environment image was reused.
        output_path: Final output directory.
        manifest_digest: SHA-384 of the written manifest.
        artifact_count: Number of files in the manifest.
        error_stage: Pipeline stage that failed.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Inputs
    config_name: Mapped[str | None] = mapped_column(
        String(100), nullable=True, index=True
    )
    source_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    source_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Provenance
    source_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    environment_image: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    output_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    manifest_digest: Mapped[str | None] = mapped_column(String(96), nullable=True)
    artifact_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Error tracking
    error_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_name_status", "config_name", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, config_name={self.config_name!r}, "
            f"status='{self.status}', source_time={self.source_time})>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        stage: str | None = None,
        error_type: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this build as failed.

        Args:
            stage: Pipeline stage that failed.
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if stage:
            self.error_stage = stage
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
