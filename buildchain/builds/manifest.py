"""Artifact manifest generation and verification.

This module handles:
- Walking an artifact tree in a deterministic order
- Computing SHA-384 checksums of artifacts
- Writing manifests in a canonical, byte-stable JSON form
- Re-verifying a published output against its manifest

Two identical artifact trees always produce byte-identical manifests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
ARTIFACTS_DIRNAME = "artifacts"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ManifestError(Exception):
    """Raised when a manifest cannot be generated, written or read."""

    def __init__(self, message: str, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Manifest:
    """Build manifest: source time plus artifact path to SHA-384 mapping.

    Attributes:
        time: Deterministic source timestamp of the build.
        files: Relative POSIX path to hex digest, in lexicographic path order.
    """

    time: int
    files: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"time": self.time, "files": dict(self.files)}

    def to_json(self) -> str:
        """Serialize to canonical JSON (sorted keys, trailing newline)."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    def digest(self) -> str:
        """SHA-384 of the serialized manifest."""
        return hashlib.sha384(self.to_json().encode("utf-8")).hexdigest()


@dataclass
class ManifestVerification:
    """Result of comparing an artifact tree to its manifest.

    Attributes:
        missing: Paths listed in the manifest but absent on disk.
        unexpected: Paths on disk not listed in the manifest.
        mismatched: Paths whose content hash differs.
    """

    missing: list[str] = field(default_factory=list)
    unexpected: list[str] = field(default_factory=list)
    mismatched: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.unexpected or self.mismatched)


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-384 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-384 hex digest.
    """
    sha384 = hashlib.sha384()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha384.update(chunk)
    return sha384.hexdigest()


def iter_artifact_files(artifacts_root: Path) -> list[tuple[str, Path]]:
    """List regular files under ``artifacts_root``.

    Symlinks and special files are skipped. The result is sorted by
    relative POSIX path, independent of directory listing order.

    Returns:
        List of (relative path, absolute path) tuples.
    """
    found: list[tuple[str, Path]] = []
    for dirpath, dirnames, filenames in os.walk(artifacts_root, followlinks=False):
        base = Path(dirpath)
        for filename in filenames:
            path = base / filename
            if path.is_symlink() or not path.is_file():
                logger.warning("Skipping non-regular file in artifacts: %s", path)
                continue
            found.append((path.relative_to(artifacts_root).as_posix(), path))
        for dirname in dirnames:
            if (base / dirname).is_symlink():
                logger.warning("Skipping symlinked directory: %s", base / dirname)
    found.sort(key=lambda item: item[0])
    return found


def generate_manifest(source_time: int, artifacts_root: Path) -> Manifest:
    """Generate the manifest of an artifact tree.

    Args:
        source_time: Deterministic source timestamp.
        artifacts_root: Directory holding the pulled artifacts.

    Returns:
        Manifest with one entry per regular file.

    Raises:
        ManifestError: If the tree is missing or a file cannot be read.
    """
    if not artifacts_root.is_dir():
        raise ManifestError(
            f"Artifact directory does not exist: {artifacts_root}",
            code="artifacts_missing",
        )

    files: dict[str, str] = {}
    for relative_path, path in iter_artifact_files(artifacts_root):
        try:
            files[relative_path] = compute_file_hash(path)
        except OSError as e:
            raise ManifestError(
                f"Failed to hash {relative_path}: {e}", code="hash_error"
            ) from e
        logger.debug("Hashed artifact %s", relative_path)

    logger.info("Generated manifest for %d artifacts", len(files))
    return Manifest(time=source_time, files=files)


def write_manifest(manifest: Manifest, output_path: Path) -> Path:
    """Write manifest to a JSON file and sync it to disk.

    Args:
        manifest: Manifest to write.
        output_path: Output file path.

    Returns:
        Path to written manifest file.

    Raises:
        ManifestError: If writing or syncing fails.
    """
    try:
        with output_path.open("w", encoding="utf-8") as f:
            f.write(manifest.to_json())
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise ManifestError(
            f"Failed to write manifest {output_path}: {e}", code="write_error"
        ) from e

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def load_manifest(path: Path) -> Manifest:
    """Load a manifest written by write_manifest().

    Raises:
        ManifestError: If the file is missing or malformed.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}", code="not_found") from e
    except (OSError, ValueError) as e:
        raise ManifestError(f"Failed to read manifest {path}: {e}") from e

    time = data.get("time") if isinstance(data, dict) else None
    files = data.get("files") if isinstance(data, dict) else None
    if not isinstance(time, int) or not isinstance(files, dict):
        raise ManifestError(f"Malformed manifest: {path}", code="malformed")
    return Manifest(time=time, files=dict(sorted(files.items())))


def verify_manifest(output_dir: Path) -> ManifestVerification:
    """Re-hash a published output and compare it with its manifest.

    Args:
        output_dir: Build output directory holding ``manifest.json`` and
            the ``artifacts`` directory.

    Returns:
        ManifestVerification listing every difference.

    Raises:
        ManifestError: If the manifest or artifact directory is unusable.
    """
    manifest = load_manifest(output_dir / MANIFEST_FILENAME)
    actual = generate_manifest(manifest.time, output_dir / ARTIFACTS_DIRNAME)

    result = ManifestVerification()
    for path, digest in manifest.files.items():
        if path not in actual.files:
            result.missing.append(path)
        elif actual.files[path] != digest:
            result.mismatched.append(path)
    result.unexpected = [p for p in actual.files if p not in manifest.files]

    if result.ok:
        logger.info("Verified %d artifacts in %s", len(manifest.files), output_dir)
    else:
        logger.warning(
            "Verification failed for %s: %d missing, %d unexpected, %d mismatched",
            output_dir,
            len(result.missing),
            len(result.unexpected),
            len(result.mismatched),
        )
    return result


__all__ = [
    "ARTIFACTS_DIRNAME",
    "HASH_CHUNK_SIZE",
    "MANIFEST_FILENAME",
    "Manifest",
    "ManifestError",
    "ManifestVerification",
    "compute_file_hash",
    "generate_manifest",
    "iter_artifact_files",
    "load_manifest",
    "verify_manifest",
    "write_manifest",
]
