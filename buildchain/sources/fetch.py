"""Source fetch module.

This module handles:
- Cloning git repositories and reading the commit timestamp
- Downloading and extracting source tarballs
- Copying local source directories

Every fetch returns a ``source_time``: an integer timestamp derived from
the source itself (commit time, newest archive member, newest file), so
fetching the same immutable reference twice yields the same value.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ConfigDict, Field

from buildchain.types import SourceKind

if TYPE_CHECKING:
    from buildchain.config import Settings

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class FetchError(Exception):
    """Raised when a source cannot be fetched."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        """Initialize FetchError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class Source(BaseModel):
    """Reference to fetchable source content.

    Attributes:
        kind: How to fetch (git, tar, dir).
        url: Repository URL (optionally ``#<rev>``), archive URL or path.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: SourceKind = Field(default=SourceKind.GIT, description="Source kind")
    url: str = Field(min_length=1, description="Source location")


def split_revision(url: str) -> tuple[str, str | None]:
    """Split ``url#rev`` into the URL and an optional revision."""
    base, sep, rev = url.partition("#")
    return base, (rev if sep and rev else None)


def _git(
    git_binary: str,
    args: list[str],
    timeout: float | None,
) -> str:
    cmd = [git_binary, *args]
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s", cmd_str)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise FetchError(
            f"{cmd_str} timed out after {timeout}s", code="timeout"
        ) from e
    except subprocess.CalledProcessError as e:
        raise FetchError(
            f"{cmd_str} failed: {(e.stderr or '').strip()}", code="git_error"
        ) from e
    except OSError as e:
        raise FetchError(
            f"Failed to run {cmd_str}: {e}", code="execution_error"
        ) from e
    return result.stdout


def fetch_git(
    url: str,
    destination: Path,
    git_binary: str = "git",
    timeout: float | None = DOWNLOAD_TIMEOUT,
) -> int:
    """Clone a git repository and return its HEAD commit time.

    Args:
        url: Repository URL, optionally suffixed with ``#<rev>``.
        destination: Directory to clone into (must not exist).
        git_binary: Git executable.
        timeout: Timeout in seconds for each git command.

    Returns:
        Committer timestamp of the checked-out commit.

    Raises:
        FetchError: If cloning, checkout or log fails.
    """
    repo_url, rev = split_revision(url)
    logger.info("Cloning %s into %s", repo_url, destination)
    _git(git_binary, ["clone", "--quiet", repo_url, str(destination)], timeout)

    if rev:
        logger.info("Checking out %s", rev)
        _git(
            git_binary,
            ["-C", str(destination), "checkout", "--quiet", "--detach", rev],
            timeout,
        )

    output = _git(
        git_binary, ["-C", str(destination), "log", "-1", "--format=%ct"], timeout
    )
    try:
        return int(output.strip())
    except ValueError as e:
        raise FetchError(
            f"Unexpected commit time from git: {output!r}", code="git_error"
        ) from e


def download_archive(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download a file over HTTP(S).

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes written.

    Raises:
        FetchError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP error downloading {url}: {e.response.status_code} "
            f"{e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e

    logger.info("Downloaded %s (%d bytes)", url, total_bytes)
    return total_bytes


def extract_archive(archive_path: Path, destination: Path) -> int:
    """Extract a tar archive to ``destination``.

    A single top-level directory (as in release tarballs) is unwrapped so
    that ``destination`` is the source root.

    Args:
        archive_path: Path to the archive (any compression tarfile reads).
        destination: Directory to create with the extracted tree.

    Returns:
        Newest member modification time.

    Raises:
        FetchError: If the archive is invalid, empty or unsafe.
    """
    logger.info("Extracting %s to %s", archive_path.name, destination)

    scratch = Path(tempfile.mkdtemp(prefix=".extract-", dir=destination.parent))
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise FetchError(
                    f"Archive {archive_path} is empty", code="empty_archive"
                )
            for member in members:
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise FetchError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            source_time = max(int(member.mtime) for member in members)
            tar.extractall(scratch, filter="data")

        entries = list(scratch.iterdir())
        if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
            entries[0].rename(destination)
        else:
            scratch.rename(destination)
    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    except OSError as e:
        raise FetchError(
            f"OS error extracting {archive_path}: {e}", code="os_error"
        ) from e
    finally:
        if scratch.exists():
            shutil.rmtree(scratch, ignore_errors=True)

    return source_time


def fetch_tar(
    url: str,
    destination: Path,
    client: httpx.Client | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> int:
    """Fetch a source tarball from a URL or a local path.

    Returns:
        Newest member modification time.
    """
    if not url.startswith(("http://", "https://")):
        archive_path = Path(url).expanduser()
        if not archive_path.is_file():
            raise FetchError(f"Archive not found: {url}", code="not_found")
        return extract_archive(archive_path, destination)

    with tempfile.NamedTemporaryFile(
        dir=destination.parent, suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        if client is None:
            with httpx.Client(follow_redirects=True) as owned_client:
                download_archive(owned_client, url, tmp_path, timeout=timeout)
        else:
            download_archive(client, url, tmp_path, timeout=timeout)
        return extract_archive(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


def fetch_dir(path: str, destination: Path) -> int:
    """Copy a local source directory.

    Returns:
        Newest file modification time (whole seconds).
    """
    source_dir = Path(path).expanduser()
    if not source_dir.is_dir():
        raise FetchError(f"Source directory not found: {path}", code="not_found")

    logger.info("Copying %s to %s", source_dir, destination)
    try:
        shutil.copytree(source_dir, destination, symlinks=True)
    except OSError as e:
        raise FetchError(f"Failed to copy {source_dir}: {e}", code="os_error") from e

    newest = 0
    for dirpath, _dirnames, filenames in os.walk(source_dir):
        for filename in filenames:
            file_path = Path(dirpath) / filename
            newest = max(newest, int(file_path.lstat().st_mtime))
    return newest


def download_source(
    source: Source,
    destination: Path,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> int:
    """Fetch ``source`` into ``destination`` and return its source time.

    Args:
        source: Source reference.
        destination: Directory to create with the source tree.
        settings: Application settings (tool paths, timeouts).
        client: Optional HTTPX client for tarball downloads.

    Returns:
        Deterministic source timestamp.

    Raises:
        FetchError: If the source cannot be fetched.
    """
    git_binary = settings.git_binary if settings else "git"
    timeout = settings.download_timeout if settings else DOWNLOAD_TIMEOUT

    if destination.exists():
        raise FetchError(
            f"Destination already exists: {destination}", code="destination_exists"
        )
    destination.parent.mkdir(parents=True, exist_ok=True)

    if source.kind is SourceKind.GIT:
        source_time = fetch_git(source.url, destination, git_binary, timeout)
    elif source.kind is SourceKind.TAR:
        source_time = fetch_tar(source.url, destination, client, timeout)
    else:
        source_time = fetch_dir(source.url, destination)

    logger.info(
        "Fetched %s source %s (time %d)", source.kind.value, source.url, source_time
    )
    return source_time


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "FetchError",
    "Source",
    "download_archive",
    "download_source",
    "extract_archive",
    "fetch_dir",
    "fetch_git",
    "fetch_tar",
    "split_revision",
]
