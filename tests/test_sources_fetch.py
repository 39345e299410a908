"""Tests for source fetching.

Git is mocked at subprocess.run and HTTP downloads with respx, so no
network access or git installation is needed.
"""

import io
import os
import subprocess
import tarfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx
from pydantic import ValidationError

from buildchain.config import Settings
from buildchain.sources.fetch import (
    FetchError,
    Source,
    download_archive,
    download_source,
    extract_archive,
    fetch_dir,
    fetch_git,
    fetch_tar,
    split_revision,
)
from buildchain.types import SourceKind


def make_tarball(path: Path, members: dict[str, tuple[bytes, int]]) -> Path:
    """Write a gzip tarball of name -> (content, mtime)."""
    with tarfile.open(path, "w:gz") as tar:
        for name, (content, mtime) in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mtime = mtime
            tar.addfile(info, io.BytesIO(content))
    return path


def tarball_bytes(members: dict[str, tuple[bytes, int]]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, (content, mtime) in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mtime = mtime
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class TestSource:
    """Tests for the Source model."""

    def test_default_kind_is_git(self):
        """Sources default to git."""
        assert Source(url="https://example.com/r.git").kind is SourceKind.GIT

    def test_empty_url_rejected(self):
        """An empty URL is not a source."""
        with pytest.raises(ValidationError):
            Source(url="")

    def test_split_revision(self):
        """A #rev suffix should be split off the URL."""
        assert split_revision("https://x/r.git#v1.0") == ("https://x/r.git", "v1.0")
        assert split_revision("https://x/r.git") == ("https://x/r.git", None)
        assert split_revision("https://x/r.git#") == ("https://x/r.git", None)


class TestFetchGit:
    """Tests for fetch_git with mocked git."""

    def test_clone_and_commit_time(self, tmp_path: Path):
        """fetch_git should clone and return the commit time."""
        dest = tmp_path / "source"
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="1700000000\n")
            source_time = fetch_git("https://example.com/r.git", dest)

        assert source_time == 1700000000
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands == [
            ["git", "clone", "--quiet", "https://example.com/r.git", str(dest)],
            ["git", "-C", str(dest), "log", "-1", "--format=%ct"],
        ]

    def test_checkout_revision(self, tmp_path: Path):
        """A #rev suffix should check out that revision detached."""
        dest = tmp_path / "source"
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="5\n")
            fetch_git("https://example.com/r.git#abc123", dest, git_binary="/bin/git")

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[0][3] == "https://example.com/r.git"
        assert commands[1] == [
            "/bin/git",
            "-C",
            str(dest),
            "checkout",
            "--quiet",
            "--detach",
            "abc123",
        ]

    def test_clone_failure(self, tmp_path: Path):
        """A failed clone should raise git_error with stderr."""
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.CalledProcessError(
                128, ["git", "clone"], stderr="repository not found\n"
            )
            with pytest.raises(FetchError) as exc_info:
                fetch_git("https://example.com/r.git", tmp_path / "source")

        assert exc_info.value.code == "git_error"
        assert "repository not found" in str(exc_info.value)

    def test_timeout(self, tmp_path: Path):
        """A git timeout should raise timeout."""
        with patch("subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=1)
            with pytest.raises(FetchError) as exc_info:
                fetch_git("https://example.com/r.git", tmp_path / "s", timeout=1)

        assert exc_info.value.code == "timeout"

    def test_bad_commit_time(self, tmp_path: Path):
        """Unparseable log output should raise git_error."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="garbage")
            with pytest.raises(FetchError) as exc_info:
                fetch_git("https://example.com/r.git", tmp_path / "s")

        assert exc_info.value.code == "git_error"


class TestDownloadArchive:
    """Tests for download_archive."""

    @respx.mock
    def test_successful_download(self, tmp_path: Path):
        """Should stream the response body to disk."""
        respx.get("https://example.com/src.tar.gz").mock(
            return_value=httpx.Response(200, content=b"data")
        )

        dest = tmp_path / "src.tar.gz"
        with httpx.Client() as client:
            size = download_archive(client, "https://example.com/src.tar.gz", dest)

        assert size == 4
        assert dest.read_bytes() == b"data"

    @respx.mock
    def test_http_error(self, tmp_path: Path):
        """HTTP errors should raise http_error."""
        respx.get("https://example.com/src.tar.gz").mock(
            return_value=httpx.Response(404)
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_archive(
                client, "https://example.com/src.tar.gz", tmp_path / "src.tar.gz"
            )

        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)

    @respx.mock
    def test_timeout(self, tmp_path: Path):
        """Timeouts should raise timeout."""
        respx.get("https://example.com/src.tar.gz").mock(
            side_effect=httpx.ReadTimeout("slow")
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_archive(
                client, "https://example.com/src.tar.gz", tmp_path / "src.tar.gz"
            )

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, tmp_path: Path):
        """Connection failures should raise network_error."""
        respx.get("https://example.com/src.tar.gz").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_archive(
                client, "https://example.com/src.tar.gz", tmp_path / "src.tar.gz"
            )

        assert exc_info.value.code == "network_error"


class TestExtractArchive:
    """Tests for extract_archive."""

    def test_single_top_level_dir_unwrapped(self, tmp_path: Path):
        """A release-style tarball should become the source root."""
        archive = make_tarball(
            tmp_path / "src.tar.gz",
            {
                "hello-1.0/Makefile": (b"all:\n", 1000),
                "hello-1.0/src/main.c": (b"int main;\n", 2000),
            },
        )

        source_time = extract_archive(archive, tmp_path / "source")

        assert source_time == 2000
        assert (tmp_path / "source" / "Makefile").read_bytes() == b"all:\n"
        assert (tmp_path / "source" / "src" / "main.c").exists()

    def test_flat_archive(self, tmp_path: Path):
        """Archives with several top-level entries are kept as-is."""
        archive = make_tarball(
            tmp_path / "src.tar.gz",
            {"Makefile": (b"all:\n", 10), "README": (b"hi\n", 20)},
        )

        extract_archive(archive, tmp_path / "source")

        assert sorted(p.name for p in (tmp_path / "source").iterdir()) == [
            "Makefile",
            "README",
        ]

    def test_no_scratch_left_behind(self, tmp_path: Path):
        """The scratch extraction directory should be removed."""
        archive = make_tarball(
            tmp_path / "src.tar.gz", {"hello/Makefile": (b"all:\n", 1)}
        )

        extract_archive(archive, tmp_path / "source")

        assert not [p for p in tmp_path.iterdir() if p.name.startswith(".extract-")]

    def test_path_traversal_rejected(self, tmp_path: Path):
        """Members escaping the destination should be refused."""
        archive = make_tarball(tmp_path / "evil.tar.gz", {"../evil": (b"x", 1)})

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "source")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "source").exists()

    def test_empty_archive(self, tmp_path: Path):
        """An empty archive has no source."""
        archive = make_tarball(tmp_path / "empty.tar.gz", {})

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "source")

        assert exc_info.value.code == "empty_archive"

    def test_not_a_tarball(self, tmp_path: Path):
        """Invalid archives should raise tar_error."""
        archive = tmp_path / "bad.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(FetchError) as exc_info:
            extract_archive(archive, tmp_path / "source")

        assert exc_info.value.code == "tar_error"


class TestFetchTar:
    """Tests for fetch_tar."""

    def test_local_archive(self, tmp_path: Path):
        """A local path should be extracted directly."""
        archive = make_tarball(tmp_path / "src.tar.gz", {"a/f": (b"x", 42)})

        assert fetch_tar(str(archive), tmp_path / "source") == 42

    def test_missing_local_archive(self, tmp_path: Path):
        """A missing local archive should raise not_found."""
        with pytest.raises(FetchError) as exc_info:
            fetch_tar(str(tmp_path / "missing.tar.gz"), tmp_path / "source")
        assert exc_info.value.code == "not_found"

    @respx.mock
    def test_remote_archive(self, tmp_path: Path):
        """A URL should be downloaded, extracted and the download removed."""
        respx.get("https://example.com/hello.tar.gz").mock(
            return_value=httpx.Response(
                200, content=tarball_bytes({"hello/Makefile": (b"all:\n", 77)})
            )
        )

        with httpx.Client() as client:
            source_time = fetch_tar(
                "https://example.com/hello.tar.gz", tmp_path / "source", client=client
            )

        assert source_time == 77
        assert (tmp_path / "source" / "Makefile").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["source"]


class TestFetchDir:
    """Tests for fetch_dir."""

    def test_copy_and_newest_mtime(self, tmp_path: Path):
        """The tree is copied and source time is the newest mtime."""
        src = tmp_path / "src"
        (src / "sub").mkdir(parents=True)
        (src / "a").write_text("a")
        (src / "sub" / "b").write_text("b")
        os.utime(src / "a", (100, 100))
        os.utime(src / "sub" / "b", (300, 300))

        source_time = fetch_dir(str(src), tmp_path / "source")

        assert source_time == 300
        assert (tmp_path / "source" / "sub" / "b").read_text() == "b"

    def test_missing_dir(self, tmp_path: Path):
        """A missing directory should raise not_found."""
        with pytest.raises(FetchError) as exc_info:
            fetch_dir(str(tmp_path / "nope"), tmp_path / "source")
        assert exc_info.value.code == "not_found"


class TestDownloadSource:
    """Tests for download_source dispatch."""

    def test_destination_exists(self, tmp_path: Path):
        """An existing destination should be refused."""
        (tmp_path / "source").mkdir()
        with pytest.raises(FetchError) as exc_info:
            download_source(
                Source(kind=SourceKind.DIR, url=str(tmp_path)), tmp_path / "source"
            )
        assert exc_info.value.code == "destination_exists"

    def test_dir_source(self, tmp_path: Path):
        """Directory sources should be copied."""
        src = tmp_path / "src"
        src.mkdir()
        (src / "f").write_text("x")
        os.utime(src / "f", (55, 55))

        source_time = download_source(
            Source(kind=SourceKind.DIR, url=str(src)), tmp_path / "ws" / "source"
        )

        assert source_time == 55
        assert (tmp_path / "ws" / "source" / "f").exists()

    def test_git_uses_settings(self, tmp_path: Path):
        """Git sources should use the configured git binary and timeout."""
        settings = Settings(git_binary="/opt/git", download_timeout=30, _env_file=None)
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="9\n")
            source_time = download_source(
                Source(url="https://example.com/r.git"),
                tmp_path / "source",
                settings=settings,
            )

        assert source_time == 9
        assert mock_run.call_args.args[0][0] == "/opt/git"
        assert mock_run.call_args.kwargs["timeout"] == 30
