"""Tests for macbridge/remote_fs.py — probes, home expansion and project upload."""

from __future__ import annotations

import os
import posixpath
from pathlib import Path

import pytest

from macbridge.cancellation import CancellationToken
from macbridge.constants import GET_HOME
from macbridge.output import CallbackOutputSink, OutputChannel
from macbridge.remote_fs import RemoteFileSystem, TransferSummary
from macbridge.utils.path_helpers import remote_path_for

from conftest import HOME, FakeConnection, FakeSFTP

BASE = "~/Library/Caches/MacBridge/Build/App/abc123/"
EXPANDED_BASE = HOME + "/Library/Caches/MacBridge/Build/App/abc123/"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def written() -> list[tuple[str, OutputChannel]]:
    return []


@pytest.fixture()
def remote_fs(fake_connection: FakeConnection, written: list) -> RemoteFileSystem:
    sink = CallbackOutputSink(on_write=lambda m, c: written.append((m, c)))
    return RemoteFileSystem(fake_connection, sink, concurrency=4)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A small MAUI-shaped project tree with build output directories."""
    root = tmp_path / "App"
    (root / "Platforms" / "MacCatalyst").mkdir(parents=True)
    (root / "bin" / "Debug").mkdir(parents=True)
    (root / "obj").mkdir()
    (root / "App.csproj").write_text("<Project />", encoding="utf-8")
    (root / "MainPage.xaml.cs").write_text("class MainPage {}", encoding="utf-8")
    (root / "Platforms" / "MacCatalyst" / "Program.cs").write_text("class Program {}", encoding="utf-8")
    (root / "bin" / "Debug" / "App.dll").write_bytes(b"\x00" * 64)
    (root / "obj" / "project.assets.json").write_text("{}", encoding="utf-8")
    return root


def _remote(local: Path) -> str:
    return remote_path_for(local.resolve(), EXPANDED_BASE)


# ---------------------------------------------------------------------------
# Home expansion
# ---------------------------------------------------------------------------


class TestExpandHome:
    def test_tilde_replaced(self, remote_fs: RemoteFileSystem) -> None:
        assert remote_fs.expand_home_path("~/build") == HOME + "/build"
        assert remote_fs.expand_home_path("~") == HOME

    def test_idempotent(self, remote_fs: RemoteFileSystem) -> None:
        once = remote_fs.expand_home_path("~/a/b")
        assert remote_fs.expand_home_path(once) == once

    def test_colons_dropped(self, remote_fs: RemoteFileSystem) -> None:
        assert remote_fs.expand_home_path("/x/C:/src") == "/x/C/src"

    def test_home_resolved_once(
        self, remote_fs: RemoteFileSystem, fake_connection: FakeConnection
    ) -> None:
        remote_fs.expand_home_path("~/a")
        remote_fs.expand_home_path("~/b")
        assert fake_connection.commands.count(GET_HOME) == 1

    def test_unresolvable_home(self, fake_sftp: FakeSFTP) -> None:
        fs = RemoteFileSystem(FakeConnection(fake_sftp, {GET_HOME: None}))
        assert fs.expand_home_path("~/a") is None
        assert fs.expand_home_path("/abs") == "/abs"


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class TestProbes:
    def test_directory_and_file(self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP) -> None:
        fake_sftp.add_file(HOME + "/vsdbg/vsdbg", b"#!")
        assert remote_fs.directory_exists("~/vsdbg")
        assert not remote_fs.file_exists("~/vsdbg")
        assert remote_fs.file_exists("~/vsdbg/vsdbg")
        assert not remote_fs.directory_exists("~/vsdbg/vsdbg")

    def test_missing_is_false(self, remote_fs: RemoteFileSystem) -> None:
        assert not remote_fs.directory_exists("~/nope")
        assert not remote_fs.file_exists("~/nope.txt")

    def test_file_exists_newer_than(self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP) -> None:
        fake_sftp.add_file(HOME + "/a.cs", b"x", mtime=1000)
        assert remote_fs.file_exists_newer_than("~/a.cs", 999.5)
        assert remote_fs.file_exists_newer_than("~/a.cs", 1000.9)
        assert not remote_fs.file_exists_newer_than("~/a.cs", 1001)
        assert not remote_fs.file_exists_newer_than("~/missing.cs", 0)


# ---------------------------------------------------------------------------
# Directories and files
# ---------------------------------------------------------------------------


class TestCreateDirectory:
    def test_creates_missing_parents(self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP) -> None:
        assert remote_fs.create_directory_recursive("~/a/b/c")
        assert {HOME + "/a", HOME + "/a/b", HOME + "/a/b/c"} <= fake_sftp.dirs

    def test_existing_is_fine(self, remote_fs: RemoteFileSystem) -> None:
        assert remote_fs.create_directory_recursive("~")
        assert remote_fs.create_directory_recursive("~/a")
        assert remote_fs.create_directory_recursive("~/a")

    def test_file_in_the_way(self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP) -> None:
        fake_sftp.add_file(HOME + "/a", b"")
        assert not remote_fs.create_directory_recursive("~/a/b")

    def test_traversal_rejected(self, remote_fs: RemoteFileSystem) -> None:
        assert not remote_fs.create_directory_recursive("~/a/../../etc")


class TestUploadFile:
    def test_replaces_existing_file(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, tmp_path: Path
    ) -> None:
        local = tmp_path / "a.cs"
        local.write_bytes(b"new")
        fake_sftp.add_file(HOME + "/a.cs", b"old", mtime=1)

        remote_fs.upload_file(local, HOME + "/a.cs")

        remote = fake_sftp.files[HOME + "/a.cs"]
        assert remote.data == b"new"
        assert remote.mtime == int(local.stat().st_mtime)
        assert HOME + "/a.cs.tmp" not in fake_sftp.files

    def test_invalid_destination(self, remote_fs: RemoteFileSystem, tmp_path: Path) -> None:
        local = tmp_path / "a.cs"
        local.write_bytes(b"x")
        with pytest.raises(ValueError):
            remote_fs.upload_file(local, "")


# ---------------------------------------------------------------------------
# Directory transfer
# ---------------------------------------------------------------------------


class TestTransferDirectory:
    def test_mirrors_tree_under_base(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        summary = remote_fs.transfer_directory(project, BASE)

        assert summary
        assert len(summary.uploaded) == 5
        program = project / "Platforms" / "MacCatalyst" / "Program.cs"
        assert fake_sftp.files[_remote(program)].data == b"class Program {}"

    def test_excluded_directories_skipped(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        summary = remote_fs.transfer_directory(project, BASE, exclude_dir_names={"bin", "obj"})

        assert len(summary.uploaded) == 3
        assert _remote(project / "bin" / "Debug" / "App.dll") not in fake_sftp.files
        assert _remote(project / "obj" / "project.assets.json") not in fake_sftp.files

    def test_second_transfer_uploads_nothing(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        remote_fs.transfer_directory(project, BASE)
        fake_sftp.uploads.clear()

        summary = remote_fs.transfer_directory(project, BASE)

        assert summary
        assert fake_sftp.uploads == []
        assert len(summary.skipped) == 5

    def test_modified_file_uploaded_again(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        remote_fs.transfer_directory(project, BASE)
        page = project / "MainPage.xaml.cs"
        page.write_text("class MainPage { int x; }", encoding="utf-8")
        stamp = page.stat().st_mtime + 100
        os.utime(page, (stamp, stamp))
        fake_sftp.uploads.clear()

        summary = remote_fs.transfer_directory(project, BASE)

        assert fake_sftp.uploads == [_remote(page)]
        assert fake_sftp.files[_remote(page)].data == b"class MainPage { int x; }"
        assert summary.uploaded == [str(page.resolve())]

    def test_without_timestamps_everything_uploads(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        remote_fs.transfer_directory(project, BASE)
        summary = remote_fs.transfer_directory(project, BASE, preserve_timestamps=False)
        assert len(summary.uploaded) == 5

    def test_progress_written_to_build_channel(
        self, remote_fs: RemoteFileSystem, project: Path, written: list
    ) -> None:
        remote_fs.transfer_directory(project, BASE, exclude_dir_names={"bin", "obj", "Platforms"})
        messages = sorted(m for m, c in written if c is OutputChannel.BUILD)
        assert len(messages) == 2
        assert all(m.startswith("Transferred ") for m in messages)

    def test_cancel_keeps_already_sent_files(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        remote_fs.transfer_directory(project, BASE, exclude_dir_names={"bin"})
        before = dict(fake_sftp.files)
        token = CancellationToken()
        token.cancel()

        summary = remote_fs.transfer_directory(project, BASE, cancel_token=token)

        assert not summary
        assert summary.cancelled
        assert summary.uploaded == []
        assert fake_sftp.files == before

    def test_missing_local_directory(self, remote_fs: RemoteFileSystem, tmp_path: Path) -> None:
        summary = remote_fs.transfer_directory(tmp_path / "gone", BASE)
        assert not summary
        assert summary.failed

    def test_failed_upload_makes_summary_falsy(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        def broken_rename(old: str, new: str) -> None:
            raise OSError("Permission denied")

        fake_sftp.rename = broken_rename
        summary = remote_fs.transfer_directory(project, BASE, exclude_dir_names={"bin", "obj"})
        assert not summary
        assert len(summary.failed) == 3

    def test_dangling_symlink_is_skipped(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        os.symlink(project / "Deleted.cs", project / "Stale.cs")

        summary = remote_fs.transfer_directory(project, BASE, exclude_dir_names={"bin", "obj"})

        assert summary
        assert len(summary.uploaded) == 3
        assert _remote(project / "Stale.cs") not in fake_sftp.files

    def test_removed_remote_directories_recreated(
        self, remote_fs: RemoteFileSystem, fake_sftp: FakeSFTP, project: Path
    ) -> None:
        remote_fs.transfer_directory(project, BASE)
        fake_sftp.files.clear()
        fake_sftp.dirs = {"/"}

        summary = remote_fs.transfer_directory(project, BASE)

        assert summary
        program = _remote(project / "Platforms" / "MacCatalyst" / "Program.cs")
        assert posixpath.dirname(program) in fake_sftp.dirs
        assert program in fake_sftp.files


class TestTransferSummary:
    def test_empty_is_truthy(self) -> None:
        assert TransferSummary()

    def test_cancelled_is_falsy(self) -> None:
        assert not TransferSummary(cancelled=True)
