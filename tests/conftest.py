"""Shared fakes for the remote side of the bridge.

``FakeSFTP`` is an in-memory, thread-safe stand-in for
``paramiko.SFTPClient``; ``FakeConnection`` answers ``run_command`` from a
table of canned outputs; ``MemoryStorage`` replaces the OS keyring.
"""

from __future__ import annotations

import errno
import io
import json
import posixpath
import stat as _stat
import threading
import time
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest
from paramiko import SFTPAttributes

from macbridge.bridge import MacBridge
from macbridge.config import BridgeSettings
from macbridge.constants import GET_DOTNET_SYMLINK, GET_HOME
from macbridge.local import LocalToolchain
from macbridge.models import ProjectDescriptor, RemoteConnection
from macbridge.output import CallbackOutputSink
from macbridge.storage import ConnectionStore, SecureStorage

HOME = "/Users/dev"


@dataclass
class _RemoteFile:
    data: bytes
    mtime: int = field(default_factory=lambda: int(time.time()))


class _FakeHandle:
    def __init__(self, sftp: FakeSFTP, path: str) -> None:
        self._sftp = sftp
        self._path = path
        self._buffer = io.BytesIO()

    def set_pipelined(self, pipelined: bool = True) -> None:
        pass

    def write(self, data: bytes) -> None:
        self._buffer.write(data)

    def close(self) -> None:
        self._sftp._store(self._path, self._buffer.getvalue())

    def __enter__(self) -> _FakeHandle:
        return self

    def __exit__(self, *exc_info) -> bool:
        self.close()
        return False


class FakeSFTP:
    """In-memory SFTP server with SFTPv3 rename semantics."""

    def __init__(self) -> None:
        self.files: dict[str, _RemoteFile] = {}
        self.dirs: set[str] = {"/"}
        self.uploads: list[str] = []
        self.closed = 0
        self._lock = threading.Lock()

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(path) if path not in ("", "/") else "/"

    def _store(self, path: str, data: bytes) -> None:
        with self._lock:
            self.files[self._norm(path)] = _RemoteFile(data)

    def add_dir(self, path: str) -> None:
        parts = [p for p in self._norm(path).split("/") if p]
        current = ""
        for part in parts:
            current = f"{current}/{part}"
            self.dirs.add(current)

    def add_file(self, path: str, data: bytes = b"", mtime: int | None = None) -> None:
        self.add_dir(posixpath.dirname(path))
        remote = _RemoteFile(data)
        if mtime is not None:
            remote.mtime = mtime
        self.files[self._norm(path)] = remote

    # paramiko.SFTPClient surface -------------------------------------

    def stat(self, path: str) -> SFTPAttributes:
        path = self._norm(path)
        attrs = SFTPAttributes()
        with self._lock:
            if path in self.dirs:
                attrs.st_mode = _stat.S_IFDIR | 0o755
                attrs.st_mtime = 0
                return attrs
            if path in self.files:
                remote = self.files[path]
                attrs.st_mode = _stat.S_IFREG | 0o644
                attrs.st_size = len(remote.data)
                attrs.st_mtime = remote.mtime
                return attrs
        raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        path = self._norm(path)
        with self._lock:
            if path in self.dirs or path in self.files:
                raise OSError(errno.EEXIST, "Failure", path)
            if posixpath.dirname(path) not in self.dirs:
                raise FileNotFoundError(errno.ENOENT, "No such file", path)
            self.dirs.add(path)

    def open(self, path: str, mode: str = "r") -> _FakeHandle:
        return _FakeHandle(self, path)

    def rename(self, old: str, new: str) -> None:
        old, new = self._norm(old), self._norm(new)
        with self._lock:
            if new in self.files:
                raise OSError(errno.EEXIST, "Failure", new)
            self.files[new] = self.files.pop(old)
            self.uploads.append(new)

    def remove(self, path: str) -> None:
        with self._lock:
            if self.files.pop(self._norm(path), None) is None:
                raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def utime(self, path: str, times: tuple[int, int]) -> None:
        with self._lock:
            self.files[self._norm(path)].mtime = int(times[1])

    def close(self) -> None:
        self.closed += 1


class FakeConnection:
    """Connected :class:`SSHConnection` stand-in with canned command output."""

    def __init__(self, sftp: FakeSFTP, responses: dict[str, str | None] | None = None) -> None:
        self.sftp = sftp
        self.responses: dict[str, str | None] = {GET_HOME: HOME}
        self.responses.update(responses or {})
        self.commands: list[str] = []
        self.is_connected = True
        self.connect = MagicMock()
        self.run_command_streamed = MagicMock(return_value=True)
        self.disconnect = MagicMock()

    def run_command(self, command: str) -> str | None:
        self.commands.append(command)
        return self.responses.get(command, "")

    def get_sftp(self) -> FakeSFTP:
        return self.sftp

    def open_sftp_channel(self) -> FakeSFTP:
        return self.sftp


@pytest.fixture()
def fake_sftp() -> FakeSFTP:
    sftp = FakeSFTP()
    sftp.add_dir(HOME)
    return sftp


@pytest.fixture()
def fake_connection(fake_sftp: FakeSFTP) -> FakeConnection:
    return FakeConnection(fake_sftp)


class MemoryStorage(SecureStorage):
    """Dict-backed :class:`SecureStorage` that round-trips through JSON."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def save(self, key: str, value) -> bool:
        self.values[key] = json.dumps(value)
        return True

    def get(self, key: str):
        raw = self.values.get(key)
        return None if raw is None else json.loads(raw)

    def remove(self, key: str) -> bool:
        return self.values.pop(key, None) is not None


@pytest.fixture()
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def store(memory_storage: MemoryStorage) -> ConnectionStore:
    return ConnectionStore(memory_storage)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

DOTNET_LISTING = (
    "lrwxr-xr-x  1 root  wheel  34 Jan  1 12:00 /usr/local/bin/dotnet"
    " -> /usr/local/share/dotnet/dotnet"
)
REMOTE_DOTNET = "/usr/local/share/dotnet/dotnet"


@pytest.fixture()
def output_log() -> dict[str, list]:
    """Everything the bridge wrote: ``write`` lines and ``status`` messages."""
    return {"write": [], "status": []}


@pytest.fixture()
def bridge(
    fake_connection: FakeConnection, store: ConnectionStore, output_log: dict[str, list]
) -> MacBridge:
    """A bridge whose connection factory always returns *fake_connection*.

    ``studio`` (192.168.1.20) is paired with password ``secret``.
    """
    sink = CallbackOutputSink(
        on_write=lambda message, channel: output_log["write"].append((message, channel)),
        on_status=lambda message, title, level: output_log["status"].append(
            (message, title, level)
        ),
    )
    fake_connection.responses[GET_DOTNET_SYMLINK] = DOTNET_LISTING
    store.add(
        RemoteConnection("studio", "dev", ip_address="192.168.1.20", fingerprint="AB:CD"),
        password="secret",
    )
    return MacBridge(
        BridgeSettings(remote_build_path="~/build", transfer_concurrency=2),
        store,
        sink,
        MagicMock(spec=LocalToolchain),
        connection_factory=MagicMock(return_value=fake_connection),
    )


@pytest.fixture()
def maui_project(tmp_path) -> ProjectDescriptor:
    """``src/App/App.csproj`` referencing ``src/Lib/Lib.csproj``."""
    app = tmp_path / "src" / "App"
    lib = tmp_path / "src" / "Lib"
    (app / "obj").mkdir(parents=True)
    lib.mkdir(parents=True)
    (app / "App.csproj").write_text("<Project />", encoding="utf-8")
    (app / "MauiProgram.cs").write_text("class MauiProgram {}", encoding="utf-8")
    (app / "obj" / "project.assets.json").write_text("{}", encoding="utf-8")
    (lib / "Lib.csproj").write_text("<Project />", encoding="utf-8")
    (lib / "Service.cs").write_text("class Service {}", encoding="utf-8")
    return ProjectDescriptor(
        str(app / "App.csproj"), "net8.0-maccatalyst", (str(lib / "Lib.csproj"),)
    )
