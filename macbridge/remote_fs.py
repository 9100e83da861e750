"""Remote filesystem operations over SFTP.

Existence probes, ``~`` expansion, recursive directory creation and an
incremental, bounded-parallel directory upload used to mirror a project
tree onto the Mac.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat as _stat
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

import paramiko
from paramiko import SFTPAttributes

from macbridge.cancellation import CancellationToken
from macbridge.connection import ConnectionError, SSHConnection
from macbridge.constants import GET_HOME
from macbridge.output import OutputChannel, OutputSink
from macbridge.utils.path_helpers import (
    human_readable_size,
    remote_path_for,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256 KB per read/write call
DEFAULT_CONCURRENCY = 10


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class FileOutcome(Enum):
    UPLOADED = auto()
    SKIPPED = auto()
    FAILED = auto()
    CANCELLED = auto()


@dataclass
class TransferSummary:
    """Result of :meth:`RemoteFileSystem.transfer_directory`.

    Truthy only when nothing failed and the run was not cancelled.
    """

    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    cancelled: bool = False

    def __bool__(self) -> bool:
        return not self.failed and not self.cancelled

    def record(self, path: str, outcome: FileOutcome) -> None:
        if outcome is FileOutcome.UPLOADED:
            self.uploaded.append(path)
        elif outcome is FileOutcome.SKIPPED:
            self.skipped.append(path)
        elif outcome is FileOutcome.FAILED:
            self.failed.append(path)
        else:
            self.cancelled = True


class _TransferRun:
    """Per-call state shared by upload workers."""

    def __init__(self, cancel_token: CancellationToken | None) -> None:
        self.cancel_token = cancel_token
        self.local = threading.local()
        self.lock = threading.Lock()
        self.channels: list[paramiko.SFTPClient] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.is_cancelled


# ---------------------------------------------------------------------------
# RemoteFileSystem
# ---------------------------------------------------------------------------


class RemoteFileSystem:
    """Filesystem view of the Mac behind an :class:`SSHConnection`.

    Probes return ``False``/``None`` on failure and log the cause to the
    debug channel; "not found" is an ordinary negative answer.
    """

    def __init__(
        self,
        connection: SSHConnection,
        output: OutputSink | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._connection = connection
        self._output = output or OutputSink()
        self.concurrency = max(1, concurrency)
        self._home: str | None = None
        self._home_lock = threading.Lock()
        self._known_dirs: set[str] = set()
        self._dirs_lock = threading.Lock()

    def _debug(self, message: str) -> None:
        self._output.write(message, OutputChannel.DEBUG)

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def _stat(self, path: str, sftp: paramiko.SFTPClient | None = None) -> SFTPAttributes | None:
        remote = self.expand_home_path(path)
        if remote is None:
            return None
        try:
            return (sftp or self._connection.get_sftp()).stat(remote)
        except FileNotFoundError:
            return None
        except (OSError, paramiko.SSHException, ConnectionError) as exc:
            self._debug(f"stat({remote}) failed: {exc}")
            return None

    def directory_exists(self, path: str) -> bool:
        attrs = self._stat(path)
        return attrs is not None and _stat.S_ISDIR(attrs.st_mode or 0)

    def file_exists(self, path: str) -> bool:
        attrs = self._stat(path)
        return attrs is not None and _stat.S_ISREG(attrs.st_mode or 0)

    def file_exists_newer_than(self, path: str, timestamp: float) -> bool:
        """True if *path* is a file whose mtime is at least *timestamp*.

        SFTP carries whole seconds, so *timestamp* is truncated first.
        """
        attrs = self._stat(path)
        if attrs is None or not _stat.S_ISREG(attrs.st_mode or 0):
            return False
        return (attrs.st_mtime or 0) >= int(timestamp)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def home_directory(self) -> str | None:
        """Remote ``$HOME``, resolved once per instance."""
        with self._home_lock:
            if self._home is None:
                home = self._connection.run_command(GET_HOME)
                if home:
                    self._home = home.strip().rstrip("/") or "/"
                    logger.debug("Remote home directory is %s", self._home)
            return self._home

    def expand_home_path(self, path: str) -> str | None:
        """Replace a leading ``~`` with the remote home directory.

        Drive-letter colons are dropped.  Paths without ``~`` are returned
        unchanged, so the call is idempotent.  Returns ``None`` when the
        home directory cannot be resolved.
        """
        path = path.replace(":", "")
        if not path.startswith("~"):
            return path
        home = self.home_directory()
        if home is None:
            self._debug(f"Could not resolve home directory for {path}")
            return None
        return home + path[1:]

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def create_directory_recursive(
        self, path: str, sftp: paramiko.SFTPClient | None = None
    ) -> bool:
        """Create *path* and any missing parents.  Existing segments are fine."""
        remote = self.expand_home_path(path)
        if remote is None or not validate_remote_path(remote):
            return False
        try:
            sftp = sftp or self._connection.get_sftp()
        except ConnectionError as exc:
            self._debug(str(exc))
            return False

        cumulative = "/" if remote.startswith("/") else ""
        for part in (p for p in remote.split("/") if p):
            cumulative = posixpath.join(cumulative, part) if cumulative else part
            with self._dirs_lock:
                if cumulative in self._known_dirs:
                    continue
            if not self._ensure_directory(sftp, cumulative):
                return False
            with self._dirs_lock:
                self._known_dirs.add(cumulative)
        return True

    def _ensure_directory(self, sftp: paramiko.SFTPClient, path: str) -> bool:
        try:
            attrs = sftp.stat(path)
            if _stat.S_ISDIR(attrs.st_mode or 0):
                return True
            self._debug(f"{path} exists and is not a directory")
            return False
        except FileNotFoundError:
            pass
        except (OSError, paramiko.SSHException) as exc:
            self._debug(f"stat({path}) failed: {exc}")
            return False

        try:
            sftp.mkdir(path)
            return True
        except OSError:
            # Another upload worker may have created it in the meantime.
            try:
                return _stat.S_ISDIR(sftp.stat(path).st_mode or 0)
            except OSError as exc:
                self._debug(f"mkdir({path}) failed: {exc}")
                return False

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str,
        preserve_timestamps: bool = True,
        sftp: paramiko.SFTPClient | None = None,
    ) -> None:
        """Upload one file via a ``.tmp`` sibling, then rename into place.

        Raises:
            ValueError: If *remote_path* fails validation.
            OSError: On local or remote I/O failure.
        """
        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote destination path: {remote_path!r}")

        sftp = sftp or self._connection.get_sftp()
        tmp_remote = remote_path + ".tmp"

        with open(local_path, "rb") as local_fh:
            with sftp.open(tmp_remote, "wb") as remote_fh:
                # Pipelined writes keep many requests in flight; close()
                # still waits for every ACK before the rename below.
                remote_fh.set_pipelined(True)
                _copy_stream(local_fh, remote_fh)

        try:
            sftp.rename(tmp_remote, remote_path)
        except OSError:
            # SFTPv3 rename refuses to overwrite an existing file.
            try:
                sftp.remove(remote_path)
                sftp.rename(tmp_remote, remote_path)
            except OSError as exc:
                raise OSError(f"Failed to finalise upload: {exc}") from exc

        if preserve_timestamps:
            local_stat = os.stat(local_path)
            sftp.utime(remote_path, (int(local_stat.st_atime), int(local_stat.st_mtime)))

    def transfer_directory(
        self,
        local_dir: str | os.PathLike[str],
        remote_base: str,
        exclude_dir_names: Iterable[str] = (),
        preserve_timestamps: bool = True,
        cancel_token: CancellationToken | None = None,
    ) -> TransferSummary:
        """Mirror every file under *local_dir* below *remote_base*.

        Each file lands at ``remote_base`` + its sanitised absolute local
        path.  Directories named in *exclude_dir_names* are skipped at any
        depth.  With *preserve_timestamps*, files whose remote copy is at
        least as new as the local one are not uploaded again.  Cancellation
        stops further uploads; files already sent stay in place.
        """
        summary = TransferSummary()
        root = Path(local_dir)
        if not root.is_dir():
            self._debug(f"Local directory {root} does not exist")
            summary.failed.append(str(root))
            return summary

        base = self.expand_home_path(remote_base)
        if base is None:
            summary.failed.append(str(root))
            return summary

        # The remote tree may have been removed since the last transfer.
        with self._dirs_lock:
            self._known_dirs.clear()

        files = list(_walk_files(root.resolve(), set(exclude_dir_names)))
        logger.info(
            "Transferring %d files (%s) from %s to %s",
            len(files),
            human_readable_size(_total_size(files)),
            root,
            base,
        )

        run = _TransferRun(cancel_token)
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="upload")
        try:
            futures = {
                executor.submit(
                    self._transfer_one, run, path, remote_path_for(path, base), preserve_timestamps
                ): path
                for path in files
            }
            for future in as_completed(futures):
                summary.record(str(futures[future]), future.result())
        finally:
            executor.shutdown(wait=True)
            for channel in run.channels:
                try:
                    channel.close()
                except Exception:
                    logger.debug("Ignoring error while closing SFTP channel", exc_info=True)

        logger.info(
            "Transfer of %s finished: %d uploaded, %d skipped, %d failed%s",
            root,
            len(summary.uploaded),
            len(summary.skipped),
            len(summary.failed),
            " (cancelled)" if summary.cancelled else "",
        )
        return summary

    def _worker_sftp(self, run: _TransferRun) -> paramiko.SFTPClient:
        sftp = getattr(run.local, "sftp", None)
        if sftp is None:
            sftp = self._connection.open_sftp_channel()
            run.local.sftp = sftp
            with run.lock:
                run.channels.append(sftp)
        return sftp

    def _transfer_one(
        self,
        run: _TransferRun,
        local_path: Path,
        remote_path: str,
        preserve_timestamps: bool,
    ) -> FileOutcome:
        if run.cancelled:
            return FileOutcome.CANCELLED
        try:
            sftp = self._worker_sftp(run)
            if preserve_timestamps:
                local_mtime = local_path.stat().st_mtime
                attrs = self._stat(remote_path, sftp)
                if attrs is not None and (attrs.st_mtime or 0) >= int(local_mtime):
                    return FileOutcome.SKIPPED

            if not self.create_directory_recursive(posixpath.dirname(remote_path), sftp):
                self._debug(f"Could not create remote directory for {remote_path}")
                return FileOutcome.FAILED

            self.upload_file(local_path, remote_path, preserve_timestamps, sftp)
        except (OSError, ValueError, paramiko.SSHException, ConnectionError) as exc:
            self._debug(f"Upload of {local_path} failed: {exc}")
            return FileOutcome.FAILED

        self._output.write(f"Transferred {local_path} → {remote_path}", OutputChannel.BUILD)
        return FileOutcome.UPLOADED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _walk_files(root: Path, excluded: set[str]) -> Iterator[Path]:
    """Yield files under *root*, pruning excluded directory names."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for name in sorted(filenames):
            path = Path(dirpath) / name
            # Dangling links and special files have nothing to upload.
            if not path.is_file():
                logger.debug("Skipping %s: not a regular file", path)
                continue
            yield path


def _total_size(paths: Iterable[Path]) -> int:
    total = 0
    for path in paths:
        try:
            total += path.stat().st_size
        except OSError:
            continue
    return total


def _copy_stream(src: BinaryIO, dst) -> None:
    while True:
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            break
        dst.write(chunk)
