"""Build session orchestration against a paired Mac.

:class:`MacBridge` owns the single SSH connection to the Mac and sequences
each operation of a build cycle:

    transfer project tree → build the remote dotnet command → stream it

Cancellation is cooperative: the session's :class:`CancellationToken` is
checked between phases, between files and while output is streamed.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
import re
import shlex
from enum import Enum, auto
from pathlib import Path
from typing import Callable

from macbridge.cancellation import CancellationSignal, CancellationToken
from macbridge.config import BridgeSettings
from macbridge.connection import AuthError, NetworkError, SSHConnection
from macbridge.constants import GET_DOTNET_PATH, GET_DOTNET_SYMLINK, GET_HOSTNAME, GET_IP_ADDRESS
from macbridge.local import LocalToolchain
from macbridge.models import BuildEnvironment, BuildSession, NetworkInfo, ProjectDescriptor
from macbridge.output import OutputChannel, OutputSink, StatusLevel
from macbridge.remote_fs import RemoteFileSystem
from macbridge.storage import ConnectionStore
from macbridge.utils.path_helpers import normalize_local_path, posix_join, remote_path_for
from macbridge.verification import EnvironmentVerifier, parse_network_info

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[..., SSHConnection]

_SYMLINK_RE = re.compile(r"->\s+(.*)")
_ALERT = "Alert"


class OperationKind(Enum):
    """Remote operations a build cycle can run."""

    BUILD = auto()
    CLEAN = auto()
    DEBUG = auto()
    REBUILD = auto()


class CycleState(Enum):
    IDLE = auto()
    SESSION_ACTIVE = auto()
    TRANSFERRING = auto()
    EXECUTING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


_DOTNET_VERBS = {
    OperationKind.BUILD: "build",
    OperationKind.CLEAN: "clean",
    OperationKind.REBUILD: "build --no-incremental",
    OperationKind.DEBUG: "run -f {framework} --project",
}


def generate_build_session_id(project_name: str) -> str:
    """Stable per-project directory name: SHA-256 of the project name."""
    return hashlib.sha256(project_name.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# MacBridge
# ---------------------------------------------------------------------------


class MacBridge:
    """One live connection to a Mac plus the current build session.

    Operations return ``bool`` and never raise: unexpected errors are
    written to the debug channel and reported as failure, and
    cancellation ends the operation quietly.
    """

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        store: ConnectionStore | None = None,
        output: OutputSink | None = None,
        local: LocalToolchain | None = None,
        connection_factory: ConnectionFactory = SSHConnection,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.store = store or ConnectionStore()
        self.output = output or OutputSink()
        self.local = local or LocalToolchain()
        self._connection_factory = connection_factory

        self.connection: SSHConnection | None = None
        self.fs: RemoteFileSystem | None = None
        self.verifier: EnvironmentVerifier | None = None
        self.hostname: str | None = None

        self.environment = BuildEnvironment()
        self.session = BuildSession()
        self.cancel_token = CancellationToken()
        self.state = CycleState.IDLE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _debug(self, message: str) -> None:
        self.output.write(message, OutputChannel.DEBUG)

    def _alert(self, message: str) -> None:
        self.output.write_status(message, _ALERT, StatusLevel.WARNING)

    def _checkpoint(self) -> None:
        self.cancel_token.raise_if_cancelled()

    def _new_connection(
        self, host: str, username: str, fingerprint: str | None = None
    ) -> SSHConnection:
        return self._connection_factory(
            host=host,
            username=username,
            port=self.settings.ssh_port,
            timeout=self.settings.ssh_timeout,
            expected_fingerprint=fingerprint,
            stream_read_timeout=self.settings.stream_read_timeout,
            output=self.output,
        )

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, hostname: str) -> bool:
        """Connect to a paired Mac using its stored credential.

        The host key must match the fingerprint recorded at pairing time.
        The cached build environment is reset.
        """
        self.disconnect()
        self.environment.reset()

        remote = self.store.get(hostname)
        if remote is None:
            self._alert(f"{hostname} is not paired")
            return False

        connection = self._new_connection(remote.address, remote.username, remote.fingerprint or None)
        remote.password = self.store.get_password(remote)
        try:
            connection.connect(remote.password)
        except AuthError as exc:
            self._debug(f"Authentication with {hostname} failed: {exc}")
            self._alert(f"Could not authenticate with {hostname}")
            return False
        except NetworkError as exc:
            self._debug(f"Connection to {hostname} failed: {exc}")
            self._alert(f"Could not reach {hostname}")
            return False
        finally:
            remote.clear_password()

        self.connection = connection
        self.hostname = remote.hostname
        self.fs = RemoteFileSystem(connection, self.output, self.settings.transfer_concurrency)
        self.verifier = EnvironmentVerifier(
            connection, self.fs, self.output, self.settings.debugger_dir
        )
        return True

    def disconnect(self) -> None:
        """Stop the remote debugger and close the connection.  Never raises."""
        if self.connection is None:
            return
        try:
            if self.verifier is not None and self.connection.is_connected:
                self.verifier.stop_debugger()
        except Exception as exc:
            self._debug(f"Could not stop debugger: {exc}")
        self.connection.disconnect()
        self.connection = None
        self.fs = None
        self.verifier = None
        self.hostname = None

    def verify_credentials(
        self, host: str, username: str, password: str, fingerprint: str | None = None
    ) -> NetworkInfo | None:
        """Log in once with *password* and report the Mac's hostname and IP."""
        probe = self._new_connection(host, username, fingerprint)
        try:
            probe.connect(password)
            return parse_network_info(
                probe.run_command(GET_HOSTNAME), probe.run_command(GET_IP_ADDRESS)
            )
        except (AuthError, NetworkError) as exc:
            self._debug(f"Credential check for {username}@{host} failed: {exc}")
            return None
        finally:
            probe.disconnect()

    # ------------------------------------------------------------------
    # Session paths and commands
    # ------------------------------------------------------------------

    def get_build_session_path(self, project_name: str) -> str:
        """``<remote_build_path>/<name>/<sha256(name)>/``"""
        return posix_join(
            self.settings.remote_build_path,
            project_name,
            generate_build_session_id(project_name),
            "",
        )

    def _project_name(self) -> str:
        if not self.session.project_path:
            raise ValueError("No project in the current build session")
        return Path(self.session.project_path).parent.stem

    def _resolve_dotnet(self, connection: SSHConnection) -> str | None:
        """Remote dotnet executable, following a symlink if there is one."""
        listing = connection.run_command(GET_DOTNET_SYMLINK) or ""
        match = _SYMLINK_RE.search(listing)
        if match:
            target = match.group(1).strip()
            if target.startswith("/"):
                return target
            which = connection.run_command(GET_DOTNET_PATH)
            if which:
                return posixpath.normpath(posixpath.join(posixpath.dirname(which), target))
        return connection.run_command(GET_DOTNET_PATH) or None

    def generate_project_command(self, kind: OperationKind) -> str | None:
        """Build the remote dotnet invocation for the session's project.

        Returns ``None`` if dotnet cannot be found or the project file is
        not present in the remote session directory.
        """
        if self.fs is None or self.connection is None:
            return None

        dotnet = self._resolve_dotnet(self.connection)
        if not dotnet:
            self._debug("Could not locate dotnet on the Mac")
            return None

        session_path = self.fs.expand_home_path(self.get_build_session_path(self._project_name()))
        if session_path is None:
            return None

        project_file = remote_path_for(self.session.project_path or "", session_path)
        if not self.fs.file_exists(project_file):
            self._debug(f"Project file {project_file} not found on the Mac")
            return None

        verb = _DOTNET_VERBS[kind].format(framework=self.session.target_framework or "")
        return f"{shlex.quote(dotnet)} {verb} {shlex.quote(project_file)}"

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def transfer_project(self) -> bool:
        """Upload the project directory and every referenced project directory.

        Raises:
            CancellationSignal: If the session is cancelled mid-transfer.
        """
        if self.fs is None or not self.session.project_path:
            return False

        session_path = self.get_build_session_path(self._project_name())
        directories = [Path(self.session.project_path).parent]
        directories += [Path(ref).parent for ref in self.session.reference_paths]

        for directory in directories:
            self._checkpoint()
            self.output.write(f"Transferring {directory}", OutputChannel.BUILD)
            summary = self.fs.transfer_directory(
                directory,
                session_path,
                self.settings.transfer_exclude_dirs,
                preserve_timestamps=True,
                cancel_token=self.cancel_token,
            )
            if summary.cancelled:
                raise CancellationSignal("Transfer cancelled")
            if not summary:
                self._debug(f"{len(summary.failed)} file(s) under {directory} failed to upload")
                return False
        return True

    # ------------------------------------------------------------------
    # Build cycle
    # ------------------------------------------------------------------

    def begin_cycle(self, project: ProjectDescriptor) -> bool:
        """Reset the session; activate it only for a verified, connected Mac."""
        self.session.reset()
        self.cancel_token = CancellationToken()
        self.state = CycleState.IDLE

        if not (self.environment.verified and self.is_connected):
            logger.debug("Build cycle skipped: environment not verified or not connected")
            return False

        self.session.is_active = True
        self.session.project_path = str(normalize_local_path(project.path))
        self.session.target_framework = project.target_framework
        self.session.reference_paths = [str(normalize_local_path(ref)) for ref in project.references]
        self.state = CycleState.SESSION_ACTIVE
        self.output.clear(OutputChannel.BUILD)
        logger.info("Build session %s started for %s", self.session.session_id, project.name)
        return True

    def complete_cycle(self) -> None:
        self.session.complete(self.session.build_successful)
        logger.info(
            "Build session %s finished (%s)",
            self.session.session_id,
            "succeeded" if self.session.build_successful else "failed",
        )
        self.state = CycleState.IDLE

    def cancel_operation(self) -> None:
        logger.info("Cancelling build session %s", self.session.session_id)
        self.cancel_token.cancel()

    def run_operation(self, kind: OperationKind) -> bool:
        """Run *kind* against the active session's project."""
        if not self.session.is_active or self.connection is None:
            logger.debug("%s ignored: no active build session", kind.name)
            return False

        try:
            self._checkpoint()
            if kind is not OperationKind.CLEAN:
                self.state = CycleState.TRANSFERRING
                if not self.transfer_project():
                    return self._finish(kind, False)
                self._checkpoint()

            command = self.generate_project_command(kind)
            if command is None:
                return self._finish(kind, False)
            self._checkpoint()

            self.state = CycleState.EXECUTING
            # A launched app runs until it exits, so debug has no success token.
            tokens = () if kind is OperationKind.DEBUG else self.settings.success_tokens
            success = self.connection.run_command_streamed(
                command, tokens, OutputChannel.BUILD, self.cancel_token
            )
            return self._finish(kind, success)
        except CancellationSignal:
            logger.info("%s cancelled", kind.name.lower())
            self.state = CycleState.CANCELLED
            self.session.build_successful = False
            return False
        except Exception as exc:
            logger.exception("%s failed", kind.name.lower())
            self._debug(f"{kind.name.lower()} failed: {exc}")
            return self._finish(kind, False)

    def _finish(self, kind: OperationKind, success: bool) -> bool:
        self.state = CycleState.COMPLETED if success else CycleState.FAILED
        self.session.build_successful = success
        if not success:
            self._alert(f"Remote {kind.name.lower()} failed")
        return success

    def start_build_operation(self) -> bool:
        return self.run_operation(OperationKind.BUILD)

    def start_clean_operation(self) -> bool:
        return self.run_operation(OperationKind.CLEAN)

    def start_debug_operation(self) -> bool:
        return self.run_operation(OperationKind.DEBUG)

    def start_rebuild_operation(self) -> bool:
        return self.run_operation(OperationKind.REBUILD)
