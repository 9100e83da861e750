"""SSH/SFTP transport to the remote Mac.

Wraps a single paramiko session with host-key pinning, one-shot command
execution through a login-profile shell, and streamed execution over an
interactive pseudo-shell for long-running builds.  All methods that touch
the network are safe to call from background threads.
"""

from __future__ import annotations

import codecs
import logging
import re
import shlex
import socket
import threading
from enum import Enum, auto
from typing import Callable, Optional, Sequence

import paramiko

from macbridge.cancellation import CancellationToken
from macbridge.constants import PLAIN_SHELL, PROFILE_SOURCES, SHELL_PROMPT
from macbridge.output import OutputChannel, OutputSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEEPALIVE_INTERVAL = 30  # seconds
_EXEC_TIMEOUT = 30  # seconds, one-shot commands
_RECV_SIZE = 32768
_DRAIN_IDLE_READS = 2
# Quiet reads tolerated after a success line before giving up on the prompt.
_MATCH_QUIET_READS = 20
_SHELL_WIDTH = 1024
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class AuthError(Exception):
    """Raised when the Mac rejects the credentials or presents the wrong host key."""


class HostKeyMismatchError(AuthError):
    """Raised when the presented host key does not match the paired fingerprint."""

    def __init__(self, message: str, expected: str = "", actual: str = "") -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NetworkError(Exception):
    """Raised when the Mac is unreachable or the transport drops."""


class RemoteExecError(Exception):
    """Raised when a remote command cannot be executed."""


class ConnectionError(Exception):  # noqa: A001
    """Raised when an SSH operation is attempted on a non-connected client."""


# ---------------------------------------------------------------------------
# Host-key handling
# ---------------------------------------------------------------------------


def format_fingerprint(key: paramiko.PKey) -> str:
    """Return the MD5 fingerprint of *key* as ``AB:CD:...`` (upper-case)."""
    return ":".join(f"{b:02X}" for b in key.get_fingerprint())


class _PinningPolicy(paramiko.MissingHostKeyPolicy):
    """Records the host key's fingerprint and enforces the paired one, if any.

    known_hosts is never consulted or written; the paired fingerprint is
    the sole source of trust.
    """

    def __init__(self, expected: str | None = None) -> None:
        self.expected = expected.upper() if expected else None
        self.captured = ""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        self.captured = format_fingerprint(key)
        if self.expected and self.captured != self.expected:
            raise HostKeyMismatchError(
                f"Host key for '{hostname}' changed.\n"
                f"Expected: {self.expected}\n"
                f"Received: {self.captured}",
                expected=self.expected,
                actual=self.captured,
            )
        logger.debug("Accepted %s host key %s for %s", key.get_name(), self.captured, hostname)


def fetch_host_fingerprint(host: str, port: int = 22, timeout: float = 15.0) -> str:
    """Return the MD5 fingerprint of *host*'s SSH key, or ``""`` on failure.

    Only the key exchange is performed; no authentication is attempted.
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        logger.warning("Could not reach %s:%d for fingerprint: %s", host, port, exc)
        return ""

    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=timeout)
        return format_fingerprint(transport.get_remote_server_key())
    except (paramiko.SSHException, OSError) as exc:
        logger.warning("Key exchange with %s failed: %s", host, exc)
        return ""
    finally:
        transport.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising — suppresses WinError 10038 on Windows."""
    try:
        client.close()
    except Exception:
        pass


def wrap_with_profile(command: str) -> str:
    """Run *command* under bash after sourcing the login profile files."""
    return f"/bin/bash -c {shlex.quote(PROFILE_SOURCES + command)}"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------


class SSHConnection:
    """Manages a single SSH session (plus lazy SFTP) to a remote Mac.

    Thread-safety:
    - ``_lock`` protects state transitions and the cached SFTP client.
    - Each worker that needs its own SFTP channel calls
      :meth:`open_sftp_channel`.
    """

    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        timeout: float = 15.0,
        expected_fingerprint: str | None = None,
        stream_read_timeout: float = 0.5,
        output: OutputSink | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP of the Mac.
            username: SSH username.
            port: SSH port (default 22).
            timeout: Connection timeout in seconds.
            expected_fingerprint: Paired MD5 fingerprint; when set, any
                other host key is rejected with :exc:`HostKeyMismatchError`.
            stream_read_timeout: Per-read timeout of streamed execution.
            output: Sink for streamed output and debug diagnostics.
            on_state_change: Callback invoked on every state transition.
        """
        self.host = host
        self.username = username
        self.port = port
        self.timeout = timeout
        self.expected_fingerprint = expected_fingerprint
        self.stream_read_timeout = stream_read_timeout
        self.output = output or OutputSink()
        self.fingerprint = ""
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._sftp_transport: paramiko.Transport | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        """True while the session is up and its transport is alive."""
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._client is None:
                return False
            transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def _debug(self, message: str) -> None:
        self.output.write(message, OutputChannel.DEBUG)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self, password: str | None = None) -> None:
        """Establish the SSH session.

        Raises:
            AuthError: Wrong credentials or host-key mismatch.
            NetworkError: Host unreachable, timeout or protocol failure.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            self._set_state(ConnectionState.CONNECTING)

        try:
            self._do_connect(password)
        except Exception as exc:
            with self._lock:
                self._set_state(ConnectionState.ERROR, str(exc))
            raise

    def _do_connect(self, password: str | None) -> None:
        """Internal connection logic — called without holding the lock."""
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)

        client = paramiko.SSHClient()
        policy = _PinningPolicy(self.expected_fingerprint)
        client.set_missing_host_key_policy(policy)

        connect_kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
            "allow_agent": password is None,
            "look_for_keys": password is None,
        }
        if password is not None:
            connect_kwargs["password"] = password

        try:
            client.connect(**connect_kwargs)
        except HostKeyMismatchError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise HostKeyMismatchError(
                f"Host key mismatch for {self.host}", expected=self.expected_fingerprint or ""
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise AuthError(f"Authentication failed for {self.username}@{self.host}") from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            raise NetworkError(f"Could not connect to {self.host}:{self.port}: {exc}") from exc

        # Large window and no rekeying so project uploads do not stall.
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)
            transport.default_window_size = 64 * 1024 * 1024
            transport.packetizer.REKEY_BYTES = pow(2, 40)
            transport.packetizer.REKEY_TIME = pow(2, 40)

        with self._lock:
            self._client = client
            self.fingerprint = policy.captured
            self._set_state(ConnectionState.CONNECTED)

        logger.info("Connected to %s (%s)", self.host, self.fingerprint or "no fingerprint")

    def disconnect(self) -> None:
        """Close SFTP and SSH channels.  Idempotent; never raises."""
        with self._lock:
            if self._sftp:
                try:
                    self._sftp.close()
                except Exception:
                    logger.debug("Ignoring error while closing SFTP", exc_info=True)
                self._sftp = None
                self._sftp_transport = None
            if self._client:
                _close_client_safely(self._client)
                self._client = None
            if self._state != ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.DISCONNECTED)
                logger.info("Disconnected from %s", self.host)

    # ------------------------------------------------------------------
    # Transport / SFTP access
    # ------------------------------------------------------------------

    def _require_client(self) -> paramiko.SSHClient:
        """Return the connected client (must hold lock)."""
        if self._state != ConnectionState.CONNECTED or self._client is None:
            raise ConnectionError(f"Not connected to {self.host} (state: {self._state.name})")
        return self._client

    def get_transport(self) -> paramiko.Transport:
        """Return the underlying paramiko Transport.

        Raises:
            ConnectionError: If not currently connected.
        """
        with self._lock:
            transport = self._require_client().get_transport()
            if transport is None:
                raise ConnectionError("SSH transport unavailable")
            return transport

    def get_sftp(self) -> paramiko.SFTPClient:
        """Return the shared SFTP client, creating it on first use.

        The client is rebuilt whenever the SSH transport it was opened on
        is no longer the current one.

        Raises:
            ConnectionError: If not currently connected.
        """
        transport = self.get_transport()
        with self._lock:
            if self._sftp is None or self._sftp_transport is not transport:
                if self._sftp is not None:
                    logger.debug("SSH transport changed — reopening SFTP")
                    try:
                        self._sftp.close()
                    except Exception:
                        logger.debug("Ignoring error while closing SFTP", exc_info=True)
                sftp = paramiko.SFTPClient.from_transport(transport)
                if sftp is None:
                    raise ConnectionError("Could not open SFTP channel")
                self._sftp = sftp
                self._sftp_transport = transport
            return self._sftp

    def open_sftp_channel(self) -> paramiko.SFTPClient:
        """Open an additional, independent SFTP channel.  Caller closes it."""
        sftp = paramiko.SFTPClient.from_transport(self.get_transport())
        if sftp is None:
            raise ConnectionError("Could not open SFTP channel")
        return sftp

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def execute_command(self, command: str) -> tuple[str, str, int]:
        """Execute *command* verbatim and return (stdout, stderr, exit_code).

        Raises:
            ConnectionError: If not connected.
            RemoteExecError: On protocol errors or timeouts.
        """
        with self._lock:
            client = self._require_client()

        try:
            _, stdout, stderr = client.exec_command(command, timeout=_EXEC_TIMEOUT)
            exit_code = stdout.channel.recv_exit_status()
            return (
                stdout.read().decode("utf-8", errors="replace"),
                stderr.read().decode("utf-8", errors="replace"),
                exit_code,
            )
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            logger.error("exec_command(%r) failed: %s", command, exc)
            raise RemoteExecError(f"Could not run {command!r}: {exc}") from exc

    def run_command(self, command: str) -> str | None:
        """Run *command* in a login-profile shell and return trimmed stdout.

        Returns ``None`` (and logs to the debug channel) on failure.
        """
        try:
            stdout, stderr, exit_code = self.execute_command(wrap_with_profile(command))
        except (ConnectionError, RemoteExecError) as exc:
            self._debug(str(exc))
            return None
        if exit_code != 0 and stderr.strip():
            self._debug(f"{command}: exit {exit_code}: {stderr.strip()}")
        return stdout.strip()

    def run_command_streamed(
        self,
        command: str,
        match_tokens: Sequence[str] | None = None,
        channel: OutputChannel = OutputChannel.BUILD,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Run *command* in an interactive shell, forwarding output line by line.

        Returns True if a line case-insensitively contains one of
        *match_tokens* before the shell prompt returns.  After such a line the
        read continues until the prompt, or until the shell has been quiet
        for a while.  Without tokens any run that does not hit a transport
        error counts as success.

        Raises:
            CancellationSignal: If *cancel_token* trips while reading.
        """
        tokens = [token.lower() for token in match_tokens or () if token]
        try:
            with self._lock:
                client = self._require_client()
            shell = client.invoke_shell(width=_SHELL_WIDTH)
            shell.settimeout(self.stream_read_timeout)
        except (ConnectionError, paramiko.SSHException) as exc:
            self._debug(f"Could not open shell for {command!r}: {exc}")
            return False

        try:
            shell.send(PLAIN_SHELL + "\n")
            self._drain(shell)
            wrapped = wrap_with_profile(command)
            shell.send(wrapped + "\n")
            return self._read_until_prompt(shell, wrapped, tokens, channel, cancel_token)
        except (paramiko.SSHException, OSError) as exc:
            self._debug(f"Streamed command {command!r} failed: {exc}")
            return False
        finally:
            try:
                shell.close()
            except Exception:
                logger.debug("Ignoring error while closing shell", exc_info=True)

    def _drain(self, shell: paramiko.Channel) -> None:
        """Discard banner and prompt output until the shell goes quiet."""
        idle = 0
        while idle < _DRAIN_IDLE_READS:
            try:
                data = shell.recv(_RECV_SIZE)
            except socket.timeout:
                idle += 1
                continue
            if not data:
                return
            idle = 0

    def _read_until_prompt(
        self,
        shell: paramiko.Channel,
        wrapped: str,
        tokens: list[str],
        channel: OutputChannel,
        cancel_token: CancellationToken | None,
    ) -> bool:
        # Readline may wrap the echo of a long command; match on its head only.
        echo_marker = wrapped[:24]
        echo_seen = False
        lines_seen = 0
        matched = False
        quiet_reads = 0
        buffer = ""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                data = shell.recv(_RECV_SIZE)
            except socket.timeout:
                pending = _ANSI_RE.sub("", buffer).rstrip()
                if (echo_seen or lines_seen) and pending.endswith(SHELL_PROMPT):
                    logger.debug("Prompt returned for streamed command")
                    return matched or not tokens
                if matched:
                    quiet_reads += 1
                    if quiet_reads >= _MATCH_QUIET_READS:
                        logger.debug("No prompt after success line; treating build as done")
                        return True
                continue

            quiet_reads = 0

            if not data:
                logger.debug("Shell channel closed")
                buffer += decoder.decode(b"", final=True)
                if buffer.strip():
                    self.output.write(_ANSI_RE.sub("", buffer).rstrip("\r"), channel)
                    matched = matched or any(t in buffer.lower() for t in tokens)
                return matched or not tokens

            buffer += decoder.decode(data)
            while "\n" in buffer:
                raw, buffer = buffer.split("\n", 1)
                line = _ANSI_RE.sub("", raw).rstrip("\r")
                if not echo_seen and echo_marker in line:
                    echo_seen = True
                    continue
                lines_seen += 1
                self.output.write(line, channel)
                if tokens and not matched and any(t in line.lower() for t in tokens):
                    matched = True
