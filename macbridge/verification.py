"""Environment verification checks for the remote Mac.

Each check runs one or a few shell commands over the connection and turns
the output into a bool or a typed result.  Every check fails fast when the
connection is down.  Ordering and short-circuiting belong to the caller
(see :mod:`macbridge.pairing`).

Output parsing lives in module-level functions so it can be tested without
a connection.
"""

from __future__ import annotations

import logging
import posixpath
import re
import shlex
import time

from macbridge.connection import SSHConnection
from macbridge.constants import (
    ASPNETCORE_RUNTIME,
    DEBUGGER_BINARY,
    DEBUGGER_INSTALL,
    DEBUGGER_INSTALL_SUCCESS,
    DEBUGGER_PID,
    DEBUGGER_START,
    DEBUGGER_STOP,
    DEBUGGER_VERSION,
    GET_DOTNET_RUNTIMES,
    GET_DOTNET_SDKS,
    GET_DOTNET_WORKLOADS,
    GET_OS_VERSION,
    GET_PKG_INFO,
    GET_PKG_LIST,
    GET_PROVISIONING_PROFILES,
    GET_SIGNING_CERTIFICATE,
    GET_XCODE_SELECT,
    GET_XCODE_VERSION,
    READ_PROVISIONING_PROFILE,
    READ_XCODE_LICENSE,
    REMOTE_WORKLOAD_ID,
    XCODE_LICENSE_KEYS,
)
from macbridge.dotnet import (
    DotnetRuntime,
    DotnetSdk,
    DotnetWorkload,
    parse_runtimes,
    parse_sdks,
    parse_workloads,
)
from macbridge.models import BuildEnvironment, NetworkInfo, SigningIdentity
from macbridge.output import OutputChannel, OutputSink
from macbridge.remote_fs import RemoteFileSystem
from macbridge.version import ToolchainVersion

logger = logging.getLogger(__name__)

_DEBUGGER_START_WAIT = 2.0  # seconds before re-checking the vsdbg pid
_QUOTED_RE = re.compile(r'"([^"]+)"')
_TEAM_RE = re.compile(r"\(([^()]+)\)\s*$")


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------


def parse_xcode_version(output: str | None) -> tuple[ToolchainVersion, str] | None:
    """Parse ``xcodebuild -version``.

    ::

        Xcode 16.2
        Build version 16C5032a
    """
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    version_parts = lines[0].split()
    build_parts = lines[1].split()
    if len(version_parts) < 2 or len(build_parts) < 3:
        return None
    version = ToolchainVersion.try_parse(version_parts[1])
    if version is None:
        return None
    return version, build_parts[2]


def parse_license_status(output: str | None) -> bool:
    """True if both Xcode license keys carry a non-empty value.

    ``defaults read`` prints a plist-style dictionary::

        {
            IDELastGMLicenseAgreedTo = EA1879;
            IDELastPTRLicenseAgreedTo = EA1879;
        }
    """
    values: dict[str, str] = {}
    for line in (output or "").splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key in XCODE_LICENSE_KEYS:
            values[key] = value.strip().rstrip(";").strip().strip('"')
    return all(values.get(key) for key in XCODE_LICENSE_KEYS)


def parse_signing_certificate(output: str | None) -> tuple[str, str] | None:
    """Extract (certificate name, team id) from ``security find-identity``.

    ``1) 0123ABCD "Mac Developer: Jane Doe (AB12CD34EF)"``
    """
    for line in (output or "").splitlines():
        match = _QUOTED_RE.search(line)
        if not match:
            continue
        name = match.group(1)
        team = _TEAM_RE.search(name)
        return name, team.group(1) if team else ""
    return None


def parse_package_version(output: str | None) -> ToolchainVersion | None:
    """Read the ``version:`` line of ``pkgutil --pkg-info``."""
    if not output or "No receipt for" in output:
        return None
    for line in output.splitlines():
        if line.startswith("version:"):
            return ToolchainVersion.try_parse(line.split(":", 1)[1].strip())
    return None


def parse_network_info(hostname: str | None, ip_output: str | None) -> NetworkInfo | None:
    """Build :class:`NetworkInfo` from ``hostname`` and the ifconfig filter."""
    if not hostname:
        return None
    name = hostname.strip()
    if name.endswith(".local"):
        name = name[: -len(".local")]
    addresses = [line.strip() for line in (ip_output or "").splitlines() if line.strip()]
    return NetworkInfo(hostname=name, ip_address=addresses[0] if addresses else "")


def package_version_gate(
    installed: ToolchainVersion | None, minimum: ToolchainVersion
) -> bool:
    """Pass only when *installed* is strictly greater than *minimum*."""
    return installed is not None and installed > minimum


def minimum_version_gate(
    installed: ToolchainVersion | None, minimum: ToolchainVersion
) -> bool:
    """Pass when *installed* is at least *minimum*."""
    return installed is not None and installed >= minimum


# ---------------------------------------------------------------------------
# EnvironmentVerifier
# ---------------------------------------------------------------------------


class EnvironmentVerifier:
    """Runs toolchain checks against the connected Mac."""

    def __init__(
        self,
        connection: SSHConnection,
        remote_fs: RemoteFileSystem,
        output: OutputSink | None = None,
        debugger_dir: str = "~/.macbridge/vsdbg",
    ) -> None:
        self._connection = connection
        self._fs = remote_fs
        self._output = output or OutputSink()
        self.debugger_dir = debugger_dir.rstrip("/")

    def _debug(self, message: str) -> None:
        self._output.write(message, OutputChannel.DEBUG)

    def _run(self, command: str) -> str | None:
        """Run *command* if connected; ``None`` otherwise."""
        if not self._connection.is_connected:
            logger.debug("Skipping %r: not connected", command)
            return None
        return self._connection.run_command(command)

    # ------------------------------------------------------------------
    # macOS / .NET
    # ------------------------------------------------------------------

    def get_macos_version(self) -> ToolchainVersion | None:
        version = ToolchainVersion.try_parse(self._run(GET_OS_VERSION))
        if version is None:
            self._debug("Failed to read macOS version")
        return version

    def get_dotnet_runtimes(self) -> list[DotnetRuntime] | None:
        """Installed runtimes on the Mac (ASP.NET Core excluded)."""
        output = self._run(GET_DOTNET_RUNTIMES)
        if output is None:
            self._debug("Failed to verify remote dotnet installation")
            return None
        return parse_runtimes(output, exclude=(ASPNETCORE_RUNTIME,), require="dotnet")

    def get_dotnet_sdks(self) -> list[DotnetSdk] | None:
        output = self._run(GET_DOTNET_SDKS)
        if output is None:
            self._debug("Failed to verify remote dotnet installation")
            return None
        return parse_sdks(output)

    def get_maui_workloads(self) -> list[DotnetWorkload] | None:
        output = self._run(GET_DOTNET_WORKLOADS)
        if output is None:
            self._debug("Failed to verify remote dotnet maui workload")
            return None
        return parse_workloads(output, contains=REMOTE_WORKLOAD_ID)

    # ------------------------------------------------------------------
    # Debugger
    # ------------------------------------------------------------------

    @property
    def _debugger_path(self) -> str:
        return posixpath.join(self.debugger_dir, DEBUGGER_BINARY)

    def verify_debugger_exists(self, install_if_missing: bool = False) -> bool:
        """Check for vsdbg, optionally downloading it when absent."""
        if not self._connection.is_connected:
            return False
        if self._fs.file_exists(self._debugger_path):
            return True
        if not install_if_missing:
            return False

        directory = self._fs.expand_home_path(self.debugger_dir)
        if directory is None or not self._fs.create_directory_recursive(directory):
            self._debug(f"Could not create debugger directory {self.debugger_dir}")
            return False

        logger.info("Installing vsdbg into %s", directory)
        output = self._run(DEBUGGER_INSTALL.format(directory=shlex.quote(directory)))
        if not output or DEBUGGER_INSTALL_SUCCESS not in output:
            self._debug(f"vsdbg install failed: {output or 'no output'}")
            return False
        return self._fs.file_exists(self._debugger_path)

    def get_debugger_version(self) -> ToolchainVersion | None:
        output = self._run(DEBUGGER_VERSION.format(directory=self.debugger_dir))
        if not output:
            self._debug("Failed to get vsdbg version")
            return None
        return ToolchainVersion.try_parse(output.split()[0])

    def get_debugger_pid(self) -> str | None:
        output = self._run(DEBUGGER_PID)
        if not output:
            return None
        return output.splitlines()[0].strip() or None

    def start_debugger(self) -> bool:
        """Launch vsdbg in the background unless it is already running."""
        if not self._connection.is_connected:
            return False
        if self.get_debugger_pid():
            return True
        self._run(DEBUGGER_START.format(directory=self.debugger_dir))
        time.sleep(_DEBUGGER_START_WAIT)
        pid = self.get_debugger_pid()
        if pid is None:
            self._debug("vsdbg did not start")
            return False
        logger.info("vsdbg running with pid %s", pid)
        return True

    def stop_debugger(self) -> bool:
        """Kill the running vsdbg.  True if none is left running."""
        if not self._connection.is_connected:
            return False
        pid = self.get_debugger_pid()
        if pid is None:
            return True
        self._run(DEBUGGER_STOP.format(pid=pid))
        if self.get_debugger_pid() is not None:
            self._debug(f"vsdbg (pid {pid}) is still running")
            return False
        logger.info("Stopped vsdbg (pid %s)", pid)
        return True

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def get_signing_identity(self, bundle_id: str) -> SigningIdentity | None:
        """Find the developer certificate and a profile covering *bundle_id*.

        Profiles are decoded one at a time until one mentions the bundle id.
        """
        certificate = parse_signing_certificate(self._run(GET_SIGNING_CERTIFICATE))
        if certificate is None:
            self._debug("No Mac Developer signing certificate found")
            return None

        identity = SigningIdentity(
            certificate_name=certificate[0], team_id=certificate[1], bundle_id=bundle_id
        )
        profiles = self._run(GET_PROVISIONING_PROFILES) or ""
        for profile in (line.strip() for line in profiles.splitlines()):
            if not profile:
                continue
            content = self._run(f"{READ_PROVISIONING_PROFILE} {shlex.quote(profile)}")
            if not content or bundle_id not in content:
                continue
            file_name = posixpath.basename(profile)
            identity.provisioning_profile = posixpath.splitext(file_name)[0]
            identity.provisioning_profile_id = file_name
            identity.app_id = f"{identity.team_id}.{bundle_id}"
            return identity

        self._debug(f"No provisioning profile matches {bundle_id}")
        return None

    # ------------------------------------------------------------------
    # Xcode
    # ------------------------------------------------------------------

    def get_xcode_version(self, environment: BuildEnvironment) -> bool:
        """Store the Xcode version and build id on *environment*."""
        parsed = parse_xcode_version(self._run(GET_XCODE_VERSION))
        if parsed is None:
            self._debug("Failed to read Xcode version")
            return False
        environment.xcode_version, environment.xcode_build_version = parsed
        return True

    def verify_xcode_license(self) -> bool:
        return parse_license_status(self._run(READ_XCODE_LICENSE))

    def verify_xcode_build_tools(self) -> bool:
        """``xcode-select`` must point at a full Xcode, not the CLI tools."""
        output = self._run(GET_XCODE_SELECT)
        return bool(output) and "Xcode.app" in output

    # ------------------------------------------------------------------
    # Package receipts
    # ------------------------------------------------------------------

    def verify_package_exists(self, package_id: str) -> bool:
        output = self._run(GET_PKG_LIST)
        if not output:
            return False
        return any(line.strip() == package_id for line in output.splitlines())

    def get_package_version(self, package_id: str) -> ToolchainVersion | None:
        version = parse_package_version(self._run(GET_PKG_INFO.format(package_id=package_id)))
        if version is None:
            self._debug(f"Failed to get package version for {package_id}")
        return version
