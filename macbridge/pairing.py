"""Pairing, connect-and-verify and forget flows.

:meth:`PairingService.connect_and_verify` is the ordered gate sequence run
every time a Mac is connected: cheap checks first, and the first failing
requirement stops the sequence, surfaces an alert and disconnects.
"""

from __future__ import annotations

import logging
from enum import Enum, auto

from macbridge.bridge import MacBridge
from macbridge.cancellation import CancellationSignal, CancellationToken
from macbridge.connection import fetch_host_fingerprint
from macbridge.constants import (
    MINIMUM_MACOS_VERSION,
    MINIMUM_XCODE_SYSTEM_RESOURCES_VERSION,
    MINIMUM_XCODE_VERSION,
    REQUIRED_PACKAGES,
    XCODE_SYSTEM_RESOURCES_PKG,
)
from macbridge.dotnet import match_runtimes, match_workloads
from macbridge.models import RemoteConnection
from macbridge.output import OutputChannel, StatusLevel
from macbridge.verification import minimum_version_gate, package_version_gate

logger = logging.getLogger(__name__)

_ALERT = "Alert"


class GateRequirement(Enum):
    """Toolchain requirements checked while connecting."""

    CONNECTION = auto()
    MACOS_VERSION = auto()
    DOTNET_INSTALLATION = auto()
    WORKLOAD_PARITY = auto()
    DEBUGGER = auto()
    DEBUGGER_START = auto()
    XCODE_VERSION = auto()
    XCODE_LICENSE = auto()
    XCODE_BUILD_TOOLS = auto()
    PACKAGE_RECEIPT = auto()
    XCODE_SYSTEM_RESOURCES = auto()
    RUNTIME_PARITY = auto()


class VerificationGateFailure(Exception):
    """A toolchain requirement of the Mac is not met."""

    def __init__(self, requirement: GateRequirement, message: str) -> None:
        super().__init__(message)
        self.requirement = requirement


class PairingService:
    """User-level flows over a :class:`MacBridge`."""

    def __init__(self, bridge: MacBridge) -> None:
        self.bridge = bridge

    def _status(self, message: str) -> None:
        self.bridge.output.write_status(message, level=StatusLevel.OPERATION)

    def _alert(self, message: str) -> None:
        self.bridge.output.write_status(message, _ALERT, StatusLevel.WARNING)

    # ------------------------------------------------------------------
    # Paired hosts
    # ------------------------------------------------------------------

    def list_hosts(self) -> list[RemoteConnection]:
        return self.bridge.store.list_connections()

    def pair_new_host(self, host: str, username: str, password: str) -> RemoteConnection | None:
        """Record a new Mac after checking its host key and credentials."""
        settings = self.bridge.settings
        self._status(f"Contacting {host}")
        fingerprint = fetch_host_fingerprint(host, settings.ssh_port, settings.ssh_timeout)
        if not fingerprint:
            self._alert(f"Could not reach {host}")
            return None

        self._status(f"Verifying credentials for {username}@{host}")
        info = self.bridge.verify_credentials(host, username, password, fingerprint)
        if info is None:
            self._alert(f"Could not log in to {host} as {username}")
            return None

        if self.bridge.store.get(info.hostname) is not None:
            self._alert(f"{info.hostname} is already paired")
            return None

        connection = RemoteConnection(
            hostname=info.hostname,
            username=username,
            ip_address=info.ip_address,
            fingerprint=fingerprint,
        )
        if not self.bridge.store.add(connection, password):
            self._alert(f"Could not save pairing for {info.hostname}")
            return None

        self.bridge.output.write_status(
            f"Paired {info.hostname} ({info.ip_address or host})", "Paired"
        )
        return connection

    def forget_host(self, hostname: str) -> bool:
        if self.bridge.hostname == hostname:
            self.bridge.disconnect()
        return self.bridge.store.forget(hostname)

    # ------------------------------------------------------------------
    # Connect and verify
    # ------------------------------------------------------------------

    def connect_and_verify(
        self, hostname: str, cancel_token: CancellationToken | None = None
    ) -> bool:
        """Connect to *hostname* and verify its toolchain.

        On success the bridge's environment is populated and flagged
        verified; on any failure the bridge is disconnected.
        """
        token = cancel_token or CancellationToken()
        environment = self.bridge.environment
        environment.reset()
        try:
            self._verify(hostname, token)
            environment.verified = True
            self.bridge.output.write_status(f"Connected to {hostname}", "Connected")
            return True
        except VerificationGateFailure as exc:
            logger.warning("Verification of %s failed at %s", hostname, exc.requirement.name)
            self._alert(str(exc))
            return False
        except CancellationSignal:
            logger.info("Verification of %s cancelled", hostname)
            return False
        except Exception as exc:
            logger.exception("Verification of %s failed", hostname)
            self.bridge.output.write(f"Verification failed: {exc}", OutputChannel.DEBUG)
            self._alert(f"Could not verify {hostname}")
            return False
        finally:
            if not environment.verified:
                self.bridge.disconnect()

    def _verify(self, hostname: str, token: CancellationToken) -> None:
        bridge = self.bridge
        environment = bridge.environment

        self._status(f"Connecting to {hostname}")
        verifier = bridge.verifier if bridge.connect(hostname) else None
        if verifier is None:
            raise VerificationGateFailure(
                GateRequirement.CONNECTION, f"Could not connect to {hostname}"
            )
        token.raise_if_cancelled()

        self._status("Checking macOS version")
        environment.macos_version = verifier.get_macos_version()
        if not minimum_version_gate(environment.macos_version, MINIMUM_MACOS_VERSION):
            raise VerificationGateFailure(
                GateRequirement.MACOS_VERSION,
                f"macOS {MINIMUM_MACOS_VERSION} or later is required "
                f"(found {environment.macos_version or 'unknown'})",
            )
        token.raise_if_cancelled()

        self._status("Checking .NET installation")
        environment.runtimes = verifier.get_dotnet_runtimes() or []
        environment.sdks = verifier.get_dotnet_sdks() or []
        if not environment.runtimes or not environment.sdks:
            raise VerificationGateFailure(
                GateRequirement.DOTNET_INSTALLATION, ".NET is not installed on the Mac"
            )
        token.raise_if_cancelled()

        self._status("Checking MAUI workload")
        environment.workloads = verifier.get_maui_workloads() or []
        local_workloads = bridge.local.list_local_workloads()
        if not match_workloads(environment.workloads, local_workloads):
            logger.info(
                "Workload mismatch. Mac: %s. Local: %s",
                ", ".join(map(str, environment.workloads)) or "none",
                ", ".join(map(str, local_workloads)) or "none",
            )
            raise VerificationGateFailure(
                GateRequirement.WORKLOAD_PARITY,
                "The MAUI workload on the Mac does not match this machine",
            )
        token.raise_if_cancelled()

        self._status("Checking debugger")
        if not verifier.verify_debugger_exists(bridge.settings.install_debugger):
            raise VerificationGateFailure(GateRequirement.DEBUGGER, "vsdbg is not installed")
        debugger_version = verifier.get_debugger_version()
        logger.info("vsdbg version %s", debugger_version or "unknown")
        if bridge.settings.start_debugger_on_connect and not verifier.start_debugger():
            raise VerificationGateFailure(GateRequirement.DEBUGGER_START, "vsdbg could not start")
        token.raise_if_cancelled()

        self._status("Checking Xcode")
        if not verifier.get_xcode_version(environment) or not minimum_version_gate(
            environment.xcode_version, MINIMUM_XCODE_VERSION
        ):
            raise VerificationGateFailure(
                GateRequirement.XCODE_VERSION,
                f"Xcode {MINIMUM_XCODE_VERSION} or later is required "
                f"(found {environment.xcode_version or 'none'})",
            )
        if not verifier.verify_xcode_license():
            raise VerificationGateFailure(
                GateRequirement.XCODE_LICENSE, "The Xcode license has not been accepted"
            )
        token.raise_if_cancelled()

        if not verifier.verify_xcode_build_tools():
            raise VerificationGateFailure(
                GateRequirement.XCODE_BUILD_TOOLS, "xcode-select does not point at Xcode.app"
            )
        token.raise_if_cancelled()

        self._status("Checking Xcode components")
        for package_id in REQUIRED_PACKAGES:
            if not verifier.verify_package_exists(package_id):
                raise VerificationGateFailure(
                    GateRequirement.PACKAGE_RECEIPT, f"{package_id} is not installed"
                )
            token.raise_if_cancelled()

        resources = verifier.get_package_version(XCODE_SYSTEM_RESOURCES_PKG)
        if not package_version_gate(resources, MINIMUM_XCODE_SYSTEM_RESOURCES_VERSION):
            raise VerificationGateFailure(
                GateRequirement.XCODE_SYSTEM_RESOURCES,
                f"{XCODE_SYSTEM_RESOURCES_PKG} newer than "
                f"{MINIMUM_XCODE_SYSTEM_RESOURCES_VERSION} is required "
                f"(found {resources or 'none'})",
            )
        token.raise_if_cancelled()

        self._status("Checking .NET runtime parity")
        if not match_runtimes(environment.runtimes, bridge.local.list_local_runtimes()):
            raise VerificationGateFailure(
                GateRequirement.RUNTIME_PARITY,
                "No .NET runtime version is installed on both machines",
            )
