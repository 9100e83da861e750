"""Read-only queries against the local .NET toolchain.

Used for parity checks against the Mac: the remote runtimes and MAUI
workload must match what is installed on this machine.
"""

from __future__ import annotations

import logging
import subprocess
import sys

from macbridge.constants import (
    ASPNETCORE_RUNTIME,
    GET_DOTNET_RUNTIMES,
    GET_DOTNET_WORKLOADS,
    LOCAL_WORKLOAD_ID,
    WINDOWS_DESKTOP_RUNTIME,
)
from macbridge.dotnet import DotnetRuntime, DotnetWorkload, parse_runtimes, parse_workloads

logger = logging.getLogger(__name__)

_LOCAL_TIMEOUT = 60  # seconds


class LocalToolchain:
    """Runs ``dotnet`` listing commands on the developer machine."""

    def __init__(self, timeout: float = _LOCAL_TIMEOUT) -> None:
        self.timeout = timeout

    def _shell_argv(self, command: str) -> list[str]:
        if sys.platform == "win32":
            return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", command]
        return ["/bin/sh", "-c", command]

    def run_local_shell_command(self, command: str) -> str | None:
        """Run *command* in the platform shell and return trimmed stdout.

        Returns ``None`` if the shell could not be started, timed out or
        exited non-zero.
        """
        try:
            result = subprocess.run(
                self._shell_argv(command),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Local command %r failed: %s", command, exc)
            return None
        if result.returncode != 0:
            logger.warning(
                "Local command %r exited %d: %s", command, result.returncode, result.stderr.strip()
            )
            return None
        return result.stdout.strip()

    def list_local_runtimes(self) -> list[DotnetRuntime]:
        """Installed runtimes, minus ASP.NET Core and Windows Desktop."""
        output = self.run_local_shell_command(GET_DOTNET_RUNTIMES)
        return parse_runtimes(output, exclude=(ASPNETCORE_RUNTIME, WINDOWS_DESKTOP_RUNTIME))

    def list_local_workloads(self) -> list[DotnetWorkload]:
        """Installed ``maui-windows`` workload rows."""
        output = self.run_local_shell_command(GET_DOTNET_WORKLOADS)
        return parse_workloads(output, contains=LOCAL_WORKLOAD_ID)
