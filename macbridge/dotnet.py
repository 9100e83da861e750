"""Parsers and parity checks for ``dotnet`` CLI listings.

The same parsers are used for the remote Mac and the local Windows host;
the parity checks compare the two sides.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from macbridge.constants import BASE_RUNTIME, LOCAL_WORKLOAD_ID, REMOTE_WORKLOAD_ID

logger = logging.getLogger(__name__)

# "Microsoft.NETCore.App 8.0.1 [/usr/local/share/dotnet/shared/Microsoft.NETCore.App]"
_RUNTIME_RE = re.compile(r"^(\S+)\s+(\S+)\s+\[(.*)\]$")
# "8.0.101 [/usr/local/share/dotnet/sdk]"
_SDK_RE = re.compile(r"^(\S+)\s+\[(.*)\]$")
_WORKLOAD_SPLIT_RE = re.compile(r"\s{2,}")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DotnetRuntime:
    runtime: str
    version: str
    path: str


@dataclass(frozen=True)
class DotnetSdk:
    version: str
    path: str


@dataclass(frozen=True)
class DotnetWorkload:
    id: str
    manifest_version: str
    installation_source: str = ""

    def __str__(self) -> str:
        text = f"{self.id} {self.manifest_version}"
        return f"{text} ({self.installation_source})" if self.installation_source else text


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _lines(output: str | None) -> list[str]:
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def parse_runtimes(
    output: str | None,
    exclude: Iterable[str] = (),
    require: str | None = None,
) -> list[DotnetRuntime]:
    """Parse ``dotnet --list-runtimes`` output.

    Args:
        output: Raw command output.
        exclude: Runtime family names to drop (matched anywhere in the line).
        require: If given, only lines containing this text are kept.
    """
    excluded = tuple(exclude)
    runtimes: list[DotnetRuntime] = []
    for line in _lines(output):
        if any(name in line for name in excluded):
            continue
        if require and require not in line:
            continue
        match = _RUNTIME_RE.match(line)
        if not match:
            logger.debug("Skipping unrecognised runtime line: %r", line)
            continue
        runtimes.append(DotnetRuntime(*(group.strip() for group in match.groups())))
    return runtimes


def parse_sdks(output: str | None) -> list[DotnetSdk]:
    """Parse ``dotnet --list-sdks`` output into version + install path."""
    sdks: list[DotnetSdk] = []
    for line in _lines(output):
        match = _SDK_RE.match(line)
        if not match:
            logger.debug("Skipping unrecognised SDK line: %r", line)
            continue
        sdks.append(DotnetSdk(match.group(1).strip(), match.group(2).strip()))
    return sdks


def parse_workloads(output: str | None, contains: str = REMOTE_WORKLOAD_ID) -> list[DotnetWorkload]:
    """Parse the table printed by ``dotnet workload list``.

    Columns are separated by two or more spaces.  Only rows whose text
    contains *contains* are returned; header and ruler rows never do.
    """
    workloads: list[DotnetWorkload] = []
    for line in _lines(output):
        if contains not in line:
            continue
        parts = _WORKLOAD_SPLIT_RE.split(line, maxsplit=2)
        if len(parts) < 2:
            logger.debug("Skipping unrecognised workload line: %r", line)
            continue
        source = parts[2].strip() if len(parts) > 2 else ""
        workloads.append(DotnetWorkload(parts[0].strip(), parts[1].strip(), source))
    return workloads


# ---------------------------------------------------------------------------
# Parity checks
# ---------------------------------------------------------------------------


def match_workloads(
    remote: Sequence[DotnetWorkload],
    local: Sequence[DotnetWorkload],
    remote_id: str = REMOTE_WORKLOAD_ID,
    local_id: str = LOCAL_WORKLOAD_ID,
) -> bool:
    """Return True if the remote and local workload manifests match.

    The Mac carries the ``maui`` workload while Windows carries
    ``maui-windows``; both come from the same manifest release.
    """
    remote_versions = {w.manifest_version for w in remote if w.id == remote_id}
    local_versions = {w.manifest_version for w in local if w.id == local_id}
    if not remote_versions or not local_versions:
        return False
    return bool(remote_versions & local_versions)


def match_runtimes(
    remote: Sequence[DotnetRuntime],
    local: Sequence[DotnetRuntime],
    runtime: str = BASE_RUNTIME,
) -> bool:
    """Return True if both sides share at least one *runtime* version."""
    remote_versions = {r.version for r in remote if r.runtime == runtime}
    local_versions = {r.version for r in local if r.runtime == runtime}
    return bool(remote_versions & local_versions)
