"""Data records shared by the bridge, the verifier and the pairing flow."""

from __future__ import annotations

import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from macbridge.dotnet import DotnetRuntime, DotnetSdk, DotnetWorkload
from macbridge.version import ToolchainVersion

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Remote connection
# ---------------------------------------------------------------------------


@dataclass
class RemoteConnection:
    """A paired Mac.

    ``password`` is transient: it is never serialised by :meth:`to_dict`
    and callers clear it once the SSH session is up.  ``fingerprint`` may
    be set once; later assignments of a different value raise.
    """

    hostname: str
    username: str
    ip_address: str = ""
    fingerprint: str = ""
    password: str | None = field(default=None, repr=False)
    date_created: datetime = field(default_factory=datetime.now)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "fingerprint":
            current = self.__dict__.get("fingerprint")
            if current and value != current:
                raise ValueError(f"Fingerprint for {self.hostname} is already set")
        super().__setattr__(name, value)

    @property
    def address(self) -> str:
        """IP address when known, else the hostname."""
        return self.ip_address or self.hostname

    @property
    def credential_key(self) -> str:
        """Secure-storage key for this host's password."""
        return f"{self.username}@{self.hostname}"

    def clear_password(self) -> None:
        self.password = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "username": self.username,
            "ip_address": self.ip_address,
            "fingerprint": self.fingerprint,
            "date_created": self.date_created.isoformat(timespec="seconds"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteConnection:
        created = data.get("date_created")
        return cls(
            hostname=data["hostname"],
            username=data.get("username", ""),
            ip_address=data.get("ip_address", ""),
            fingerprint=data.get("fingerprint", ""),
            date_created=datetime.fromisoformat(created) if created else datetime.now(),
        )


@dataclass(frozen=True)
class NetworkInfo:
    """Identity reported by the Mac during credential verification."""

    hostname: str
    ip_address: str


@dataclass
class SigningIdentity:
    certificate_name: str = ""
    team_id: str = ""
    provisioning_profile: str = ""
    provisioning_profile_id: str = ""
    bundle_id: str = ""
    app_id: str = ""


# ---------------------------------------------------------------------------
# Build environment / session
# ---------------------------------------------------------------------------


@dataclass
class BuildEnvironment:
    """Cached verification results for the connected Mac."""

    verified: bool = False
    runtimes: list[DotnetRuntime] = field(default_factory=list)
    sdks: list[DotnetSdk] = field(default_factory=list)
    workloads: list[DotnetWorkload] = field(default_factory=list)
    macos_version: ToolchainVersion | None = None
    xcode_version: ToolchainVersion | None = None
    xcode_build_version: str | None = None

    def reset(self) -> None:
        self.verified = False
        self.runtimes = []
        self.sdks = []
        self.workloads = []
        self.macos_version = None
        self.xcode_version = None
        self.xcode_build_version = None


@dataclass
class BuildSession:
    """One build/clean/debug/rebuild attempt on the Mac."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    build_started: datetime | None = None
    build_ended: datetime | None = None
    is_active: bool = False
    build_successful: bool = False
    project_path: str | None = None
    target_framework: str | None = None
    reference_paths: list[str] = field(default_factory=list)

    def reset(self) -> None:
        """Start a fresh session with a new id."""
        self.session_id = str(uuid.uuid4())
        self.build_started = datetime.now()
        self.build_ended = None
        self.is_active = False
        self.build_successful = False
        self.project_path = None
        self.target_framework = None
        self.reference_paths = []

    def complete(self, success: bool) -> None:
        self.build_ended = datetime.now()
        self.build_successful = success
        self.is_active = False


# ---------------------------------------------------------------------------
# Startup project
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectDescriptor:
    """The host's current startup project.

    ``path`` is the project file; ``references`` are the project files of
    referenced projects that must be transferred alongside it.
    """

    path: str
    target_framework: str
    references: tuple[str, ...] = ()

    @property
    def directory(self) -> Path:
        return Path(self.path).parent

    @property
    def name(self) -> str:
        """Display name used to derive the remote session directory."""
        return self.directory.stem

    @classmethod
    def from_project_file(
        cls, path: str | Path, references: tuple[str, ...] = ()
    ) -> ProjectDescriptor:
        """Build a descriptor by reading the Mac Catalyst target from *path*.

        Raises:
            ValueError: If the project is not a MAUI app with a
                ``maccatalyst`` target.
        """
        framework = target_framework_from_project(path)
        if not framework or not is_maccatalyst_project(path):
            raise ValueError(f"{path} is not a MAUI app targeting Mac Catalyst")
        return cls(str(path), framework, references)


def _read_properties(path: str | Path) -> dict[str, str]:
    """Collect PropertyGroup values from an SDK-style project file."""
    tree = ET.parse(path)
    properties: dict[str, str] = {}
    for group in tree.getroot().iter():
        if group.tag.rsplit("}", 1)[-1] != "PropertyGroup":
            continue
        for prop in group:
            tag = prop.tag.rsplit("}", 1)[-1]
            if prop.text and tag not in properties:
                properties[tag] = prop.text.strip()
    return properties


def target_framework_from_project(path: str | Path) -> str | None:
    """Return the ``net*-maccatalyst`` framework of a project, or ``None``."""
    try:
        properties = _read_properties(path)
    except (ET.ParseError, OSError) as exc:
        logger.warning("Could not read project %s: %s", path, exc)
        return None
    candidates = properties.get("TargetFrameworks") or properties.get("TargetFramework") or ""
    for framework in candidates.split(";"):
        framework = framework.strip()
        if "maccatalyst" in framework:
            return framework
    return None


def is_maccatalyst_project(path: str | Path) -> bool:
    """True for MAUI executables that target Mac Catalyst."""
    try:
        properties = _read_properties(path)
    except (ET.ParseError, OSError) as exc:
        logger.warning("Could not read project %s: %s", path, exc)
        return False
    return (
        properties.get("UseMaui", "").lower() == "true"
        and properties.get("OutputType", "").lower() == "exe"
        and target_framework_from_project(path) is not None
    )
