"""Tests for macbridge/models.py — connection records, sessions and projects."""

from __future__ import annotations

from pathlib import Path

import pytest

from macbridge.models import (
    BuildSession,
    ProjectDescriptor,
    RemoteConnection,
    is_maccatalyst_project,
    target_framework_from_project,
)

MAUI_PROJECT = """\
<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <TargetFrameworks>net8.0-android;net8.0-ios;net8.0-maccatalyst</TargetFrameworks>
    <TargetFrameworks Condition="$([MSBuild]::IsOSPlatform('windows'))">$(TargetFrameworks);net8.0-windows10.0.19041.0</TargetFrameworks>
    <OutputType>Exe</OutputType>
    <UseMaui>true</UseMaui>
  </PropertyGroup>
</Project>
"""

LIBRARY_PROJECT = """\
<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <TargetFramework>net8.0</TargetFramework>
  </PropertyGroup>
</Project>
"""


@pytest.fixture()
def maui_csproj(tmp_path: Path) -> Path:
    path = tmp_path / "App" / "App.csproj"
    path.parent.mkdir()
    path.write_text(MAUI_PROJECT, encoding="utf-8")
    return path


class TestRemoteConnection:
    def test_fingerprint_set_once(self) -> None:
        mac = RemoteConnection("studio", "dev")
        mac.fingerprint = "AB:CD"
        mac.fingerprint = "AB:CD"
        with pytest.raises(ValueError):
            mac.fingerprint = "EF:01"

    def test_password_not_serialised(self) -> None:
        mac = RemoteConnection("studio", "dev", password="secret")
        assert "password" not in mac.to_dict()
        assert "secret" not in repr(mac)

    def test_from_dict(self) -> None:
        mac = RemoteConnection.from_dict(
            {"hostname": "studio", "username": "dev", "date_created": "2026-01-02T03:04:05"}
        )
        assert mac.date_created.year == 2026
        assert mac.address == "studio"
        assert mac.credential_key == "dev@studio"

    def test_clear_password(self) -> None:
        mac = RemoteConnection("studio", "dev", password="secret")
        mac.clear_password()
        assert mac.password is None


class TestBuildSession:
    def test_reset_issues_new_id(self) -> None:
        session = BuildSession(is_active=True, project_path="/p/App.csproj")
        old_id = session.session_id
        session.reset()
        assert session.session_id != old_id
        assert not session.is_active
        assert session.project_path is None
        assert session.build_started is not None

    def test_complete(self) -> None:
        session = BuildSession(is_active=True)
        session.complete(True)
        assert session.build_successful
        assert not session.is_active
        assert session.build_ended is not None


class TestProjects:
    def test_target_framework(self, maui_csproj: Path) -> None:
        assert target_framework_from_project(maui_csproj) == "net8.0-maccatalyst"

    def test_is_maccatalyst_project(self, maui_csproj: Path, tmp_path: Path) -> None:
        library = tmp_path / "Lib.csproj"
        library.write_text(LIBRARY_PROJECT, encoding="utf-8")
        assert is_maccatalyst_project(maui_csproj)
        assert not is_maccatalyst_project(library)

    def test_unreadable_project(self, tmp_path: Path) -> None:
        broken = tmp_path / "Broken.csproj"
        broken.write_text("<Project>", encoding="utf-8")
        assert target_framework_from_project(broken) is None
        assert target_framework_from_project(tmp_path / "missing.csproj") is None

    def test_descriptor_from_project_file(self, maui_csproj: Path) -> None:
        descriptor = ProjectDescriptor.from_project_file(maui_csproj)
        assert descriptor.target_framework == "net8.0-maccatalyst"
        assert descriptor.name == "App"
        assert descriptor.directory == maui_csproj.parent

    def test_descriptor_requires_maccatalyst(self, tmp_path: Path) -> None:
        library = tmp_path / "Lib.csproj"
        library.write_text(LIBRARY_PROJECT, encoding="utf-8")
        with pytest.raises(ValueError):
            ProjectDescriptor.from_project_file(library)

    def test_descriptor_rejects_catalyst_library(self, tmp_path: Path) -> None:
        library = tmp_path / "Lib.csproj"
        library.write_text(
            LIBRARY_PROJECT.replace("net8.0<", "net8.0-maccatalyst<"), encoding="utf-8"
        )
        assert target_framework_from_project(library) == "net8.0-maccatalyst"
        with pytest.raises(ValueError, match="not a MAUI app"):
            ProjectDescriptor.from_project_file(library)
