"""Tests for macbridge/output.py and the command-line entry point."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import pytest

import main
from macbridge.config import DEFAULT_CONFIG, ConfigManager
from macbridge.models import RemoteConnection
from macbridge.output import CallbackOutputSink, LoggingOutputSink, OutputChannel, StatusLevel


class TestLoggingOutputSink:
    def test_channels_use_child_loggers(self, caplog: pytest.LogCaptureFixture) -> None:
        sink = LoggingOutputSink()
        with caplog.at_level(logging.DEBUG, logger="macbridge.output"):
            sink.write("Build succeeded.\r\n")
            sink.write("stat failed", OutputChannel.DEBUG)
            sink.write_status("vsdbg is not installed", "Alert", StatusLevel.WARNING)

        by_logger = {(r.name, r.getMessage(), r.levelno) for r in caplog.records}
        assert ("macbridge.output.build", "Build succeeded.", logging.INFO) in by_logger
        assert ("macbridge.output.debug", "stat failed", logging.DEBUG) in by_logger
        assert (
            "macbridge.output.status",
            "[Alert] vsdbg is not installed",
            logging.WARNING,
        ) in by_logger


class TestCallbackOutputSink:
    def test_forwards_through_dispatch(self) -> None:
        queued = []
        lines = []
        sink = CallbackOutputSink(on_write=lambda m, c: lines.append((m, c)), dispatch=queued.append)

        sink.write("hello", OutputChannel.DEBUG)
        assert lines == []
        queued.pop()()
        assert lines == [("hello", OutputChannel.DEBUG)]

    def test_callback_errors_are_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        sink = CallbackOutputSink(on_status=MagicMock(side_effect=RuntimeError("ui gone")))
        with caplog.at_level(logging.ERROR):
            sink.write_status("Connected")
        assert "Exception in output callback" in caplog.text

    def test_missing_callbacks_are_ignored(self) -> None:
        sink = CallbackOutputSink()
        sink.write("x")
        sink.write_status("x")
        sink.clear(OutputChannel.BUILD)


class TestMain:
    def test_build_command_parsing(self) -> None:
        args = main._build_parser().parse_args(
            ["build", "studio", "App/App.csproj", "-r", "Lib/Lib.csproj", "-f", "net8.0-maccatalyst"]
        )
        assert args.command == "build"
        assert args.reference == ["Lib/Lib.csproj"]
        assert args.framework == "net8.0-maccatalyst"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            main._build_parser().parse_args([])

    def test_hosts_lists_pairings(self, capsys: pytest.CaptureFixture[str]) -> None:
        store = MagicMock()
        store.list_connections.return_value = [
            RemoteConnection("studio", "dev", ip_address="192.168.1.20", fingerprint="AB:CD")
        ]
        with patch("main.ConnectionStore", return_value=store), patch(
            "main.ConfigManager", return_value=MagicMock(get_all=lambda: dict(DEFAULT_CONFIG))
        ):
            assert main.main(["hosts"]) == 0
        out = capsys.readouterr().out
        assert "studio" in out and "192.168.1.20" in out

    def test_build_with_unreadable_project(self, tmp_path) -> None:
        with patch("main.ConnectionStore"), patch(
            "main.ConfigManager", return_value=MagicMock(get_all=lambda: dict(DEFAULT_CONFIG))
        ):
            assert main.main(["build", "studio", str(tmp_path / "missing.csproj")]) == 2

    def test_identity_without_verifier_fails(self) -> None:
        bridge = MagicMock(verifier=None)
        pairing = MagicMock()
        pairing.connect_and_verify.return_value = True
        with patch("main.ConnectionStore"), patch(
            "main.ConfigManager", return_value=MagicMock(get_all=lambda: dict(DEFAULT_CONFIG))
        ), patch("main.MacBridge", return_value=bridge), patch(
            "main.PairingService", return_value=pairing
        ):
            assert main.main(["identity", "studio", "com.example.app"]) == 1
        bridge.disconnect.assert_called_once()

    def test_config_sets_json_value(self, tmp_path) -> None:
        config = ConfigManager(base_dir=tmp_path)
        with patch("main.ConfigManager", return_value=config):
            assert main.main(["config", "transfer_concurrency", "4"]) == 0
            assert main.main(["config", "remote_build_path", "~/builds"]) == 0
        reloaded = ConfigManager(base_dir=tmp_path)
        assert reloaded.get("transfer_concurrency") == 4
        assert reloaded.get("remote_build_path") == "~/builds"

    def test_config_shows_settings(self, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("main.ConfigManager", return_value=ConfigManager(base_dir=tmp_path)):
            assert main.main(["config"]) == 0
            assert main.main(["config", "nonexistent", "1"]) == 2
        assert "ssh_port = 22" in capsys.readouterr().out
