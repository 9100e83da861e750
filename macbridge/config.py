"""Configuration management for MacBridge.

Settings are stored as JSON under ``~/.macbridge/config.json``.  Passwords
and the paired-host list are kept in the OS keyring instead
(see :mod:`macbridge.storage`).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_port": 22,
    "ssh_timeout": 15,
    "stream_read_timeout": 0.5,
    "transfer_concurrency": 10,
    "remote_build_path": "~/Library/Caches/Maui/builds",
    "remote_tool_dir": "~/.macbridge",
    "transfer_exclude_dirs": [
        "bin",
        "obj",
        ".vs",
        ".git",
        ".github",
        "packages",
        "node_modules",
    ],
    "install_debugger": True,
    "start_debugger_on_connect": True,
    "success_tokens": ["succeeded"],
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Reads and persists the bridge settings file.

    Unknown keys in the file are kept; missing keys fall back to
    :data:`DEFAULT_CONFIG`.  An unreadable file is replaced with the
    defaults and a warning is logged.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / ".macbridge"
        self._config_path = self._base / "config.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._read()

    def _persist(self) -> None:
        # Rename over the old file so a crash never leaves half a document.
        staging = self._config_path.with_suffix(".tmp")
        try:
            staging.write_text(json.dumps(self._config, indent=2), encoding="utf-8")
            staging.replace(self._config_path)
        except OSError as exc:
            logger.error("Could not save settings to %s: %s", self._config_path, exc)
            raise

    def _reset(self) -> dict[str, Any]:
        self._config = dict(DEFAULT_CONFIG)
        self._persist()
        return self._config

    def _read(self) -> dict[str, Any]:
        if not self._config_path.exists():
            logger.debug("Writing default settings to %s", self._config_path)
            return self._reset()

        try:
            stored = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Unreadable settings in %s (%s); using defaults", self._config_path, exc)
            return self._reset()
        if not isinstance(stored, dict):
            logger.warning("Settings in %s are not a JSON object; using defaults", self._config_path)
            return self._reset()

        settings = dict(DEFAULT_CONFIG)
        settings.update(stored)
        return settings

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Change one setting and save the file immediately."""
        self._config[key] = value
        self._persist()
        logger.debug("Setting %s changed to %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Shallow copy of every setting, defaults included."""
        return dict(self._config)


# ---------------------------------------------------------------------------
# Typed view
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BridgeSettings:
    """Typed snapshot of the settings the bridge consumes."""

    ssh_port: int = DEFAULT_CONFIG["ssh_port"]
    ssh_timeout: float = DEFAULT_CONFIG["ssh_timeout"]
    stream_read_timeout: float = DEFAULT_CONFIG["stream_read_timeout"]
    transfer_concurrency: int = DEFAULT_CONFIG["transfer_concurrency"]
    remote_build_path: str = DEFAULT_CONFIG["remote_build_path"]
    remote_tool_dir: str = DEFAULT_CONFIG["remote_tool_dir"]
    transfer_exclude_dirs: tuple[str, ...] = tuple(DEFAULT_CONFIG["transfer_exclude_dirs"])
    install_debugger: bool = DEFAULT_CONFIG["install_debugger"]
    start_debugger_on_connect: bool = DEFAULT_CONFIG["start_debugger_on_connect"]
    success_tokens: tuple[str, ...] = tuple(DEFAULT_CONFIG["success_tokens"])

    @property
    def debugger_dir(self) -> str:
        return f"{self.remote_tool_dir.rstrip('/')}/vsdbg"

    @classmethod
    def from_config(cls, config: ConfigManager) -> BridgeSettings:
        values = config.get_all()
        return cls(
            ssh_port=int(values["ssh_port"]),
            ssh_timeout=float(values["ssh_timeout"]),
            stream_read_timeout=float(values["stream_read_timeout"]),
            transfer_concurrency=max(1, int(values["transfer_concurrency"])),
            remote_build_path=str(values["remote_build_path"]),
            remote_tool_dir=str(values["remote_tool_dir"]),
            transfer_exclude_dirs=tuple(values["transfer_exclude_dirs"]),
            install_debugger=bool(values["install_debugger"]),
            start_debugger_on_connect=bool(values["start_debugger_on_connect"]),
            success_tokens=tuple(values["success_tokens"]),
        )
