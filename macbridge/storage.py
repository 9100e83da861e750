"""Secure storage for paired Macs and their credentials.

Values are JSON-encoded and kept in the OS keyring (Windows Credential
Manager, macOS Keychain, Secret Service).  Nothing here touches disk
directly.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import keyring
import keyring.errors

from macbridge.models import RemoteConnection

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "MacBridge"
CONNECTION_LIST_KEY = "MacConnectionList"
_CREDENTIAL_PREFIX = "MacConnectionCredential:"


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class SecureStorage:
    """Key/value store for secrets.  Subclasses implement the three methods."""

    def save(self, key: str, value: Any) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def remove(self, key: str) -> bool:
        raise NotImplementedError


class KeyringStorage(SecureStorage):
    """:class:`SecureStorage` backed by the ``keyring`` package."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self.service = service

    def save(self, key: str, value: Any) -> bool:
        try:
            keyring.set_password(self.service, key, json.dumps(value))
        except keyring.errors.KeyringError as exc:
            logger.error("Could not store %s in keyring: %s", key, exc)
            return False
        logger.debug("Stored %s in keyring", key)
        return True

    def get(self, key: str) -> Any | None:
        try:
            raw = keyring.get_password(self.service, key)
        except keyring.errors.KeyringError as exc:
            logger.error("Could not read %s from keyring: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Keyring entry %s is not valid JSON — ignoring", key)
            return None

    def remove(self, key: str) -> bool:
        try:
            keyring.delete_password(self.service, key)
        except keyring.errors.PasswordDeleteError:
            return False
        except keyring.errors.KeyringError as exc:
            logger.error("Could not delete %s from keyring: %s", key, exc)
            return False
        logger.debug("Deleted %s from keyring", key)
        return True


# ---------------------------------------------------------------------------
# Connection store
# ---------------------------------------------------------------------------


class ConnectionStore:
    """The list of paired Macs plus one credential entry per Mac.

    The list itself never contains passwords.
    """

    def __init__(self, storage: SecureStorage | None = None) -> None:
        self._storage = storage or KeyringStorage()

    @staticmethod
    def _credential_key(connection: RemoteConnection) -> str:
        return _CREDENTIAL_PREFIX + connection.credential_key

    def list_connections(self) -> list[RemoteConnection]:
        raw = self._storage.get(CONNECTION_LIST_KEY)
        if not isinstance(raw, list):
            return []
        connections: list[RemoteConnection] = []
        for entry in raw:
            try:
                connections.append(RemoteConnection.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed stored connection %r: %s", entry, exc)
        return connections

    def get(self, hostname: str) -> RemoteConnection | None:
        """Look up a paired Mac by hostname or IP address."""
        for connection in self.list_connections():
            if hostname in (connection.hostname, connection.ip_address):
                return connection
        return None

    def _save_list(self, connections: list[RemoteConnection]) -> bool:
        return self._storage.save(CONNECTION_LIST_KEY, [c.to_dict() for c in connections])

    def add(self, connection: RemoteConnection, password: str | None = None) -> bool:
        """Persist a new pairing.  Returns False if the host is already paired."""
        connections = self.list_connections()
        if any(c.hostname == connection.hostname for c in connections):
            logger.warning("Connection already exists for %s", connection.hostname)
            return False
        if password is not None and not self._storage.save(
            self._credential_key(connection), password
        ):
            return False
        connections.append(connection)
        if not self._save_list(connections):
            return False
        logger.info("Paired %s", connection.hostname)
        return True

    def get_password(self, connection: RemoteConnection) -> str | None:
        value = self._storage.get(self._credential_key(connection))
        return value if isinstance(value, str) else None

    def forget(self, hostname: str) -> bool:
        """Remove a pairing and its credential.  False if it was not paired."""
        connections = self.list_connections()
        remaining = [c for c in connections if c.hostname != hostname]
        if len(remaining) == len(connections):
            logger.warning("forget: no connection for %s", hostname)
            return False
        for connection in connections:
            if connection.hostname == hostname:
                self._storage.remove(self._credential_key(connection))
        self._save_list(remaining)
        logger.info("Forgot %s", hostname)
        return True

    def clear(self) -> bool:
        """Drop the whole connection list."""
        for connection in self.list_connections():
            self._storage.remove(self._credential_key(connection))
        return self._storage.remove(CONNECTION_LIST_KEY)
