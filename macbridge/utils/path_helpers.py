"""Local/remote path conversion and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join remote Mac path parts with forward slashes on any local OS."""
    return posixpath.join(*parts)


def sanitize_remote_path(path: str) -> str:
    """Turn a Windows path into something usable under a POSIX root.

    Backslashes become forward slashes and drive colons are dropped, so
    ``C:\\src\\App`` becomes ``C/src/App``.
    """
    return path.replace("\\", "/").replace(":", "")


def remote_path_for(local_path: str | os.PathLike[str], remote_base: str) -> str:
    """Mirror an absolute local path under *remote_base*.

    ``remote_path_for("C:\\src\\App\\a.cs", "/Users/me/b/App/abc/")`` gives
    ``/Users/me/b/App/abc/C/src/App/a.cs``.
    """
    local = sanitize_remote_path(str(local_path)).lstrip("/")
    return posix_join(remote_base, local)


def human_readable_size(size_bytes: int | float) -> str:
    """Format a byte count for transfer logs, e.g. ``"4.2 MB"`` (1024-based)."""
    size = max(float(size_bytes), 0.0)
    if size < 1024:
        return f"{int(size)} B"
    for unit in ("KB", "MB", "GB", "TB"):
        size /= 1024.0
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}"
    return f"{size:.1f} TB"


def validate_remote_path(path: str) -> bool:
    """Whether *path* may be handed to SFTP: non-empty, no NUL, no ``..``."""
    if not path:
        return False
    if "\x00" in path or ".." in PurePosixPath(path).parts:
        logger.warning("Refusing unsafe remote path %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
