"""Toolchain version parsing and ordering.

Versions reported by ``pkgutil``, ``sw_vers`` and ``xcodebuild`` are
dot-separated integers with three mandatory components (major, minor,
build) and up to three optional ones (revision, patch, build metadata).

Optional components use nullable-aware ordering: an absent component sorts
below any present value and is equal to another absent component.  This
means ``16.0.0 < 16.0.0.0``, which the package gates rely on.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass

_MIN_COMPONENTS = 3
_MAX_COMPONENTS = 6


def _compare_nullable(left: int | None, right: int | None) -> int:
    """Three-way compare where ``None`` sorts before every integer."""
    if left is None and right is None:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1
    return (left > right) - (left < right)


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class ToolchainVersion:
    """An ordered 3–6 component version number."""

    major: int
    minor: int
    build: int
    revision: int | None = None
    patch: int | None = None
    build_metadata: int | None = None

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def parse(cls, text: str) -> ToolchainVersion:
        """Parse ``"16.0.0"`` / ``"16.0.0.0.0.1024"`` style strings.

        Raises:
            ValueError: If *text* does not have 3–6 non-negative integer
                components.
        """
        parts = text.strip().split(".")
        if not _MIN_COMPONENTS <= len(parts) <= _MAX_COMPONENTS:
            raise ValueError(
                f"Version {text!r} must have {_MIN_COMPONENTS}-{_MAX_COMPONENTS} components"
            )
        numbers: list[int] = []
        for part in parts:
            if not part.isdigit():
                raise ValueError(f"Version {text!r} has non-numeric component {part!r}")
            numbers.append(int(part))
        return cls(*numbers)

    @classmethod
    def parse_loose(cls, text: str) -> ToolchainVersion:
        """Parse short versions such as ``"14.5"`` (macOS) or ``"16"``.

        Missing mandatory components are filled with zero; optional ones
        stay absent.
        """
        parts = text.strip().split(".")
        while len(parts) < _MIN_COMPONENTS:
            parts.append("0")
        return cls.parse(".".join(parts))

    @classmethod
    def try_parse(cls, text: str | None) -> ToolchainVersion | None:
        """Return the loosely parsed version of *text* or ``None``."""
        if not text:
            return None
        try:
            return cls.parse_loose(text)
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def compare(self, other: ToolchainVersion) -> int:
        """Three-way comparison returning -1, 0 or 1."""
        for mine, theirs in (
            (self.major, other.major),
            (self.minor, other.minor),
            (self.build, other.build),
        ):
            if mine != theirs:
                return -1 if mine < theirs else 1
        for mine_opt, theirs_opt in (
            (self.revision, other.revision),
            (self.patch, other.patch),
            (self.build_metadata, other.build_metadata),
        ):
            result = _compare_nullable(mine_opt, theirs_opt)
            if result:
                return result
        return 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ToolchainVersion):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ToolchainVersion):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash(
            (self.major, self.minor, self.build, self.revision, self.patch, self.build_metadata)
        )

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.build}"
        for optional in (self.revision, self.patch, self.build_metadata):
            if optional is None:
                break
            text += f".{optional}"
        return text
