"""Three-component version identifiers for deployed images."""
from __future__ import annotations

from dataclasses import dataclass


class MalformedVersionError(ValueError):
    """Raised when a version string is not ``major.minor.patch``."""


@dataclass(frozen=True, order=True, slots=True)
class Version:
    """Parsed ``major.minor.patch`` version (ordering is lexicographic)."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        """Reject negative components."""
        if min(self.major, self.minor, self.patch) < 0:
            raise MalformedVersionError(
                f"Version components must be non-negative: {self.major}.{self.minor}.{self.patch}"
            )

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(value: str, *, allow_build: bool = False) -> Version:
    """Parse *value*, ignoring a trailing pre-release marker such as ``-SNAPSHOT``.

    Image tags of public releases carry a fourth build component
    (``25.0.0.2``). With ``allow_build=True`` that component is validated and
    dropped; otherwise exactly three components are required.
    """
    text = value.strip()
    core = text.split("-", 1)[0]
    parts = core.split(".")
    if allow_build and len(parts) == 4:
        if not (parts[3].isascii() and parts[3].isdigit()):
            raise MalformedVersionError(f"Version '{value}' has a non-numeric build number.")
        parts = parts[:3]
    if len(parts) != 3:
        raise MalformedVersionError(
            f"Version '{value}' must have exactly three dot-separated components."
        )
    numbers: list[int] = []
    for part in parts:
        if not (part.isascii() and part.isdigit()):
            raise MalformedVersionError(f"Version '{value}' contains a non-numeric component.")
        numbers.append(int(part))
    return Version(numbers[0], numbers[1], numbers[2])


def compare_versions(left: Version, right: Version) -> int:
    """Return -1, 0 or 1 comparing *left* to *right*."""
    for a, b in (
        (left.major, right.major),
        (left.minor, right.minor),
        (left.patch, right.patch),
    ):
        if a != b:
            return -1 if a < b else 1
    return 0


def is_in_range_strict_left(left: Version, version: Version, right: Version) -> bool:
    """Return ``True`` when ``left < version <= right``."""
    return left < version <= right


__all__ = [
    "MalformedVersionError",
    "Version",
    "compare_versions",
    "is_in_range_strict_left",
    "parse_version",
]
