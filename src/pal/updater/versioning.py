"""Strict ``major.minor.patch`` parsing and ordering.

Only plain three-part versions are accepted: no leading ``v``, no
pre-release or build suffixes. Anything else is rejected at the ledger
boundary and never reaches the comparison functions.
"""

from __future__ import annotations

import re

_STRICT_SEMVER_RE = re.compile(r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")

# Unanchored form for pulling a version out of free text (``pal, version 1.2.3``).
_SEMVER_TOKEN_RE = re.compile(r"(?<![\w.])(\d+\.\d+\.\d+)(?![\w.])")


class InvalidVersionError(ValueError):
    """Raised when a version string is not strict ``major.minor.patch``."""


def is_valid_version(version: str) -> bool:
    """Return True if *version* is strict ``major.minor.patch``."""
    return _STRICT_SEMVER_RE.match(version) is not None


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse a strict semver string into ``(major, minor, patch)``."""
    m = _STRICT_SEMVER_RE.match(version)
    if m is None:
        raise InvalidVersionError(f"Not a strict major.minor.patch version: {version!r}")
    return int(m.group("major")), int(m.group("minor")), int(m.group("patch"))


def compare_versions(a: str, b: str) -> int:
    """Compare two strict versions, returning -1, 0 or 1."""
    left = parse_version(a)
    right = parse_version(b)
    if left == right:
        return 0
    return 1 if left > right else -1


def is_strictly_newer(candidate: str, current: str) -> bool:
    """Return True if *candidate* is a strictly newer version than *current*."""
    return compare_versions(candidate, current) > 0


def extract_version(text: str) -> str | None:
    """Return the first strict version token found in *text*, if any."""
    m = _SEMVER_TOKEN_RE.search(text)
    return m.group(1) if m else None
