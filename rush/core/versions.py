"""
Semantic version parsing and comparison.

Registry versions follow SemVer 2.0 (``1.0.0-alpha.1+build.5``) and are
parsed with ``semver``. A leading ``v`` is tolerated because release tags
are often published that way, and partial versions are completed
(``1.2`` reads as ``1.2.0``). Build metadata does not take part in
ordering or equality.
"""

from __future__ import annotations

from semver import Version


def parse_version(text: str) -> Version:
    """Parse a version string.

    Raises:
        ValueError: If ``text`` is not a valid semantic version.
    """
    raw = str(text).strip()
    if raw[:1] in ("v", "V"):
        raw = raw[1:]
    try:
        return Version.parse(raw, optional_minor_and_patch=True)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid version '{text}'") from e


def same_version(a: str, b: str) -> bool:
    """Compare two version strings by value (``v1.0`` == ``1.0.0``)."""
    try:
        return parse_version(a) == parse_version(b)
    except ValueError:
        return a == b


def is_newer(candidate: str, current: str) -> bool:
    """Whether ``candidate`` is strictly newer than ``current``.

    An unparseable installed version never blocks an upgrade to a valid
    registry version.
    """
    new = parse_version(candidate)
    try:
        old = parse_version(current)
    except ValueError:
        return True
    return new > old
