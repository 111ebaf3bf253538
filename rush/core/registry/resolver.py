"""
Target resolver — (name, version?, host) → exactly one Target.

Selection:
    1. keep targets built for the host os/arch
    2. requested version  → keep targets whose parsed version is equal
       no version         → keep targets carrying the highest version
    3. exactly one left   → that target; more than one → AmbiguousTarget
"""

from __future__ import annotations

import logging

from rush.core.errors import AmbiguousTarget, NoMatchingTarget, PackageNotFound
from rush.core.models.registry import Registry, Target
from rush.core.platform import Platform
from rush.core.versions import parse_version, same_version

logger = logging.getLogger(__name__)


def resolve(
    registry: Registry,
    name: str,
    requested_version: str | None,
    host: Platform,
) -> Target:
    """Pick the artifact to install.

    Raises:
        PackageNotFound: ``name`` is not in the registry.
        NoMatchingTarget: Nothing is built for ``host``, or the requested
            version is not among the host's versions.
        AmbiguousTarget: More than one target survives.
    """
    entry = registry.get(name)
    if entry is None:
        raise PackageNotFound(name)

    candidates = entry.targets_for(host)
    if not candidates:
        raise NoMatchingTarget(name, "platform", host=host.slug, available=entry.platforms())

    if requested_version:
        try:
            parse_version(requested_version)
        except ValueError:
            raise NoMatchingTarget(
                name,
                "version",
                host=host.slug,
                requested_version=requested_version,
                available=entry.versions(host),
            ) from None
        candidates = [t for t in candidates if same_version(t.version, requested_version)]
        if not candidates:
            raise NoMatchingTarget(
                name,
                "version",
                host=host.slug,
                requested_version=requested_version,
                available=entry.versions(host),
            )
    else:
        newest = max(parse_version(t.version) for t in candidates)
        candidates = [t for t in candidates if parse_version(t.version) == newest]

    if len(candidates) > 1:
        raise AmbiguousTarget(name, [f"{t.slug}@{t.version} ({t.url})" for t in candidates])

    target = candidates[0]
    logger.debug("Resolved %s → %s@%s (%s)", name, target.slug, target.version, target.url)
    return target


def latest_version(registry: Registry, name: str, host: Platform) -> str | None:
    """Newest version of ``name`` published for ``host``, or None."""
    entry = registry.get(name)
    if entry is None:
        return None
    versions = entry.versions(host)
    return versions[0] if versions else None
