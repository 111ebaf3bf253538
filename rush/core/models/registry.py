"""
Registry model — what the registry declares is available.

A registry maps package names to entries; each entry lists one target
per (os, arch, version). The registry is rebuilt on every load and is
treated as immutable for the rest of the command.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from rush.core.platform import Platform
from rush.core.versions import parse_version


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Checksum(BaseModel, frozen=True):
    """Expected digest of an artifact, tagged with its algorithm."""

    algorithm: str = "sha256"
    digest: str

    @classmethod
    def parse(cls, text: str, default_algorithm: str = "sha256") -> Checksum:
        """Parse ``algo:hex`` or a bare hex digest."""
        algo, sep, digest = text.strip().partition(":")
        if not sep:
            return cls(algorithm=default_algorithm.lower(), digest=algo.lower())
        return cls(algorithm=algo.strip().lower(), digest=digest.strip().lower())

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"


class Target(BaseModel):
    """One platform build of one package version."""

    os: str
    arch: str
    version: str
    url: str
    checksum: Checksum
    binaries: list[str] = Field(min_length=1)

    @property
    def platform(self) -> Platform:
        return Platform.of(self.os, self.arch)

    @property
    def slug(self) -> str:
        return self.platform.slug

    @property
    def binary_path(self) -> str:
        """Member path of the primary binary inside the archive."""
        return self.binaries[0]

    def matches(self, host: Platform) -> bool:
        return self.platform == host


class RegistryEntry(BaseModel):
    """A package and every build the registry publishes for it."""

    name: str
    description: str = ""
    targets: list[Target] = Field(default_factory=list)

    def targets_for(self, host: Platform) -> list[Target]:
        return [t for t in self.targets if t.matches(host)]

    def versions(self, host: Platform | None = None) -> list[str]:
        """Distinct versions, newest first."""
        targets = self.targets if host is None else self.targets_for(host)
        seen: dict[str, None] = {t.version: None for t in targets}
        return sorted(seen, key=parse_version, reverse=True)

    def platforms(self) -> list[str]:
        return sorted({t.slug for t in self.targets})


class Registry(BaseModel):
    """Parsed registry plus its provenance."""

    packages: dict[str, RegistryEntry] = Field(default_factory=dict)
    source: str = ""
    fetched_at: str = Field(default_factory=_now_iso)

    def get(self, name: str) -> RegistryEntry | None:
        return self.packages.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.packages

    def __len__(self) -> int:
        return len(self.packages)

    @property
    def names(self) -> list[str]:
        return sorted(self.packages)
