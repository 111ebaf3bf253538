"""
InstalledState — the root state model.

Serialized to ``<data_dir>/installed.json``. This is the single source of
truth for ``list``, ``upgrade`` and ``uninstall``: if a package is not
recorded here, rush does not consider it installed.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

STATE_SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class InstalledPackage(BaseModel):
    """Record of one installed package. Keyed by ``name``."""

    name: str
    installed_version: str
    checksum: str = ""  # algo:hex of the installed primary binary
    binary_path: str
    binaries: list[str] = Field(default_factory=list)
    install_timestamp: str = Field(default_factory=_now_iso)
    pinned: bool = False
    source_url: str = ""

    @property
    def all_binaries(self) -> list[str]:
        return self.binaries or [self.binary_path]


class InstalledState(BaseModel):
    """Ordered mapping from package name to its install record."""

    schema_version: int = STATE_SCHEMA_VERSION
    packages: dict[str, InstalledPackage] = Field(default_factory=dict)

    def get(self, name: str) -> InstalledPackage | None:
        return self.packages.get(name)

    def record(self, package: InstalledPackage) -> None:
        """Insert or overwrite the record for ``package.name``."""
        self.packages[package.name] = package

    def remove(self, name: str) -> InstalledPackage | None:
        return self.packages.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self.packages
