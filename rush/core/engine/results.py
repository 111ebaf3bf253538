"""
Result types returned by the Installer.

Every operation returns one of these instead of printing. The CLI renders
them (or dumps ``to_dict()`` for ``--json``); tests assert on fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class InstallStatus(StrEnum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"
    FAILED = "failed"


class UpgradeStatus(StrEnum):
    UPGRADED = "upgraded"
    UP_TO_DATE = "up_to_date"
    PINNED = "pinned"
    SKIPPED = "skipped"
    NOT_INSTALLED = "not_installed"
    FAILED = "failed"


class DriftStatus(StrEnum):
    OK = "ok"
    MODIFIED = "modified"
    MISSING = "missing"


# ── Install / uninstall ─────────────────────────────────────────


@dataclass
class InstallResult:
    name: str
    version: str
    status: InstallStatus = InstallStatus.INSTALLED
    binaries: list[str] = field(default_factory=list)
    previous_version: str | None = None
    pinned: bool = False

    @property
    def changed(self) -> bool:
        return self.status == InstallStatus.INSTALLED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "status": str(self.status),
            "binaries": self.binaries,
            "previous_version": self.previous_version,
            "pinned": self.pinned,
        }


@dataclass
class UninstallResult:
    name: str
    removed: bool
    version: str | None = None
    binaries_removed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "removed": self.removed,
            "version": self.version,
            "binaries_removed": self.binaries_removed,
        }


@dataclass
class BatchOutcome:
    """One package of a batch install."""

    spec: str
    result: InstallResult | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "spec": self.spec,
            "ok": self.ok,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


@dataclass
class BatchReport:
    outcomes: list[BatchOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def exit_code(self) -> int:
        """First failing outcome's code, or 0."""
        return next((o.exit_code for o in self.outcomes if not o.ok), 0)

    def to_dict(self) -> dict:
        return {"outcomes": [o.to_dict() for o in self.outcomes], "failed": len(self.failed)}


# ── Upgrade ─────────────────────────────────────────────────────


@dataclass
class UpgradeOutcome:
    name: str
    status: UpgradeStatus
    installed_version: str | None = None
    available_version: str | None = None
    detail: str = ""
    exit_code: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": str(self.status),
            "installed_version": self.installed_version,
            "available_version": self.available_version,
            "detail": self.detail,
        }


@dataclass
class UpgradeReport:
    outcomes: list[UpgradeOutcome] = field(default_factory=list)

    @property
    def upgraded(self) -> list[UpgradeOutcome]:
        return [o for o in self.outcomes if o.status == UpgradeStatus.UPGRADED]

    @property
    def exit_code(self) -> int:
        return next((o.exit_code for o in self.outcomes if o.status == UpgradeStatus.FAILED), 0)

    def to_dict(self) -> dict:
        return {
            "outcomes": [o.to_dict() for o in self.outcomes],
            "upgraded": len(self.upgraded),
        }


# ── Queries ─────────────────────────────────────────────────────


@dataclass
class SearchHit:
    name: str
    description: str
    latest_version: str | None
    supported: bool
    installed_version: str | None = None
    platforms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "latest_version": self.latest_version,
            "supported": self.supported,
            "installed_version": self.installed_version,
            "platforms": self.platforms,
        }


@dataclass
class DriftEntry:
    name: str
    version: str
    status: DriftStatus
    path: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "status": str(self.status),
            "path": self.path,
            "detail": self.detail,
        }


@dataclass
class DriftReport:
    entries: list[DriftEntry] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return all(e.status == DriftStatus.OK for e in self.entries)

    def to_dict(self) -> dict:
        return {"clean": self.clean, "entries": [e.to_dict() for e in self.entries]}


# ── Maintenance ─────────────────────────────────────────────────


@dataclass
class UpdateResult:
    source: str
    fetched_at: str
    package_count: int
    cached: bool

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "fetched_at": self.fetched_at,
            "package_count": self.package_count,
            "cached": self.cached,
        }


@dataclass
class CleanResult:
    files_cleaned: list[str] = field(default_factory=list)
    work_dirs_removed: list[str] = field(default_factory=list)
    cache_entries_removed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.files_cleaned) + len(self.work_dirs_removed) + len(self.cache_entries_removed)

    def to_dict(self) -> dict:
        return {
            "files_cleaned": self.files_cleaned,
            "work_dirs_removed": self.work_dirs_removed,
            "cache_entries_removed": self.cache_entries_removed,
        }
