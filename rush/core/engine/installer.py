"""
Installer — the resolve → fetch → verify → extract → commit pipeline.

Everything before COMMITTING happens in scratch space: the download in a
temporary work directory under ``<data_dir>/tmp`` and the extracted
binaries in ``.rush-tmp-<pid>-*`` staging files inside the install
directory. A failure there leaves the install directory and the state
file exactly as they were.

COMMITTING runs under the state lock:

    1. sweep staging files left by dead processes
    2. move each existing binary aside (backup), rename the staged file in
    3. record the package and save the state
    4. drop the backups

If 2 or 3 fails, new files are removed and backups moved back before the
error propagates, so the directory and the state never disagree.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Iterable
from contextlib import ExitStack
from enum import StrEnum
from pathlib import Path, PurePosixPath

from rush.core.config.settings import RushConfig
from rush.core.engine.results import (
    BatchOutcome,
    BatchReport,
    CleanResult,
    DriftEntry,
    DriftReport,
    DriftStatus,
    InstallResult,
    InstallStatus,
    SearchHit,
    UninstallResult,
    UpdateResult,
    UpgradeOutcome,
    UpgradeReport,
    UpgradeStatus,
)
from rush.core.errors import (
    BinaryConflict,
    ExtractionError,
    FilesystemError,
    InvalidPackageSpec,
    RushError,
    StateStoreError,
)
from rush.core.models.registry import Checksum, Registry, Target
from rush.core.models.state import InstalledPackage, InstalledState
from rush.core.persistence import staging
from rush.core.persistence.state_file import StateStore
from rush.core.platform import Platform, detect_host
from rush.core.registry.cache import RegistryCache
from rush.core.registry.resolver import latest_version, resolve
from rush.core.registry.source import RegistrySource
from rush.core.reliability.backoff import BackoffPolicy
from rush.core.services import checksum
from rush.core.services.archive import open_extractor
from rush.core.services.download import Fetcher, filename_from_url
from rush.core.versions import is_newer, same_version

logger = logging.getLogger(__name__)


class InstallPhase(StrEnum):
    RESOLVING = "resolving"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    STAGING = "staging"
    COMMITTING = "committing"
    INSTALLED = "installed"
    FAILED = "failed"


EventCallback = Callable[[str, InstallPhase, str], None]

# Digest recorded for installed binaries (drift detection)
RECORD_ALGORITHM = "sha256"


def parse_spec(spec: str) -> tuple[str, str | None]:
    """Split ``name`` / ``name@version``.

    Raises:
        InvalidPackageSpec: Empty name or empty version.
    """
    name, sep, version = spec.strip().partition("@")
    if not name:
        raise InvalidPackageSpec(spec, "missing package name")
    if sep and not version:
        raise InvalidPackageSpec(spec, "missing version after '@'")
    return name, version or None


class Installer:
    """Install / uninstall / upgrade / query operations.

    Args:
        config: Resolved settings.
        registry: Pre-loaded registry (skips the Registry Source).
        source: Registry source (default: built from ``config``).
        fetcher: Artifact downloader.
        store: State store.
        host: Platform to resolve targets for (default: this machine).
        on_event: ``(package, phase, detail)`` progress callback.
    """

    def __init__(
        self,
        config: RushConfig,
        registry: Registry | None = None,
        source: RegistrySource | None = None,
        fetcher: Fetcher | None = None,
        store: StateStore | None = None,
        host: Platform | None = None,
        on_event: EventCallback | None = None,
    ):
        self.config = config
        self.fetcher = fetcher or Fetcher(
            timeout=config.fetch_timeout,
            backoff=BackoffPolicy(max_attempts=config.fetch_attempts),
        )
        self.source = source or RegistrySource(
            config.registry_source,
            RegistryCache(config.cache_dir),
            self.fetcher,
            work_dir=config.work_dir,
        )
        self.store = store or StateStore(
            config.state_file,
            lock_path=config.lock_file,
            lock_timeout=config.lock_timeout,
        )
        self.host = host or detect_host()
        self.on_event = on_event
        self.save_backoff = BackoffPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)
        self._registry = registry

    @property
    def bin_dir(self) -> Path:
        return self.config.bin_dir

    @property
    def registry(self) -> Registry:
        """The registry, loaded on first use and reused for this Installer."""
        if self._registry is None:
            self._registry = self.source.load()
        return self._registry

    def installed(self) -> InstalledState:
        return self.store.load()

    # ── Install ─────────────────────────────────────────────────

    def install(self, name: str, version: str | None = None, force: bool = False) -> InstallResult:
        """Install ``name`` (optionally a specific ``version``).

        A specific version pins the package; ``upgrade`` leaves pinned
        packages alone. Installing without a version unpins.

        Raises:
            RushError: Any pipeline failure. Nothing is changed on disk.
        """
        return self._install(name, version, pinned=version is not None, force=force)

    def install_many(self, specs: Iterable[str], force: bool = False) -> BatchReport:
        """Install several ``name[@version]`` specs; failures do not stop the batch."""
        report = BatchReport()
        for spec in specs:
            try:
                name, version = parse_spec(spec)
                result = self.install(name, version, force=force)
            except RushError as e:
                logger.debug("Install of %s failed", spec, exc_info=True)
                report.outcomes.append(BatchOutcome(spec=spec, error=str(e), exit_code=e.exit_code))
            else:
                report.outcomes.append(BatchOutcome(spec=spec, result=result))
        return report

    def _install(self, name: str, version: str | None, *, pinned: bool, force: bool) -> InstallResult:
        try:
            self._emit(name, InstallPhase.RESOLVING, version or "latest")
            target = resolve(self.registry, name, version, self.host)

            current = self.store.load().get(name)
            if not force and current is not None and self._is_current(current, target):
                if current.pinned != pinned:
                    self._set_pinned(name, pinned)
                logger.info("%s %s is already installed", name, target.version)
                return InstallResult(
                    name=name,
                    version=current.installed_version,
                    status=InstallStatus.ALREADY_INSTALLED,
                    binaries=[str(p) for p in self._binary_paths(current)],
                    pinned=pinned,
                )

            result = self._run_pipeline(name, target, pinned=pinned, force=force)
        except RushError as e:
            if e.package is None:
                e.package = name
            self._emit(name, InstallPhase.FAILED, str(e))
            raise
        except OSError as e:
            # _commit has already rolled back
            error = FilesystemError(f"cannot install {name}: {e}", package=name)
            self._emit(name, InstallPhase.FAILED, str(error))
            raise error from e
        except BaseException as e:
            self._emit(name, InstallPhase.FAILED, f"{type(e).__name__}: {e}")
            raise

        self._emit(name, InstallPhase.INSTALLED, result.version)
        return result

    def _run_pipeline(self, name: str, target: Target, *, pinned: bool, force: bool) -> InstallResult:
        self.config.ensure_dirs()
        staged: list[tuple[Path, Path]] = []  # (staging file, final path)

        with ExitStack() as stack:
            stack.callback(self._discard_staged, staged)
            work = Path(
                stack.enter_context(
                    tempfile.TemporaryDirectory(
                        dir=self.config.work_dir, prefix=staging.work_prefix("install")
                    )
                )
            )

            self._emit(name, InstallPhase.FETCHING, target.url)
            artifact = stack.enter_context(self.fetcher.fetch(target.url, work))

            self._emit(name, InstallPhase.VERIFYING, str(target.checksum))
            checksum.verify(artifact, target.checksum, package=name)

            self._emit(name, InstallPhase.EXTRACTING, ", ".join(target.binaries))
            extractor = open_extractor(artifact, filename_from_url(target.url))
            seen: set[str] = set()
            for member in target.binaries:
                binary = PurePosixPath(member.replace("\\", "/")).name
                if not binary or binary in seen:
                    raise ExtractionError(f"cannot install '{member}': duplicate or empty binary name")
                seen.add(binary)
                tmp = staging.staging_file(self.bin_dir)
                staged.append((tmp, self.bin_dir / binary))
                extractor.extract_member(artifact, member, tmp)

            self._emit(name, InstallPhase.STAGING, str(self.bin_dir))
            digest = checksum.checksum_of(staged[0][0], RECORD_ALGORITHM)

            self._emit(name, InstallPhase.COMMITTING, str(self.bin_dir))
            previous = self._commit(name, target, staged, digest, pinned=pinned, force=force)

        return InstallResult(
            name=name,
            version=target.version,
            status=InstallStatus.INSTALLED,
            binaries=[str(final) for _, final in staged],
            previous_version=previous.installed_version if previous else None,
            pinned=pinned,
        )

    def _commit(
        self,
        name: str,
        target: Target,
        staged: list[tuple[Path, Path]],
        digest: Checksum,
        *,
        pinned: bool,
        force: bool,
    ) -> InstalledPackage | None:
        finals = [final for _, final in staged]
        with self.store.lock.hold():
            staging.sweep_orphans(self.bin_dir)
            staging.sweep_work_dir(self.config.work_dir)
            state = self.store.load()
            previous = state.get(name)
            self._claim_binaries(state, name, finals, force=force)

            backups: list[tuple[Path, Path]] = []
            placed: list[Path] = []
            try:
                for tmp, final in staged:
                    if final.exists() or final.is_symlink():
                        backup = staging.backup_file(self.bin_dir)
                        os.replace(final, backup)
                        backups.append((final, backup))
                    os.replace(tmp, final)
                    placed.append(final)

                state.record(
                    InstalledPackage(
                        name=name,
                        installed_version=target.version,
                        checksum=str(digest),
                        binary_path=str(finals[0]),
                        binaries=[str(p) for p in finals],
                        pinned=pinned,
                        source_url=target.url,
                    )
                )
                self.store.save(state)
            except BaseException:
                logger.warning("Commit of %s failed; rolling back %s", name, self.bin_dir)
                self._rollback(placed, backups)
                raise

            for _, backup in backups:
                backup.unlink(missing_ok=True)
            if previous is not None:
                self._remove_dropped(previous, finals)

        logger.info("Installed %s %s → %s", name, target.version, ", ".join(str(p) for p in finals))
        return previous

    def _claim_binaries(self, state: InstalledState, name: str, finals: list[Path], *, force: bool) -> None:
        """Refuse (or with ``force`` take over) binaries owned by other packages."""
        wanted = {str(p) for p in finals}
        for other in list(state.packages.values()):
            if other.name == name:
                continue
            owned = [str(p) for p in self._binary_paths(other)]
            clash = [p for p in owned if p in wanted]
            if not clash:
                continue
            if not force:
                raise BinaryConflict(Path(clash[0]).name, other.name, package=name)
            remaining = [p for p in owned if p not in wanted]
            logger.warning("Taking over %s from %s", ", ".join(clash), other.name)
            if not remaining:
                state.remove(other.name)
            else:
                other.binaries = remaining
                other.binary_path = remaining[0]

    @staticmethod
    def _rollback(placed: list[Path], backups: list[tuple[Path, Path]]) -> None:
        for final in reversed(placed):
            try:
                final.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Rollback could not remove %s: %s", final, e)
        for final, backup in reversed(backups):
            try:
                os.replace(backup, final)
            except OSError as e:
                logger.error("Rollback could not restore %s from %s: %s", final, backup, e)

    @staticmethod
    def _discard_staged(staged: list[tuple[Path, Path]]) -> None:
        for tmp, _ in staged:
            tmp.unlink(missing_ok=True)

    def _remove_dropped(self, previous: InstalledPackage, finals: list[Path]) -> None:
        """Delete binaries the old version shipped and the new one does not."""
        keep = set(finals)
        for path in self._binary_paths(previous):
            if path in keep:
                continue
            try:
                path.unlink(missing_ok=True)
                logger.info("Removed %s (no longer shipped by %s)", path, previous.name)
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)

    def _is_current(self, record: InstalledPackage, target: Target) -> bool:
        if not same_version(record.installed_version, target.version):
            return False
        missing = [p for p in self._binary_paths(record) if not p.exists()]
        if missing:
            logger.info("%s is recorded but %s is missing; reinstalling", record.name, missing[0])
            return False
        return True

    def _set_pinned(self, name: str, pinned: bool) -> None:
        with self.store.transaction() as state:
            record = state.get(name)
            if record is not None:
                record.pinned = pinned

    def _binary_paths(self, record: InstalledPackage) -> list[Path]:
        """Absolute binary paths (older records stored bare names)."""
        return [
            path if path.is_absolute() else self.bin_dir / path
            for path in (Path(b) for b in record.all_binaries)
        ]

    # ── Uninstall ───────────────────────────────────────────────

    def uninstall(self, name: str) -> UninstallResult:
        """Remove ``name``'s binaries and its record.

        Not installed is a no-op, and so is a binary that is already gone.
        Every binary is attempted; if some cannot be removed the record is
        kept listing just those, and ``FilesystemError`` is raised.
        """
        with self.store.lock.hold():
            state = self.store.load()
            record = state.get(name)
            if record is None:
                logger.info("%s is not installed", name)
                return UninstallResult(name=name, removed=False)

            removed: list[str] = []
            failed: list[tuple[Path, OSError]] = []
            for path in self._binary_paths(record):
                try:
                    path.unlink()
                    removed.append(str(path))
                except FileNotFoundError:
                    logger.debug("%s already gone", path)
                except OSError as e:
                    logger.warning("Cannot remove %s: %s", path, e)
                    failed.append((path, e))

            if failed:
                remaining = [str(path) for path, _ in failed]
                record.binaries = remaining
                record.binary_path = remaining[0]
            else:
                state.remove(name)
            self._save_with_retry(state)

        if failed:
            path, error = failed[0]
            raise FilesystemError(
                f"cannot remove {path}: {error.strerror or error} "
                f"({len(removed)} removed, {len(failed)} left in place)",
                package=name,
            )

        logger.info("Uninstalled %s %s", name, record.installed_version)
        return UninstallResult(
            name=name,
            removed=True,
            version=record.installed_version,
            binaries_removed=removed,
        )

    def _save_with_retry(self, state: InstalledState) -> None:
        for attempt in self.save_backoff.attempts():
            try:
                self.store.save(state)
                return
            except StateStoreError as e:
                if attempt == self.save_backoff.max_attempts:
                    raise
                logger.warning("State save attempt %d/%d failed: %s", attempt, self.save_backoff.max_attempts, e)

    # ── Upgrade ─────────────────────────────────────────────────

    def upgrade(self, names: Iterable[str] | None = None, include_pinned: bool = False) -> UpgradeReport:
        """Upgrade installed packages (all, or ``names``) to the newest host build."""
        state = self.store.load()
        wanted = list(names) if names else list(state.packages)
        report = UpgradeReport()

        for name in wanted:
            record = state.get(name)
            if record is None:
                report.outcomes.append(
                    UpgradeOutcome(name=name, status=UpgradeStatus.NOT_INSTALLED, detail="not installed")
                )
                continue

            outcome = UpgradeOutcome(
                name=name,
                status=UpgradeStatus.UP_TO_DATE,
                installed_version=record.installed_version,
            )
            report.outcomes.append(outcome)

            if record.pinned and not include_pinned:
                outcome.status = UpgradeStatus.PINNED
                outcome.detail = f"pinned at {record.installed_version}"
                continue

            entry = self.registry.get(name)
            newest = latest_version(self.registry, name, self.host)
            outcome.available_version = newest
            if entry is None:
                outcome.status = UpgradeStatus.SKIPPED
                outcome.detail = "no longer in the registry"
                logger.warning("Skipping %s: no longer in the registry", name)
                continue
            if newest is None:
                outcome.status = UpgradeStatus.SKIPPED
                outcome.detail = f"no build for {self.host.slug}"
                logger.warning("Skipping %s: no build for %s", name, self.host.slug)
                continue
            if not is_newer(newest, record.installed_version):
                continue

            try:
                self._install(name, newest, pinned=record.pinned, force=False)
            except RushError as e:
                outcome.status = UpgradeStatus.FAILED
                outcome.detail = str(e)
                outcome.exit_code = e.exit_code
                continue
            outcome.status = UpgradeStatus.UPGRADED
            outcome.detail = f"{record.installed_version} → {newest}"

        return report

    # ── Queries ─────────────────────────────────────────────────

    def search(self, query: str | None = None) -> list[SearchHit]:
        """Registry packages whose name or description contains ``query``."""
        needle = (query or "").strip().lower()
        state = self.store.load()
        hits: list[SearchHit] = []
        for name in self.registry.names:
            entry = self.registry.packages[name]
            if needle and needle not in name.lower() and needle not in entry.description.lower():
                continue
            record = state.get(name)
            newest = latest_version(self.registry, name, self.host)
            hits.append(
                SearchHit(
                    name=name,
                    description=entry.description,
                    latest_version=newest,
                    supported=newest is not None,
                    installed_version=record.installed_version if record else None,
                    platforms=entry.platforms(),
                )
            )
        return hits

    def verify_installed(self) -> DriftReport:
        """Re-hash every installed primary binary against its record."""
        report = DriftReport()
        for record in self.store.load().packages.values():
            path = self._binary_paths(record)[0]
            entry = DriftEntry(
                name=record.name,
                version=record.installed_version,
                status=DriftStatus.OK,
                path=str(path),
            )
            report.entries.append(entry)
            if not path.is_file():
                entry.status = DriftStatus.MISSING
                entry.detail = "binary not found"
                continue
            if not record.checksum:
                entry.detail = "no checksum recorded"
                continue
            expected = Checksum.parse(record.checksum)
            actual = checksum.compute(path, expected.algorithm)
            if actual != expected.digest:
                entry.status = DriftStatus.MODIFIED
                entry.detail = f"expected {expected}, found {expected.algorithm}:{actual}"
        return report

    # ── Maintenance ─────────────────────────────────────────────

    def update_registry(self) -> UpdateResult:
        """Re-read the registry, bypassing the cache."""
        registry = self.source.load(refresh=True)
        self._registry = registry
        return UpdateResult(
            source=registry.source,
            fetched_at=registry.fetched_at,
            package_count=len(registry),
            cached=self.source.location.is_remote,
        )

    def clean(self, include_cache: bool = False) -> CleanResult:
        """Remove leftovers of interrupted runs (and optionally the registry cache)."""
        result = CleanResult(
            files_cleaned=staging.sweep_orphans(self.bin_dir),
            work_dirs_removed=staging.sweep_work_dir(self.config.work_dir),
        )
        if include_cache:
            result.cache_entries_removed = self.source.cache.clear()
        return result

    # ── Events ──────────────────────────────────────────────────

    def _emit(self, name: str, phase: InstallPhase, detail: str = "") -> None:
        logger.debug("%s: %s %s", name, phase, detail)
        if self.on_event is not None:
            self.on_event(name, phase, detail)
