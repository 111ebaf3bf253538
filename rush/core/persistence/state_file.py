"""
State file persistence — atomic read/write for InstalledState.

State is stored as JSON in ``<data_dir>/installed.json``. Writes are
atomic (write to a temp file in the same directory, fsync, then rename)
so a crash mid-write leaves the previous valid file in place.

Mutations go through ``StateStore.transaction()``, which holds the
exclusive state lock across load → mutate → save. Readers call
``load()`` without the lock and see the last saved snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from rush.core.errors import StateStoreError
from rush.core.models.state import InstalledState
from rush.core.persistence.lock import StateLock

logger = logging.getLogger(__name__)


class StateStore:
    """Persisted record of installed packages.

    Args:
        path: State file path.
        lock_path: Sibling lock file (default: ``<path>.lock``).
        lock_timeout: Seconds to wait for a concurrent writer.
    """

    def __init__(self, path: Path, lock_path: Path | None = None, lock_timeout: float = 10.0):
        self.path = path
        self.lock = StateLock(lock_path or path.with_name(path.name + ".lock"), timeout=lock_timeout)

    def load(self) -> InstalledState:
        """Load the state file.

        Returns:
            The stored state, or an empty state if the file does not exist.

        Raises:
            StateStoreError: If the file exists but cannot be read or parsed.
                A damaged state file is never silently replaced.
        """
        if not self.path.is_file():
            logger.debug("No state file at %s — starting empty", self.path)
            return InstalledState()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"cannot read state file {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"corrupt state file {self.path}: {e}") from e

        # Older files only stored {"packages": {name: {"version", "binaries"}}}
        if isinstance(data, dict):
            data = _upgrade_legacy(data)

        try:
            state = InstalledState.model_validate(data)
        except ValidationError as e:
            raise StateStoreError(f"invalid state file {self.path}: {e}") from e
        logger.debug("Loaded %d installed package(s) from %s", len(state.packages), self.path)
        return state

    def save(self, state: InstalledState) -> None:
        """Atomically replace the state file with ``state``.

        Raises:
            StateStoreError: On any I/O failure. The previous file is intact.
        """
        content = json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state_", suffix=".tmp")
        except OSError as e:
            raise StateStoreError(f"cannot write state file {self.path}: {e}") from e

        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StateStoreError(f"cannot write state file {self.path}: {e}") from e
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("State saved to %s (%d package(s))", self.path, len(state.packages))

    @contextmanager
    def transaction(self) -> Iterator[InstalledState]:
        """Locked read-modify-write.

        The yielded state is saved only if the block exits normally; the
        lock is released on every path.
        """
        with self.lock.hold():
            state = self.load()
            yield state
            self.save(state)


def _upgrade_legacy(data: dict) -> dict:
    packages = data.get("packages")
    if not isinstance(packages, dict):
        return data
    upgraded = {}
    for name, record in packages.items():
        if isinstance(record, dict) and "installed_version" not in record and "version" in record:
            binaries = list(record.get("binaries") or [name])
            record = {
                "name": name,
                "installed_version": record["version"],
                "binary_path": binaries[0],
                "binaries": binaries,
            }
        elif isinstance(record, dict):
            record = {"name": name, **record}
        upgraded[name] = record
    return {**data, "packages": upgraded}
