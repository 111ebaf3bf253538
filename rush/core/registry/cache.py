"""
On-disk cache for remote registries.

One directory per registry source, keyed by a hash of the source string:

    <data_dir>/registry/<key>/meta.json     {source, fetched_at, filename}
    <data_dir>/registry/<key>/<filename>    raw payload as downloaded

Entries never expire on their own. Only ``update`` replaces them, because
picking up registry changes has to be a deliberate user action.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

META_FILE = "meta.json"


@dataclass
class CachedRegistry:
    """A cache hit: the raw payload plus its provenance."""

    source: str
    fetched_at: str
    payload: Path

    @property
    def filename(self) -> str:
        return self.payload.name


class RegistryCache:
    def __init__(self, root: Path):
        self.root = root

    @staticmethod
    def key(source: str) -> str:
        return hashlib.sha256(source.encode("utf-8")).hexdigest()[:16]

    def entry_dir(self, source: str) -> Path:
        return self.root / self.key(source)

    def read(self, source: str) -> CachedRegistry | None:
        """Cached payload for ``source``, or None on a miss.

        A damaged entry counts as a miss.
        """
        entry = self.entry_dir(source)
        try:
            meta = json.loads((entry / META_FILE).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring damaged registry cache %s: %s", entry, e)
            return None

        payload = entry / str(meta.get("filename", ""))
        if meta.get("source") != source or not payload.is_file():
            logger.warning("Ignoring incomplete registry cache %s", entry)
            return None
        return CachedRegistry(source=source, fetched_at=str(meta.get("fetched_at", "")), payload=payload)

    def write(self, source: str, payload: Path, filename: str) -> CachedRegistry:
        """Store ``payload`` for ``source``, replacing any previous entry.

        The new entry is assembled in a sibling directory and swapped in,
        so readers see either the old entry or the new one.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        entry = self.entry_dir(source)
        fetched_at = datetime.now(UTC).isoformat()

        staging = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{entry.name}-"))
        try:
            shutil.copyfile(payload, staging / filename)
            meta = {"source": source, "fetched_at": fetched_at, "filename": filename}
            (staging / META_FILE).write_text(json.dumps(meta, indent=2) + "\n", encoding="utf-8")

            retired = None
            if entry.exists():
                retired = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{entry.name}-old-"))
                retired.rmdir()
                entry.rename(retired)
            staging.rename(entry)
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info("Cached registry %s → %s", source, entry)
        return CachedRegistry(source=source, fetched_at=fetched_at, payload=entry / filename)

    def clear(self) -> list[str]:
        """Remove every cached registry. Returns the removed keys."""
        if not self.root.is_dir():
            return []
        removed = []
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
                removed.append(entry.name)
        return removed
