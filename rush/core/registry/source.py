"""
Registry source — turn a registry location into a parsed ``Registry``.

A location is one of:

    /path/to/registry-checkout     directory (registry.yml or packages/)
    /path/to/registry.yml          single document
    https://…/main.tar.gz          remote archive containing packages/
    https://…/registry.yml         remote document
    file:///…                      same as remote, read from disk

Local locations are read fresh on every load (fast path while authoring a
registry). Remote ones are downloaded once and cached until ``update``.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from rush.core.errors import ExtractionError, FetchError, RegistryLoadError
from rush.core.models.registry import Registry
from rush.core.persistence.staging import work_prefix
from rush.core.registry import parser
from rush.core.registry.cache import CachedRegistry, RegistryCache
from rush.core.services.archive import detect_extractor
from rush.core.services.download import Fetcher, filename_from_url

logger = logging.getLogger(__name__)

_REMOTE_SCHEMES = ("http://", "https://", "file://")


@dataclass(frozen=True)
class Location:
    """A parsed registry location."""

    raw: str
    kind: str  # "directory", "file" or "remote"

    @classmethod
    def parse(cls, raw: str) -> Location:
        """Classify ``raw``.

        Raises:
            RegistryLoadError: For empty values and local paths that do not exist.
        """
        value = raw.strip()
        if not value:
            raise RegistryLoadError("registry location is empty")
        if value.lower().startswith(_REMOTE_SCHEMES):
            return cls(raw=value, kind="remote")
        path = Path(value).expanduser()
        if path.is_dir():
            return cls(raw=str(path), kind="directory")
        if path.is_file():
            return cls(raw=str(path), kind="file")
        raise RegistryLoadError(f"local registry path not found: {path}")

    @property
    def is_remote(self) -> bool:
        return self.kind == "remote"

    @property
    def path(self) -> Path:
        return Path(self.raw)


def registry_member(member: str) -> str | None:
    """Where a member of a registry archive lands, or None to skip it.

    Keeps ``packages/**`` (dropping any leading archive directory such as
    ``rush-main/``) and a top-level ``registry.yml``.
    """
    parts = PurePosixPath(member).parts
    if parser.PACKAGES_DIR in parts[:-1]:
        index = parts.index(parser.PACKAGES_DIR)
        return "/".join(parts[index:])
    if parts and parts[-1] in parser.REGISTRY_FILENAMES and len(parts) <= 2:
        return parts[-1]
    return None


class RegistrySource:
    """Loads (and for remote locations, caches) a registry.

    Args:
        location: Registry location string.
        cache: Cache for remote payloads.
        fetcher: Downloader for remote payloads.
        work_dir: Scratch directory for downloads and archive extraction.
    """

    def __init__(
        self,
        location: str,
        cache: RegistryCache,
        fetcher: Fetcher | None = None,
        work_dir: Path | None = None,
    ):
        self.raw_location = location
        self.cache = cache
        self.fetcher = fetcher or Fetcher()
        self.work_dir = work_dir

    @property
    def location(self) -> Location:
        return Location.parse(self.raw_location)

    def load(self, refresh: bool = False) -> Registry:
        """Load the registry.

        Args:
            refresh: For remote locations, ignore the cache and download
                again (the ``update`` command). Local locations are always
                read fresh.

        Raises:
            RegistryLoadError: If the location is unreachable or malformed.
        """
        location = self.location
        if location.kind == "directory":
            registry = parser.load_directory(location.path, source=location.raw)
        elif location.kind == "file":
            registry = parser.load_file(location.path, source=location.raw)
        else:
            registry = self._load_remote(location, refresh)
        logger.info("Registry loaded from %s: %d package(s)", location.raw, len(registry))
        return registry

    def _load_remote(self, location: Location, refresh: bool) -> Registry:
        cached = None if refresh else self.cache.read(location.raw)
        if cached is not None:
            logger.debug("Using cached registry for %s (fetched %s)", location.raw, cached.fetched_at)
            return self._parse_cached(cached)

        logger.info("Fetching registry from %s", location.raw)
        filename = filename_from_url(location.raw)
        try:
            with self.fetcher.fetch(location.raw, self.work_dir) as payload:
                # Parse before caching so a broken download never replaces a good cache
                self._parse_payload(payload, filename, location.raw, fetched_at="")
                cached = self.cache.write(location.raw, payload, filename)
        except (FetchError, ExtractionError) as e:
            raise RegistryLoadError(f"cannot load registry from {location.raw}: {e}") from e
        return self._parse_cached(cached)

    def _parse_cached(self, cached: CachedRegistry) -> Registry:
        return self._parse_payload(cached.payload, cached.filename, cached.source, cached.fetched_at)

    def _parse_payload(self, payload: Path, filename: str, source: str, fetched_at: str) -> Registry:
        extractor = detect_extractor(payload, filename)
        if extractor is None:
            registry = parser.load_file(payload, source=source)
        else:
            if self.work_dir is not None:
                self.work_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(dir=self.work_dir, prefix=work_prefix("registry")) as tmp:
                root = Path(tmp)
                written = extractor.extract_tree(payload, root, registry_member)
                if not written:
                    raise RegistryLoadError(
                        f"registry archive {filename} contains no {parser.PACKAGES_DIR}/ "
                        f"directory or {parser.REGISTRY_FILENAMES[0]}"
                    )
                registry = parser.load_directory(root, source=source)
        if fetched_at:
            registry.fetched_at = fetched_at
        return registry
