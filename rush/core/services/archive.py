"""
Archive extraction — one extractor per archive format.

Every format implements the same two operations:

    list_members(archive)                  → lazy iterator of member paths
    extract_member(archive, member, dest)  → write one member to ``dest``

``open_extractor`` picks the variant by magic bytes (falling back to the
file extension). Supporting a new format means adding a subclass and
registering it; call sites never change.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import IO

from rush.core.errors import ExtractionError, MemberNotFound, UnsupportedFormat

logger = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755

_SNIFF_BYTES = 512


def normalize_member(name: str) -> str:
    """Canonical member path: POSIX separators, no leading ``./`` or ``/``."""
    parts = [p for p in PurePosixPath(name.replace("\\", "/")).parts if p not in ("", ".", "/")]
    return "/".join(parts)


def safe_relative(name: str) -> PurePosixPath:
    """Member path that is safe to join under a destination directory.

    Raises:
        ExtractionError: If the member escapes its root (``..``).
    """
    rel = PurePosixPath(normalize_member(name))
    if not rel.parts or ".." in rel.parts:
        raise ExtractionError(f"unsafe archive member path '{name}'")
    return rel


def find_member(members: list[str], wanted: str) -> str | None:
    """Locate ``wanted`` among ``members``.

    Exact path wins; otherwise the first member with the same basename,
    since release archives usually nest binaries under a versioned
    top-level directory.
    """
    target = normalize_member(wanted)
    if not target:
        return None
    normalized = {normalize_member(m): m for m in members}
    if target in normalized:
        return normalized[target]
    basename = PurePosixPath(target).name
    for norm, original in normalized.items():
        if PurePosixPath(norm).name == basename:
            return original
    return None


class ArchiveExtractor(ABC):
    """Capability shared by every archive format."""

    #: Human-readable format name (``tar.gz``, ``zip`` …).
    format_name: str = ""
    #: File-name suffixes that identify the format.
    extensions: tuple[str, ...] = ()
    #: (offset, magic bytes) pairs; any match identifies the format.
    signatures: tuple[tuple[int, bytes], ...] = ()

    def sniff(self, head: bytes) -> bool:
        return any(head[offset : offset + len(magic)] == magic for offset, magic in self.signatures)

    def claims_name(self, filename: str) -> bool:
        lower = filename.lower()
        return any(lower.endswith(ext) for ext in self.extensions)

    @abstractmethod
    def list_members(self, archive: Path) -> Iterator[str]:
        """Yield the paths of regular-file members, in archive order."""

    @abstractmethod
    @contextmanager
    def _open_member(self, archive: Path, member: str) -> Iterator[IO[bytes]]:
        """Open one member (as listed by ``list_members``) for reading."""

    @abstractmethod
    def _iter_files(self, archive: Path) -> Iterator[tuple[str, IO[bytes]]]:
        """Yield ``(member, readable)`` for every regular file in one pass."""

    def extract_tree(
        self,
        archive: Path,
        dest_dir: Path,
        select: Callable[[str], str | None],
    ) -> list[Path]:
        """Extract every member ``select`` maps to a relative path.

        Single pass over the archive, so cheap for large tarballs.
        ``select`` returns None to skip a member.
        """
        written: list[Path] = []
        try:
            for member, fileobj in self._iter_files(archive):
                relative = select(normalize_member(member))
                if relative is None:
                    continue
                target = dest_dir.joinpath(*safe_relative(relative).parts)
                target.parent.mkdir(parents=True, exist_ok=True)
                with target.open("wb") as out:
                    shutil.copyfileobj(fileobj, out)
                written.append(target)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            raise ExtractionError(f"cannot read {self.format_name} archive {archive.name}: {e}") from e
        except OSError as e:
            raise ExtractionError(f"cannot unpack {archive.name} into {dest_dir}: {e}") from e
        return written

    def extract_member(self, archive: Path, member_path: str, dest: Path) -> Path:
        """Write the member matching ``member_path`` to ``dest``.

        The written file is made executable.

        Raises:
            MemberNotFound: If no member matches.
            ExtractionError: If the archive is corrupt or ``dest`` cannot be
                written (disk full, permissions).
        """
        try:
            members = list(self.list_members(archive))
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            raise ExtractionError(f"cannot read {self.format_name} archive {archive.name}: {e}") from e

        match = find_member(members, member_path)
        if match is None:
            raise MemberNotFound(member_path, [normalize_member(m) for m in members])

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with self._open_member(archive, match) as src, dest.open("wb") as out:
                shutil.copyfileobj(src, out)
            dest.chmod(EXECUTABLE_MODE)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            dest.unlink(missing_ok=True)
            raise ExtractionError(f"cannot extract '{match}' from {archive.name}: {e}") from e
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise ExtractionError(f"cannot write '{match}' to {dest}: {e}") from e
        logger.debug("Extracted %s → %s", match, dest)
        return dest


class TarExtractor(ArchiveExtractor):
    """Tarballs, plain or compressed (gzip, xz, bzip2)."""

    def __init__(
        self,
        format_name: str,
        compression: str,
        extensions: tuple[str, ...],
        signatures: tuple[tuple[int, bytes], ...],
    ):
        self.format_name = format_name
        self.compression = compression
        self.extensions = extensions
        self.signatures = signatures

    @property
    def _mode(self) -> str:
        return f"r:{self.compression}" if self.compression else "r:"

    def list_members(self, archive: Path) -> Iterator[str]:
        with tarfile.open(archive, self._mode) as tf:
            for info in tf:
                if info.isfile():
                    yield info.name

    @contextmanager
    def _open_member(self, archive: Path, member: str) -> Iterator[IO[bytes]]:
        with tarfile.open(archive, self._mode) as tf:
            fileobj = tf.extractfile(member)
            if fileobj is None:
                raise ExtractionError(f"'{member}' is not a regular file")
            with fileobj:
                yield fileobj

    def _iter_files(self, archive: Path) -> Iterator[tuple[str, IO[bytes]]]:
        with tarfile.open(archive, self._mode) as tf:
            for info in tf:
                if not info.isfile():
                    continue
                fileobj = tf.extractfile(info)
                if fileobj is not None:
                    with fileobj:
                        yield info.name, fileobj


class ZipExtractor(ArchiveExtractor):
    format_name = "zip"
    extensions = (".zip",)
    signatures = ((0, b"PK\x03\x04"), (0, b"PK\x05\x06"))

    def list_members(self, archive: Path) -> Iterator[str]:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                if not info.is_dir():
                    yield info.filename

    @contextmanager
    def _open_member(self, archive: Path, member: str) -> Iterator[IO[bytes]]:
        with zipfile.ZipFile(archive) as zf, zf.open(member) as fileobj:
            yield fileobj

    def _iter_files(self, archive: Path) -> Iterator[tuple[str, IO[bytes]]]:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                with zf.open(info) as fileobj:
                    yield info.filename, fileobj


_EXTRACTORS: list[ArchiveExtractor] = [
    TarExtractor("tar.gz", "gz", (".tar.gz", ".tgz"), ((0, b"\x1f\x8b"),)),
    TarExtractor("tar.xz", "xz", (".tar.xz", ".txz"), ((0, b"\xfd7zXZ\x00"),)),
    TarExtractor("tar.bz2", "bz2", (".tar.bz2", ".tbz2", ".tbz"), ((0, b"BZh"),)),
    TarExtractor("tar", "", (".tar",), ((257, b"ustar"),)),
    ZipExtractor(),
]


def register_extractor(extractor: ArchiveExtractor) -> None:
    """Add an archive format. Later registrations are tried first."""
    _EXTRACTORS.insert(0, extractor)


def supported_formats() -> list[str]:
    return [e.format_name for e in _EXTRACTORS]


def detect_extractor(path: Path, name_hint: str = "") -> ArchiveExtractor | None:
    """Extractor for ``path`` or None if it is not a known archive."""
    with path.open("rb") as f:
        head = f.read(_SNIFF_BYTES)
    for extractor in _EXTRACTORS:
        if extractor.sniff(head):
            return extractor
    for name in (name_hint, path.name):
        if not name:
            continue
        for extractor in _EXTRACTORS:
            if extractor.claims_name(name):
                return extractor
    return None


def open_extractor(path: Path, name_hint: str = "") -> ArchiveExtractor:
    """Like ``detect_extractor`` but raises ``UnsupportedFormat``."""
    extractor = detect_extractor(path, name_hint)
    if extractor is None:
        raise UnsupportedFormat(
            f"unsupported archive format for {name_hint or path.name} "
            f"(supported: {', '.join(supported_formats())})"
        )
    return extractor


def list_members(path: Path, name_hint: str = "") -> list[str]:
    """Member listing for any supported archive (used by ``dev add``)."""
    extractor = open_extractor(path, name_hint)
    try:
        return [normalize_member(m) for m in extractor.list_members(path)]
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ExtractionError(f"cannot read archive {name_hint or path.name}: {e}") from e
