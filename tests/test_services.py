"""
Tests for services — checksum verification, archive extraction, download.
"""

import errno
import hashlib
import io
import stat
import tarfile
import urllib.error
import urllib.request
import zipfile
from email.message import Message
from pathlib import Path
from types import SimpleNamespace

import pytest

from rush.core.errors import (
    ChecksumError,
    ChecksumMismatch,
    ExtractionError,
    FetchError,
    MemberNotFound,
    UnsupportedFormat,
)
from rush.core.models import Checksum
from rush.core.reliability.backoff import no_wait
from rush.core.services import archive, checksum
from rush.core.services.download import Fetcher, filename_from_url

# ── Checksum ────────────────────────────────────────────────────


class TestChecksum:
    def test_compute_bytes_and_file_agree(self, tmp_path: Path):
        f = tmp_path / "blob"
        f.write_bytes(b"hello")
        expected = hashlib.sha256(b"hello").hexdigest()
        assert checksum.compute(b"hello") == expected
        assert checksum.compute(f) == expected

    def test_algorithm_comes_from_expected(self):
        digest = hashlib.sha512(b"x").hexdigest()
        checksum.verify(b"x", Checksum(algorithm="sha512", digest=digest))

    def test_uppercase_digest_accepted(self):
        digest = hashlib.sha256(b"x").hexdigest().upper()
        checksum.verify(b"x", Checksum(digest=digest))

    def test_mismatch(self):
        with pytest.raises(ChecksumMismatch) as exc:
            checksum.verify(b"x", Checksum(digest="00" * 32), package="rg")
        assert exc.value.package == "rg"
        assert exc.value.expected == "sha256:" + "00" * 32
        assert exc.value.exit_code == 4

    def test_unknown_algorithm(self):
        with pytest.raises(ChecksumError, match="unsupported checksum algorithm"):
            checksum.compute(b"x", "md7")
        assert not checksum.is_supported("md7")
        assert checksum.is_supported("SHA256")


# ── Archive ─────────────────────────────────────────────────────


class TestFindMember:
    def test_exact_path_wins(self):
        members = ["pkg/bin/rg", "rg"]
        assert archive.find_member(members, "rg") == "rg"

    def test_basename_fallback(self):
        assert archive.find_member(["./rg-13/rg", "rg-13/doc/rg.1"], "rg") == "./rg-13/rg"

    def test_missing(self):
        assert archive.find_member(["a/b"], "c") is None
        assert archive.find_member(["a/b"], "") is None


class TestExtractors:
    @pytest.mark.parametrize(
        "mode, fmt",
        [("w:gz", "tar.gz"), ("w:xz", "tar.xz"), ("w:bz2", "tar.bz2"), ("w", "tar")],
    )
    def test_tar_variants(self, make_tarball, tmp_path: Path, mode, fmt):
        # Neutral file name: detection must come from the content
        path = make_tarball("rg-archive", {"rg-13/rg": b"binary", "rg-13/README": b"doc"}, mode=mode)
        extractor = archive.open_extractor(path)
        assert extractor.format_name == fmt
        assert list(extractor.list_members(path)) == ["rg-13/rg", "rg-13/README"]

        dest = tmp_path / "out" / "rg"
        extractor.extract_member(path, "rg", dest)
        assert dest.read_bytes() == b"binary"
        assert stat.S_IMODE(dest.stat().st_mode) == 0o755

    def test_zip(self, make_zip, tmp_path: Path):
        path = make_zip("fd.zip", {"fd-9/": b"", "fd-9/fd": b"fd-binary"})
        extractor = archive.open_extractor(path)
        assert extractor.format_name == "zip"
        assert list(extractor.list_members(path)) == ["fd-9/fd"]
        dest = extractor.extract_member(path, "fd-9/fd", tmp_path / "fd")
        assert dest.read_bytes() == b"fd-binary"

    def test_detect_ignores_misleading_extension(self, make_zip):
        path = make_zip("really-a-zip.tar.gz", {"x": b"1"})
        assert archive.open_extractor(path).format_name == "zip"

    def test_write_failure_is_extraction_error(self, make_tarball, tmp_path: Path, monkeypatch):
        def no_space(src, dst):
            raise OSError(errno.ENOSPC, "No space left on device")

        path = make_tarball("rg.tar.gz", {"rg-13/rg": b"binary"})
        monkeypatch.setattr(archive, "shutil", SimpleNamespace(copyfileobj=no_space))
        dest = tmp_path / "rg"
        with pytest.raises(ExtractionError, match="No space left on device"):
            archive.open_extractor(path).extract_member(path, "rg", dest)
        assert not dest.exists()

    def test_unsupported_format(self, artifacts_dir: Path):
        path = artifacts_dir / "rg.rpm"
        path.write_bytes(b"\xed\xab\xee\xdb not an archive")
        with pytest.raises(UnsupportedFormat, match="supported: tar.gz"):
            archive.open_extractor(path)

    def test_member_not_found_lists_contents(self, make_tarball, tmp_path: Path):
        path = make_tarball("rg.tar.gz", {"rg-13/README": b"doc"})
        with pytest.raises(MemberNotFound) as exc:
            archive.open_extractor(path).extract_member(path, "rg", tmp_path / "rg")
        assert exc.value.available == ["rg-13/README"]
        assert not (tmp_path / "rg").exists()

    def test_corrupt_archive(self, artifacts_dir: Path, tmp_path: Path):
        path = artifacts_dir / "broken.tar.gz"
        path.write_bytes(b"\x1f\x8b\x08\x00garbage")
        with pytest.raises(ExtractionError):
            archive.open_extractor(path).extract_member(path, "rg", tmp_path / "rg")

    def test_extract_tree_rejects_escaping_paths(self, make_tarball, tmp_path: Path):
        path = make_tarball("evil.tar.gz", {"packages/../../evil.yml": b"x"})
        with pytest.raises(ExtractionError, match="unsafe"):
            archive.open_extractor(path).extract_tree(path, tmp_path / "out", lambda m: m)

    def test_extract_tree_selects(self, make_tarball, tmp_path: Path):
        path = make_tarball("r.tar.gz", {"top/packages/a.yml": b"a", "top/src/x": b"x"})
        out = tmp_path / "out"
        written = archive.open_extractor(path).extract_tree(
            path, out, lambda m: m.split("/", 1)[1] if "/packages/" in f"/{m}" else None
        )
        assert written == [out / "packages" / "a.yml"]

    def test_list_members_helper(self, make_tarball):
        path = make_tarball("x.tgz", {"./a/b": b"1"})
        assert archive.list_members(path) == ["a/b"]

    def test_register_extractor_is_tried_first(self, artifacts_dir: Path, monkeypatch):
        class RawExtractor(archive.TarExtractor):
            pass

        raw = RawExtractor("raw", "", (".raw",), ((0, b"RAW!"),))
        monkeypatch.setattr(archive, "_EXTRACTORS", list(archive._EXTRACTORS))
        archive.register_extractor(raw)
        path = artifacts_dir / "x.raw"
        path.write_bytes(b"RAW!....")
        assert archive.detect_extractor(path) is raw
        assert archive.supported_formats()[0] == "raw"


# ── Download ────────────────────────────────────────────────────


class _FakeResponse(io.BytesIO):
    def __init__(self, data: bytes, length: int | None = None):
        super().__init__(data)
        self.headers = Message()
        self.headers["Content-Length"] = str(len(data) if length is None else length)


def _read(fetcher: Fetcher, url: str, work: Path) -> bytes:
    with fetcher.fetch(url, work) as path:
        return path.read_bytes()


def _http_error(url: str, code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, "error", Message(), None)


class TestFetcher:
    def test_filename_from_url(self):
        assert filename_from_url("https://x/y/rg-13.tar.gz?dl=1") == "rg-13.tar.gz"
        assert filename_from_url("https://x/") == "download"

    def test_file_url(self, tmp_path: Path):
        src = tmp_path / "a.bin"
        src.write_bytes(b"payload")
        progress = []
        with Fetcher().fetch(src.as_uri(), tmp_path / "work", on_progress=lambda d, t: progress.append((d, t))) as path:
            assert path.read_bytes() == b"payload"
            assert path.parent == tmp_path / "work"
            kept = path
        assert not kept.exists()
        assert progress[-1] == (7, 7)

    def test_missing_file_url(self, tmp_path: Path):
        with pytest.raises(FetchError, match="No such file"):
            _read(Fetcher(), (tmp_path / "nope").as_uri(), tmp_path)

    def test_temp_file_removed_when_block_raises(self, tmp_path: Path):
        src = tmp_path / "a.bin"
        src.write_bytes(b"x")
        work = tmp_path / "work"
        with pytest.raises(RuntimeError):
            with Fetcher().fetch(src.as_uri(), work):
                raise RuntimeError("boom")
        assert list(work.iterdir()) == []

    def test_retries_5xx_then_succeeds(self, monkeypatch, tmp_path: Path):
        calls = []

        def fake_urlopen(request, timeout):
            calls.append(request.get_header("User-agent"))
            if len(calls) < 3:
                raise _http_error(request.full_url, 503)
            return _FakeResponse(b"ok")

        monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
        assert _read(Fetcher(backoff=no_wait(4)), "https://example.com/a", tmp_path) == b"ok"
        assert len(calls) == 3
        assert calls[0].startswith("rush/")

    def test_4xx_is_not_retried(self, monkeypatch, tmp_path: Path):
        calls = []

        def fake_urlopen(request, timeout):
            calls.append(1)
            raise _http_error(request.full_url, 404)

        monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
        with pytest.raises(FetchError, match="HTTP 404"):
            _read(Fetcher(backoff=no_wait(4)), "https://example.com/a", tmp_path)
        assert len(calls) == 1

    def test_gives_up_after_ceiling(self, monkeypatch, tmp_path: Path):
        calls = []

        def fake_urlopen(request, timeout):
            calls.append(1)
            raise urllib.error.URLError(ConnectionResetError("reset"))

        monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
        with pytest.raises(FetchError, match="gave up after 3 attempts"):
            _read(Fetcher(backoff=no_wait(3)), "https://example.com/a", tmp_path)
        assert len(calls) == 3

    def test_short_read_is_retried(self, monkeypatch, tmp_path: Path):
        responses = [_FakeResponse(b"par", length=10), _FakeResponse(b"0123456789")]
        monkeypatch.setattr(urllib.request, "urlopen", lambda request, timeout: responses.pop(0))
        assert _read(Fetcher(backoff=no_wait(2)), "https://example.com/a", tmp_path) == b"0123456789"


def test_tarfile_fixture_sanity(make_tarball):
    path = make_tarball("s.tar.gz", {"a": b"1"})
    with tarfile.open(path) as tf:
        assert tf.getnames() == ["a"]
    assert not zipfile.is_zipfile(path)
