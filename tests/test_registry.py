"""
Tests for the registry — parsing, loading from each location kind,
remote caching, and target resolution.
"""

import io
import json
import tarfile
import textwrap
from pathlib import Path

import pytest

from rush.core.errors import (
    AmbiguousTarget,
    NoMatchingTarget,
    PackageNotFound,
    RegistryLoadError,
)
from rush.core.models import Checksum, Registry, RegistryEntry, Target
from rush.core.platform import Platform
from rush.core.registry import parser
from rush.core.registry.cache import RegistryCache
from rush.core.registry.resolver import latest_version, resolve
from rush.core.registry.source import Location, RegistrySource, registry_member
from rush.core.reliability.backoff import no_wait
from rush.core.services.download import Fetcher

DIGEST = "a" * 64
SHA512_DIGEST = "b" * 128

LINUX_X64 = Platform.of("linux", "x86_64")


def write_tarball(path: Path, members: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def _doc(text: str):
    return parser.parse_text(textwrap.dedent(text), origin="test.yml")


# ── Parser ──────────────────────────────────────────────────────


class TestParser:
    def test_packages_mapping(self):
        entries = parser.parse_registry_document(
            _doc(f"""\
                packages:
                  ripgrep:
                    description: fast grep
                    targets:
                      - os: linux
                        arch: amd64
                        version: 13.0.0
                        url: https://example.com/rg.tar.gz
                        checksum: sha256:{DIGEST}
                        bin: rg
                        mirror: ignored
            """),
            origin="test.yml",
        )
        target = entries["ripgrep"].targets[0]
        assert target.arch == "x86_64"
        assert target.checksum == Checksum(algorithm="sha256", digest=DIGEST)
        assert target.binaries == ["rg"]
        assert entries["ripgrep"].description == "fast grep"

    def test_packages_list(self):
        entries = parser.parse_registry_document(
            _doc(f"""\
                packages:
                  - name: fd
                    targets:
                      - {{os: linux, arch: x86_64, version: 9.0.0, url: u, sha256: {DIGEST}, binaries: [fd, fdfind]}}
            """),
            origin="test.yml",
        )
        assert entries["fd"].targets[0].binaries == ["fd", "fdfind"]

    def test_slug_keyed_manifest_with_package_version(self):
        entries = parser.parse_registry_document(
            _doc(f"""\
                version: 0.45.0
                targets:
                  x86_64-linux: {{url: https://e.com/fzf.tgz, bin: fzf, sha256: {DIGEST}}}
                  aarch64-macos: {{url: https://e.com/fzf-mac.tgz, bin: fzf, sha256: {DIGEST}}}
            """),
            origin="packages/f/fzf.yml",
            fallback_name="fzf",
        )
        entry = entries["fzf"]
        assert entry.platforms() == ["aarch64-darwin", "x86_64-linux"]
        assert {t.version for t in entry.targets} == {"0.45.0"}

    def test_checksum_with_separate_algorithm(self):
        entries = parser.parse_registry_document(
            _doc(f"""\
                packages:
                  x:
                    targets:
                      - {{os: linux, arch: x86_64, version: "1.0", url: u, checksum: {SHA512_DIGEST}, checksum_algorithm: sha512, bin: x}}
            """),
            origin="t",
        )
        assert entries["x"].targets[0].checksum.algorithm == "sha512"

    @pytest.mark.parametrize(
        "target, problem",
        [
            ("{os: linux, arch: x86_64, version: 1.0.0, checksum: 'sha256:aa', bin: x}", "'url'"),
            ("{os: linux, arch: x86_64, version: 1.0.0, url: u, bin: x}", "'checksum'"),
            ("{os: linux, arch: x86_64, version: 1.0.0, url: u, checksum: 'sha256:aa'}", "'bin'"),
            ("{os: linux, arch: x86_64, url: u, checksum: 'sha256:aa', bin: x}", "'version'"),
            ("{os: linux, arch: x86_64, version: banana, url: u, checksum: 'sha256:aa', bin: x}", "invalid version"),
            ("{os: linux, arch: x86_64, version: 1.0.0, url: u, checksum: 'md7:aa', bin: x}", "unsupported checksum"),
            ("{version: 1.0.0, url: u, checksum: 'sha256:aa', bin: x}", "os"),
        ],
    )
    def test_invalid_target_fails_whole_load(self, target, problem):
        data = _doc(f"packages:\n  broken:\n    targets:\n      - {target}\n")
        with pytest.raises(RegistryLoadError, match=problem) as exc:
            parser.parse_registry_document(data, origin="t")
        assert exc.value.package == "broken"

    def test_duplicate_target_rejected(self):
        data = _doc(f"""\
            packages:
              rg:
                targets:
                  - {{os: linux, arch: x86_64, version: 13.0.0, url: a, sha256: {DIGEST}, bin: rg}}
                  - {{os: linux, arch: amd64, version: v13.0.0, url: b, sha256: {DIGEST}, bin: rg}}
        """)
        with pytest.raises(RegistryLoadError, match="duplicate target"):
            parser.parse_registry_document(data, origin="t")

    def test_duplicate_package_in_list(self):
        data = _doc(f"""\
            packages:
              - {{name: rg, targets: []}}
              - {{name: rg, targets: []}}
        """)
        with pytest.raises(RegistryLoadError, match="duplicate package 'rg'"):
            parser.parse_registry_document(data, origin="t")

    def test_duplicate_package_in_mapping(self):
        with pytest.raises(RegistryLoadError, match="duplicate key 'rg'"):
            _doc(f"""\
                packages:
                  rg:
                    targets:
                      - {{os: linux, arch: x86_64, version: 1.0.0, url: u, sha256: {DIGEST}, bin: rg}}
                  rg:
                    targets:
                      - {{os: darwin, arch: aarch64, version: 2.0.0, url: u, sha256: {DIGEST}, bin: rg}}
            """)

    def test_duplicate_package_in_registry_file(self, tmp_path: Path):
        path = tmp_path / "registry.yml"
        path.write_text(
            "packages:\n"
            f"  rg: {{targets: [{{os: linux, arch: x86_64, version: 1.0.0, url: u, sha256: {DIGEST}, bin: rg}}]}}\n"
            f"  rg: {{targets: [{{os: darwin, arch: aarch64, version: 2.0.0, url: u, sha256: {DIGEST}, bin: rg}}]}}\n"
        )
        with pytest.raises(RegistryLoadError, match="duplicate key 'rg'"):
            parser.load_file(path)

    def test_semver_prerelease_versions_load(self):
        entries = parser.parse_registry_document(
            _doc(f"""\
                packages:
                  rg:
                    targets:
                      - {{os: linux, arch: x86_64, version: 1.0.0-alpha.beta, url: u, sha256: {DIGEST}, bin: rg}}
                      - {{os: linux, arch: x86_64, version: 1.0.0-x.7.z.92, url: u, sha256: {DIGEST}, bin: rg}}
                      - {{os: linux, arch: x86_64, version: 1.0.0, url: u, sha256: {DIGEST}, bin: rg}}
            """),
            origin="t",
        )
        registry = Registry(packages=entries)
        assert resolve(registry, "rg", None, LINUX_X64).version == "1.0.0"
        assert resolve(registry, "rg", "1.0.0-alpha.beta", LINUX_X64).version == "1.0.0-alpha.beta"

    def test_merge_keys_still_allowed(self):
        data = _doc("""\
            base: &base {os: linux, arch: x86_64}
            target:
              <<: *base
              arch: aarch64
        """)
        assert data["target"] == {"os": "linux", "arch": "aarch64"}

    def test_not_a_mapping(self):
        with pytest.raises(RegistryLoadError, match="expected a mapping"):
            parser.parse_registry_document(["a"], origin="t")

    def test_yaml_syntax_error(self):
        with pytest.raises(RegistryLoadError, match="invalid registry document"):
            parser.parse_text("packages: [unclosed", origin="t")

    def test_empty_document_is_empty_registry(self):
        assert parser.parse_registry_document(None, origin="t") == {}


class TestLoadDirectory:
    def test_packages_tree_with_toml_and_yaml(self, tmp_path: Path):
        root = tmp_path / "reg"
        (root / "packages" / "r").mkdir(parents=True)
        (root / "packages" / "f").mkdir(parents=True)
        (root / "packages" / "r" / "ripgrep.toml").write_text(textwrap.dedent(f"""\
            version = "13.0.0"
            description = "fast grep"

            [targets.x86_64-linux]
            url = "https://example.com/rg.tar.gz"
            bin = "rg"
            sha256 = "{DIGEST}"
        """))
        (root / "packages" / "f" / "fd.yml").write_text(
            f"targets:\n  - {{os: linux, arch: x86_64, version: 9.0.0, url: u, sha256: {DIGEST}, bin: fd}}\n"
        )
        (root / "packages" / "f" / "notes.txt").write_text("ignored")

        registry = parser.load_directory(root)
        assert registry.names == ["fd", "ripgrep"]
        assert registry.get("ripgrep").description == "fast grep"
        assert registry.source == str(root)

    def test_duplicate_package_across_files(self, tmp_path: Path):
        root = tmp_path / "reg"
        for sub in ("a", "b"):
            (root / "packages" / sub).mkdir(parents=True)
            (root / "packages" / sub / "rg.yml").write_text(
                f"targets:\n  - {{os: linux, arch: x86_64, version: 1.0.0, url: u, sha256: {DIGEST}, bin: rg}}\n"
            )
        with pytest.raises(RegistryLoadError, match="duplicate package 'rg'"):
            parser.load_directory(root)

    def test_empty_directory(self, tmp_path: Path):
        with pytest.raises(RegistryLoadError, match="no registry found"):
            parser.load_directory(tmp_path)


# ── Location / source ───────────────────────────────────────────


class TestLocation:
    def test_kinds(self, tmp_path: Path):
        f = tmp_path / "registry.yml"
        f.write_text("packages: {}\n")
        assert Location.parse(str(tmp_path)).kind == "directory"
        assert Location.parse(str(f)).kind == "file"
        assert Location.parse("https://example.com/main.tar.gz").is_remote
        assert Location.parse(f.as_uri()).is_remote

    def test_missing_local_path(self, tmp_path: Path):
        with pytest.raises(RegistryLoadError, match="not found"):
            Location.parse(str(tmp_path / "nope"))

    def test_registry_member_mapping(self):
        assert registry_member("rush-main/packages/r/ripgrep.toml") == "packages/r/ripgrep.toml"
        assert registry_member("packages/f/fd.yml") == "packages/f/fd.yml"
        assert registry_member("rush-main/registry.yml") == "registry.yml"
        assert registry_member("rush-main/src/main.rs") is None
        assert registry_member("rush-main/docs/packages") is None


class TestRegistrySource:
    def _source(self, location: str, tmp_path: Path) -> RegistrySource:
        return RegistrySource(
            location,
            RegistryCache(tmp_path / "cache"),
            Fetcher(backoff=no_wait(1)),
            work_dir=tmp_path / "work",
        )

    def test_local_directory_is_never_cached(self, ripgrep_registry: Path, tmp_path: Path):
        source = self._source(str(ripgrep_registry), tmp_path)
        assert "ripgrep" in source.load()
        assert not (tmp_path / "cache").exists()

    def test_local_file(self, ripgrep_registry: Path, tmp_path: Path):
        source = self._source(str(ripgrep_registry / "registry.yml"), tmp_path)
        assert source.load().names == ["ripgrep"]

    def test_remote_archive_is_extracted_and_cached(self, tmp_path: Path):
        manifest = f"version: 1.2.0\ntargets:\n  x86_64-linux: {{url: u, bin: jq, sha256: {DIGEST}}}\n"
        archive = write_tarball(
            tmp_path / "main.tar.gz",
            {
                "rush-main/README.md": b"readme",
                "rush-main/packages/j/jq.yml": manifest.encode(),
            },
        )
        source = self._source(archive.as_uri(), tmp_path)
        registry = source.load()
        assert registry.get("jq").versions() == ["1.2.0"]
        assert registry.source == archive.as_uri()

        # Cached: the original can disappear and load still works
        fetched_at = registry.fetched_at
        archive.unlink()
        again = source.load()
        assert again.names == ["jq"]
        assert again.fetched_at == fetched_at

        # update (refresh) goes back to the source
        with pytest.raises(RegistryLoadError, match="No such file"):
            source.load(refresh=True)

    def test_remote_plain_document(self, ripgrep_registry: Path, tmp_path: Path):
        url = (ripgrep_registry / "registry.yml").as_uri()
        assert "ripgrep" in self._source(url, tmp_path).load()

    def test_broken_download_keeps_previous_cache(self, tmp_path: Path):
        doc = tmp_path / "remote" / "registry.yml"
        doc.parent.mkdir()
        doc.write_text(f"packages:\n  jq:\n    targets:\n      - {{os: linux, arch: x86_64, version: 1.0.0, url: u, sha256: {DIGEST}, bin: jq}}\n")
        source = self._source(doc.as_uri(), tmp_path)
        source.load()

        doc.write_text("packages: [unclosed")
        with pytest.raises(RegistryLoadError):
            source.load(refresh=True)
        assert source.load().names == ["jq"]

    def test_archive_without_registry(self, tmp_path: Path):
        archive = write_tarball(tmp_path / "empty.tar.gz", {"rush-main/README.md": b"x"})
        with pytest.raises(RegistryLoadError, match="contains no packages/"):
            self._source(archive.as_uri(), tmp_path).load()


class TestRegistryCache:
    def test_write_read_clear(self, tmp_path: Path):
        cache = RegistryCache(tmp_path / "cache")
        payload = tmp_path / "payload"
        payload.write_text("packages: {}\n")

        assert cache.read("src") is None
        written = cache.write("src", payload, "registry.yml")
        hit = cache.read("src")
        assert hit is not None
        assert hit.payload == written.payload
        assert hit.filename == "registry.yml"

        meta = json.loads((cache.entry_dir("src") / "meta.json").read_text())
        assert meta["source"] == "src"

        assert cache.clear() == [RegistryCache.key("src")]
        assert cache.read("src") is None
        assert cache.clear() == []

    def test_damaged_meta_is_a_miss(self, tmp_path: Path):
        cache = RegistryCache(tmp_path)
        entry = cache.entry_dir("src")
        entry.mkdir(parents=True)
        (entry / "meta.json").write_text("{not json")
        assert cache.read("src") is None

    def test_clear(self, tmp_path: Path):
        cache = RegistryCache(tmp_path / "cache")
        payload = tmp_path / "p"
        payload.write_text("x")
        cache.write("a", payload, "p")
        cache.write("b", payload, "p")
        assert sorted(cache.clear()) == sorted([cache.key("a"), cache.key("b")])
        assert cache.clear() == []


# ── Resolver ────────────────────────────────────────────────────


def _registry(*targets: Target) -> Registry:
    return Registry(packages={"rg": RegistryEntry(name="rg", targets=list(targets))})


def _t(version: str, os: str = "linux", arch: str = "x86_64", url: str = "u") -> Target:
    return Target(os=os, arch=arch, version=version, url=url, checksum=Checksum(digest=DIGEST), binaries=["rg"])


class TestResolver:
    def test_latest_for_host(self):
        registry = _registry(_t("12.1.1"), _t("13.0.0"), _t("14.0.0", os="darwin"), _t("9.0.0"))
        assert resolve(registry, "rg", None, LINUX_X64).version == "13.0.0"
        assert latest_version(registry, "rg", LINUX_X64) == "13.0.0"

    def test_exact_version(self):
        registry = _registry(_t("12.1.1"), _t("13.0.0"))
        assert resolve(registry, "rg", "v12.1.1", LINUX_X64).version == "12.1.1"

    def test_package_not_found(self):
        with pytest.raises(PackageNotFound) as exc:
            resolve(_registry(), "fd", None, LINUX_X64)
        assert exc.value.exit_code == 3

    def test_platform_unsupported(self):
        registry = _registry(_t("13.0.0", os="darwin", arch="aarch64"))
        with pytest.raises(NoMatchingTarget) as exc:
            resolve(registry, "rg", None, LINUX_X64)
        assert exc.value.reason == "platform"
        assert "aarch64-darwin" in str(exc.value)

    def test_version_unavailable(self):
        registry = _registry(_t("13.0.0"), _t("14.0.0", os="darwin"))
        with pytest.raises(NoMatchingTarget) as exc:
            resolve(registry, "rg", "14.0.0", LINUX_X64)
        assert exc.value.reason == "version"
        assert exc.value.available == ["13.0.0"]

    def test_unparseable_requested_version(self):
        with pytest.raises(NoMatchingTarget, match="version latest-ish"):
            resolve(_registry(_t("1.0.0")), "rg", "latest-ish", LINUX_X64)

    def test_ambiguous(self):
        registry = _registry(_t("13.0.0", url="a"), _t("13.0", url="b"))
        with pytest.raises(AmbiguousTarget) as exc:
            resolve(registry, "rg", None, LINUX_X64)
        assert exc.value.exit_code == 6
        assert len(exc.value.candidates) == 2

    def test_arm_host(self):
        registry = _registry(_t("1.0.0", arch="aarch64"), _t("2.0.0"))
        arm = Platform.of("linux", "arm64")
        assert resolve(registry, "rg", None, arm).version == "1.0.0"
        assert latest_version(registry, "missing", arm) is None
