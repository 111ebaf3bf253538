"""
Registry parser — YAML/TOML documents into a validated ``Registry``.

Parsing is total: the first structural problem (missing field, invalid
version, duplicate package or target) raises ``RegistryLoadError`` and
nothing is returned. A half-loaded registry would make ``search`` and
``install`` act on incomplete data.

Accepted shapes (unknown keys are ignored, optional keys default):

    # registry.yml: every package in one document
    packages:
      ripgrep:
        targets:
          - {os: linux, arch: x86_64, version: 13.0.0, url: ..., checksum: "sha256:...", bin: rg}

    # packages/r/ripgrep.yml: one package per file, slug-keyed targets
    version: 13.0.0
    targets:
      x86_64-linux: {url: ..., bin: rg, sha256: ...}
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Hashable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from rush.core.errors import RegistryLoadError
from rush.core.models.registry import Checksum, Registry, RegistryEntry, Target
from rush.core.platform import Platform, normalize_arch, normalize_os
from rush.core.services import checksum as checksum_service
from rush.core.versions import parse_version

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSION = 1

REGISTRY_FILENAMES = ("registry.yml", "registry.yaml")
PACKAGES_DIR = "packages"
MANIFEST_SUFFIXES = (".yml", ".yaml", ".toml")


# ── Documents ───────────────────────────────────────────────────


def read_document(path: Path) -> Any:
    """Read a YAML or TOML file into Python data."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryLoadError(f"cannot read {path}: {e}") from e
    return parse_text(raw, origin=str(path), toml=path.suffix == ".toml")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, Hashable) and key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"duplicate key '{key}'",
                    key_node.start_mark,
                )
            if isinstance(key, Hashable):
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_text(raw: str, origin: str, toml: bool = False) -> Any:
    try:
        if toml:
            return tomllib.loads(raw)
        return yaml.load(raw, Loader=_UniqueKeyLoader)  # noqa: S506
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise RegistryLoadError(f"invalid registry document {origin}: {e}") from e


def parse_registry_document(data: Any, origin: str, fallback_name: str = "") -> dict[str, RegistryEntry]:
    """Packages declared by one document.

    A document either lists ``packages`` or is itself a single package
    manifest (has ``targets``), named by its ``name`` key or ``fallback_name``.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RegistryLoadError(f"{origin}: expected a mapping, got {type(data).__name__}")

    schema = data.get("schema_version", SUPPORTED_SCHEMA_VERSION)
    if isinstance(schema, int) and schema > SUPPORTED_SCHEMA_VERSION:
        logger.warning("%s declares schema_version %s; reading known fields only", origin, schema)

    if "packages" not in data and "targets" in data:
        name = str(data.get("name") or fallback_name)
        if not name:
            raise RegistryLoadError(f"{origin}: package manifest has no name")
        return {name: parse_package(name, data, origin)}

    packages = data.get("packages") or {}
    entries: dict[str, RegistryEntry] = {}

    if isinstance(packages, dict):
        items = list(packages.items())
    elif isinstance(packages, list):
        items = []
        for spec in packages:
            if not isinstance(spec, dict) or not spec.get("name"):
                raise RegistryLoadError(f"{origin}: package list items need a 'name'")
            items.append((spec["name"], spec))
    else:
        raise RegistryLoadError(f"{origin}: 'packages' must be a mapping or a list")

    for name, spec in items:
        name = str(name)
        if name in entries:
            raise RegistryLoadError(f"{origin}: duplicate package '{name}'", package=name)
        entries[name] = parse_package(name, spec, origin)
    return entries


# ── Packages and targets ────────────────────────────────────────


def parse_package(name: str, spec: Any, origin: str) -> RegistryEntry:
    if not name.strip():
        raise RegistryLoadError(f"{origin}: empty package name")
    if not isinstance(spec, dict):
        raise _invalid(origin, name, "package definition must be a mapping")

    default_version = spec.get("version")
    raw_targets = spec.get("targets")
    if raw_targets is None:
        raise _invalid(origin, name, "missing required field 'targets'")

    targets: list[Target] = []
    if isinstance(raw_targets, dict):
        for slug, target_spec in raw_targets.items():
            targets.append(_parse_target(name, target_spec, origin, default_version, slug=str(slug)))
    elif isinstance(raw_targets, list):
        for target_spec in raw_targets:
            targets.append(_parse_target(name, target_spec, origin, default_version))
    else:
        raise _invalid(origin, name, "'targets' must be a mapping or a list")

    seen: dict[tuple[str, str, Any], str] = {}
    for target in targets:
        key = (target.os, target.arch, parse_version(target.version))
        if key in seen:
            raise _invalid(
                origin,
                name,
                f"duplicate target {target.slug} version {target.version} "
                f"(already declared as {seen[key]})",
            )
        seen[key] = target.version

    return RegistryEntry(name=name, description=str(spec.get("description") or ""), targets=targets)


def _parse_target(
    package: str,
    spec: Any,
    origin: str,
    default_version: Any,
    slug: str | None = None,
) -> Target:
    if not isinstance(spec, dict):
        raise _invalid(origin, package, "each target must be a mapping")

    slug = slug or spec.get("target")
    os_name, arch = spec.get("os"), spec.get("arch")
    if slug and not (os_name and arch):
        try:
            platform = Platform.from_slug(str(slug))
        except ValueError as e:
            raise _invalid(origin, package, str(e)) from e
        os_name, arch = os_name or platform.os, arch or platform.arch
    if not os_name or not arch:
        raise _invalid(origin, package, "target is missing 'os'/'arch'")

    version = spec.get("version", default_version)
    if version is None or str(version).strip() == "":
        raise _invalid(origin, package, "target is missing required field 'version'")
    version = str(version)
    try:
        parse_version(version)
    except ValueError as e:
        raise _invalid(origin, package, str(e)) from e

    url = spec.get("url")
    if not url or not isinstance(url, str):
        raise _invalid(origin, package, "target is missing required field 'url'")

    expected = _parse_checksum(package, spec, origin)
    binaries = _parse_binaries(package, spec, origin)

    try:
        return Target(
            os=normalize_os(str(os_name)),
            arch=normalize_arch(str(arch)),
            version=version,
            url=url,
            checksum=expected,
            binaries=binaries,
        )
    except ValidationError as e:
        raise _invalid(origin, package, f"invalid target: {e}") from e


def _parse_checksum(package: str, spec: dict, origin: str) -> Checksum:
    algorithm = str(spec.get("checksum_algorithm") or "sha256")
    if spec.get("checksum"):
        expected = Checksum.parse(str(spec["checksum"]), default_algorithm=algorithm)
    elif spec.get("sha256"):
        expected = Checksum(algorithm="sha256", digest=str(spec["sha256"]).strip().lower())
    else:
        raise _invalid(origin, package, "target is missing required field 'checksum'")

    if not checksum_service.is_supported(expected.algorithm):
        raise _invalid(origin, package, f"unsupported checksum algorithm '{expected.algorithm}'")
    if not expected.digest:
        raise _invalid(origin, package, "empty checksum digest")
    return expected


def _parse_binaries(package: str, spec: dict, origin: str) -> list[str]:
    raw = spec.get("binaries")
    if raw is None:
        raw = spec.get("bin") or spec.get("binary") or spec.get("binary_path")
    if isinstance(raw, str):
        raw = [raw]
    if not raw or not isinstance(raw, list) or not all(isinstance(b, str) and b for b in raw):
        raise _invalid(origin, package, "target is missing required field 'bin'")
    return list(raw)


def _invalid(origin: str, package: str, problem: str) -> RegistryLoadError:
    return RegistryLoadError(f"{origin}: package '{package}': {problem}", package=package)


# ── Locations on disk ───────────────────────────────────────────


def load_file(path: Path, source: str | None = None) -> Registry:
    """Registry from a single document."""
    packages = parse_registry_document(read_document(path), str(path), fallback_name=path.stem)
    return Registry(packages=packages, source=source or str(path))


def load_directory(root: Path, source: str | None = None) -> Registry:
    """Registry from a directory.

    Reads ``registry.yml`` when present, otherwise every manifest under
    ``packages/`` (one package per file, named by the file stem).
    """
    for filename in REGISTRY_FILENAMES:
        candidate = root / filename
        if candidate.is_file():
            return load_file(candidate, source=source or str(root))

    packages_dir = root / PACKAGES_DIR
    if not packages_dir.is_dir():
        raise RegistryLoadError(
            f"no registry found in {root} (expected {REGISTRY_FILENAMES[0]} or {PACKAGES_DIR}/)"
        )

    packages: dict[str, RegistryEntry] = {}
    for path in sorted(packages_dir.rglob("*")):
        if not path.is_file() or path.suffix not in MANIFEST_SUFFIXES:
            continue
        for name, entry in parse_registry_document(
            read_document(path), str(path), fallback_name=path.stem
        ).items():
            if name in packages:
                raise RegistryLoadError(f"{path}: duplicate package '{name}'", package=name)
            packages[name] = entry

    logger.debug("Parsed %d package(s) from %s", len(packages), packages_dir)
    return Registry(packages=dict(sorted(packages.items())), source=source or str(root))
