"""
Registry authoring — add or update a package in a local registry checkout.

Backs ``rush dev add``. The artifact is downloaded once to compute its
digest and to check that the binary is really inside it, then the
package manifest is rewritten:

    <registry>/packages/<first letter>/<name>.yml
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from rush.core.errors import AuthoringError, MemberNotFound, RegistryLoadError
from rush.core.models.registry import RegistryEntry, Target
from rush.core.platform import Platform
from rush.core.registry import parser
from rush.core.services import archive, checksum
from rush.core.services.download import Fetcher, filename_from_url
from rush.core.versions import parse_version, same_version

logger = logging.getLogger(__name__)


@dataclass
class AuthoringResult:
    """Outcome of ``add_package_manual``."""

    name: str
    version: str
    target: str
    manifest: Path
    checksum: str
    replaced: bool = False
    binaries: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "target": self.target,
            "manifest": str(self.manifest),
            "checksum": self.checksum,
            "replaced": self.replaced,
            "binaries": self.binaries,
        }


def ensure_local_registry(registry_source: str) -> Path:
    """The registry location as a writable local directory.

    Raises:
        AuthoringError: If the location is remote or not a directory.
    """
    path = Path(registry_source).expanduser() if registry_source else None
    if path is None or "://" in registry_source or not path.is_dir():
        raise AuthoringError(
            "RUSH_REGISTRY_URL must point at a local registry checkout to edit it "
            '(try: export RUSH_REGISTRY_URL="$(pwd)")'
        )
    for filename in parser.REGISTRY_FILENAMES:
        if (path / filename).is_file():
            raise AuthoringError(
                f"{path / filename} defines the whole registry; edit it directly "
                f"or move its packages under {parser.PACKAGES_DIR}/"
            )
    return path


def manifest_path(registry_dir: Path, name: str) -> Path:
    if not name:
        raise AuthoringError("package name is empty")
    return registry_dir / parser.PACKAGES_DIR / name[0].lower() / f"{name}.yml"


def add_package_manual(
    registry_source: str,
    name: str,
    version: str,
    slug: str,
    url: str,
    bin_name: str | None = None,
    fetcher: Fetcher | None = None,
    algorithm: str = "sha256",
) -> AuthoringResult:
    """Download ``url``, hash it, and record it as ``name``'s ``slug`` build.

    Raises:
        AuthoringError: Bad arguments or a non-local registry.
        FetchError: The artifact could not be downloaded.
        MemberNotFound: The binary is not in the artifact.
    """
    registry_dir = ensure_local_registry(registry_source)
    try:
        parse_version(version)
        platform = Platform.from_slug(slug)
    except ValueError as e:
        raise AuthoringError(str(e), package=name) from e

    binary = bin_name or name
    fetcher = fetcher or Fetcher()

    logger.info("Downloading %s to compute its checksum", url)
    with fetcher.fetch(url) as artifact:
        digest = checksum.checksum_of(artifact, algorithm)
        members = archive.list_members(artifact, filename_from_url(url))
        if archive.find_member(members, binary) is None:
            raise MemberNotFound(binary, members)

    target = Target(
        os=platform.os,
        arch=platform.arch,
        version=version,
        url=url,
        checksum=digest,
        binaries=[binary],
    )
    path, replaced = write_package_manifest(registry_dir, name, target)
    return AuthoringResult(
        name=name,
        version=version,
        target=platform.slug,
        manifest=path,
        checksum=str(digest),
        replaced=replaced,
        binaries=[binary],
    )


def write_package_manifest(registry_dir: Path, name: str, target: Target) -> tuple[Path, bool]:
    """Merge ``target`` into ``name``'s manifest and write it back.

    A target with the same os, arch and version is replaced. An older
    ``.toml`` manifest for the package is converted to YAML.

    Returns:
        ``(manifest path, whether an existing target was replaced)``
    """
    path = manifest_path(registry_dir, name)
    existing = _find_existing(path)

    description = ""
    targets: list[Target] = []
    if existing is not None:
        try:
            entries = parser.parse_registry_document(
                parser.read_document(existing), str(existing), fallback_name=name
            )
        except RegistryLoadError as e:
            raise AuthoringError(f"cannot update {existing}: {e}", package=name) from e
        entry = entries.get(name) or RegistryEntry(name=name)
        description = entry.description
        targets = list(entry.targets)

    kept = [
        t
        for t in targets
        if not (t.matches(target.platform) and same_version(t.version, target.version))
    ]
    replaced = len(kept) != len(targets)
    kept.append(target)

    document: dict[str, Any] = {"name": name}
    if description:
        document["description"] = description
    document["targets"] = [_target_document(t) for t in kept]

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        path.write_text(yaml.safe_dump(document, sort_keys=False, default_flow_style=False), encoding="utf-8")
    except OSError as e:
        raise AuthoringError(f"cannot write {path}: {e}", package=name) from e
    if existing is not None and existing != path:
        existing.unlink()
        logger.warning("Converted %s to %s; comments and formatting of the old file are not kept", existing, path)

    logger.info("%s %s %s in %s", "Updated" if replaced else "Added", name, target.slug, path)
    return path, replaced


def _find_existing(path: Path) -> Path | None:
    stem = path.name[: -len(path.suffix)]
    for suffix in parser.MANIFEST_SUFFIXES:
        candidate = path.parent / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def _target_document(target: Target) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "os": target.os,
        "arch": target.arch,
        "version": target.version,
        "url": target.url,
        "checksum": str(target.checksum),
    }
    if len(target.binaries) == 1:
        doc["bin"] = target.binaries[0]
    else:
        doc["binaries"] = list(target.binaries)
    return doc
