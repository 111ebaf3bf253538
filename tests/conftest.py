"""
Shared test fixtures — archives, registries and an isolated rush home.

Everything is built under ``tmp_path``; artifacts are referenced through
``file://`` URLs so no test touches the network.
"""

from __future__ import annotations

import hashlib
import io
import tarfile
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from rush.core.config.settings import RushConfig
from rush.core.platform import Platform

LINUX_X64 = Platform.of("linux", "x86_64")


def sha256_hex(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def write_tarball(path: Path, members: dict[str, bytes], mode: str = "w:gz") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return path


def write_zip(path: Path, members: dict[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def host() -> Platform:
    return LINUX_X64


@pytest.fixture
def artifacts_dir(tmp_path: Path) -> Path:
    path = tmp_path / "artifacts"
    path.mkdir()
    return path


@pytest.fixture
def make_tarball(artifacts_dir: Path) -> Callable[..., Path]:
    """Factory: ``make_tarball("rg.tar.gz", {"dir/rg": b"..."})``."""

    def _make(name: str, members: dict[str, bytes], mode: str = "w:gz") -> Path:
        return write_tarball(artifacts_dir / name, members, mode)

    return _make


@pytest.fixture
def make_zip(artifacts_dir: Path) -> Callable[..., Path]:
    def _make(name: str, members: dict[str, bytes]) -> Path:
        return write_zip(artifacts_dir / name, members)

    return _make


@pytest.fixture
def make_registry(tmp_path: Path) -> Callable[..., Path]:
    """Factory: write ``registry.yml`` with the given packages mapping."""

    def _make(packages: dict, directory: str = "registry") -> Path:
        root = tmp_path / directory
        root.mkdir(parents=True, exist_ok=True)
        (root / "registry.yml").write_text(
            yaml.safe_dump({"schema_version": 1, "packages": packages}, sort_keys=False)
        )
        return root

    return _make


@pytest.fixture
def target_for() -> Callable[..., dict]:
    """Factory: registry target dict for an artifact on disk."""

    def _make(
        artifact: Path,
        version: str,
        bin: str | list[str] = "rg",
        os: str = "linux",
        arch: str = "x86_64",
        digest: str | None = None,
    ) -> dict:
        spec = {
            "os": os,
            "arch": arch,
            "version": version,
            "url": artifact.as_uri(),
            "checksum": f"sha256:{digest or sha256_hex(artifact)}",
        }
        if isinstance(bin, list):
            spec["binaries"] = bin
        else:
            spec["bin"] = bin
        return spec

    return _make


@pytest.fixture
def ripgrep_tarball(make_tarball) -> Path:
    return make_tarball(
        "ripgrep-13.0.0-x86_64-unknown-linux-musl.tar.gz",
        {
            "ripgrep-13.0.0-x86_64-unknown-linux-musl/rg": b"#!/bin/sh\necho ripgrep 13.0.0\n",
            "ripgrep-13.0.0-x86_64-unknown-linux-musl/README.md": b"ripgrep\n",
        },
    )


@pytest.fixture
def ripgrep_registry(make_registry, target_for, ripgrep_tarball) -> Path:
    return make_registry(
        {
            "ripgrep": {
                "description": "Recursively search directories for a regex pattern",
                "targets": [target_for(ripgrep_tarball, "13.0.0")],
            }
        }
    )


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def make_config(home: Path) -> Callable[..., RushConfig]:
    def _make(registry_source: str | Path) -> RushConfig:
        config = RushConfig.for_root(home, registry_source=str(registry_source))
        return config.model_copy(update={"lock_timeout": 1.0, "fetch_attempts": 1})

    return _make
