"""
Host platform detection and normalisation.

Registries and hosts spell architectures differently (``amd64`` vs
``x86_64``, ``arm64`` vs ``aarch64``). Both sides go through the same
normalisation so matching is a plain equality check.
"""

from __future__ import annotations

import platform as _platform

from pydantic import BaseModel

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86-64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "i386": "x86",
    "i686": "x86",
}

_OS_ALIASES = {
    "macos": "darwin",
    "osx": "darwin",
    "mac": "darwin",
    "win": "windows",
    "win32": "windows",
}


def normalize_arch(arch: str) -> str:
    value = arch.strip().lower()
    return _ARCH_ALIASES.get(value, value)


def normalize_os(os_name: str) -> str:
    value = os_name.strip().lower()
    return _OS_ALIASES.get(value, value)


class Platform(BaseModel, frozen=True):
    """An (os, arch) pair, always stored normalised."""

    os: str
    arch: str

    @classmethod
    def of(cls, os_name: str, arch: str) -> Platform:
        return cls(os=normalize_os(os_name), arch=normalize_arch(arch))

    @classmethod
    def from_slug(cls, slug: str) -> Platform:
        """Parse an ``<arch>-<os>`` slug such as ``x86_64-linux``."""
        arch, sep, os_name = slug.rpartition("-")
        if not sep or not arch or not os_name:
            raise ValueError(f"invalid target slug '{slug}' (expected <arch>-<os>)")
        return cls.of(os_name, arch)

    @property
    def slug(self) -> str:
        return f"{self.arch}-{self.os}"

    def __str__(self) -> str:
        return self.slug


def detect_host() -> Platform:
    """Platform of the running interpreter."""
    return Platform.of(_platform.system(), _platform.machine())
