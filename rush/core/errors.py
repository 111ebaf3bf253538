"""
Error hierarchy for the install pipeline.

Every stage raises a subclass of ``RushError``. The CLI maps the
class's ``exit_code`` onto the process exit status so scripts can tell
"not found" apart from verification and I/O failures.
"""

from __future__ import annotations

# ── Exit codes ──────────────────────────────────────────────────

EXIT_GENERIC = 1
EXIT_NOT_FOUND = 3
EXIT_VERIFICATION = 4
EXIT_IO = 5
EXIT_AMBIGUOUS = 6


class RushError(Exception):
    """Base class for every pipeline failure."""

    exit_code: int = EXIT_GENERIC

    def __init__(self, message: str, *, package: str | None = None):
        super().__init__(message)
        self.package = package


# ── Registry ────────────────────────────────────────────────────


class RegistryLoadError(RushError):
    """Registry is malformed or unreachable. Never partially applied."""

    exit_code = EXIT_IO


class AuthoringError(RushError):
    """Registry authoring (``dev add``) could not write a manifest."""


# ── Resolution ──────────────────────────────────────────────────


class ResolutionError(RushError):
    """Base for failures to map a package request onto a target."""

    exit_code = EXIT_NOT_FOUND


class PackageNotFound(ResolutionError):
    def __init__(self, name: str):
        super().__init__(f"package '{name}' not found in registry", package=name)


class NoMatchingTarget(ResolutionError):
    """No target survived filtering.

    ``reason`` is ``"platform"`` when the host is not supported at all
    and ``"version"`` when the host is supported but the requested
    version is not published for it.
    """

    def __init__(
        self,
        name: str,
        reason: str,
        *,
        host: str,
        requested_version: str | None = None,
        available: list[str] | None = None,
    ):
        self.reason = reason
        self.host = host
        self.requested_version = requested_version
        self.available = available or []
        listing = ", ".join(self.available) or "none"
        if reason == "version":
            message = (
                f"version {requested_version} is not available for {host} "
                f"(available: {listing})"
            )
        else:
            message = f"no compatible binary for {host} (supported: {listing})"
        super().__init__(message, package=name)


class AmbiguousTarget(ResolutionError):
    exit_code = EXIT_AMBIGUOUS

    def __init__(self, name: str, candidates: list[str]):
        self.candidates = candidates
        super().__init__(
            f"registry lists {len(candidates)} targets for the same request: "
            f"{', '.join(candidates)}",
            package=name,
        )


# ── Fetch / verify / extract ────────────────────────────────────


class FetchError(RushError):
    exit_code = EXIT_IO

    def __init__(self, url: str, cause: str, *, package: str | None = None):
        self.url = url
        self.cause = cause
        super().__init__(f"download failed for {url}: {cause}", package=package)


class ChecksumError(RushError):
    exit_code = EXIT_VERIFICATION


class ChecksumMismatch(ChecksumError):
    def __init__(self, expected: str, actual: str, *, package: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"checksum mismatch (expected {expected}, got {actual})",
            package=package,
        )


class ExtractionError(RushError):
    exit_code = EXIT_VERIFICATION


class UnsupportedFormat(ExtractionError):
    pass


class MemberNotFound(ExtractionError):
    def __init__(self, member: str, available: list[str] | None = None):
        self.member = member
        self.available = available or []
        super().__init__(f"binary '{member}' not found in archive")


# ── State ───────────────────────────────────────────────────────


class StateStoreError(RushError):
    exit_code = EXIT_IO


# ── Install ─────────────────────────────────────────────────────


class InvalidPackageSpec(RushError):
    def __init__(self, spec: str, problem: str):
        self.spec = spec
        super().__init__(f"invalid package spec '{spec}': {problem}")


class BinaryConflict(RushError):
    """A binary name is already provided by another installed package."""

    def __init__(self, binary: str, owner: str, *, package: str):
        self.binary = binary
        self.owner = owner
        super().__init__(
            f"'{binary}' is already installed by package '{owner}' (use --force to take it over)",
            package=package,
        )


class FilesystemError(RushError):
    """The install or data directory could not be written (disk full, permissions)."""

    exit_code = EXIT_IO
