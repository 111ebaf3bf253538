"""rush — a package manager for prebuilt static binaries."""

__version__ = "0.1.0"
