"""
Domain models — Pydantic types for rush.

All models are re-exported here for convenient access:

    from rush.core.models import Registry, Target, InstalledState
"""

from rush.core.models.registry import Checksum, Registry, RegistryEntry, Target
from rush.core.models.state import InstalledPackage, InstalledState

__all__ = [
    # registry.py
    "Checksum",
    # state.py
    "InstalledPackage",
    "InstalledState",
    "Registry",
    "RegistryEntry",
    "Target",
]
