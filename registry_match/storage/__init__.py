"""
Persistence for RegistryMatch.

SQLite-backed registry, alias, rule and region reference store.
"""

from .registry_store import RegistryStore, RegistryEntry

__all__ = ["RegistryStore", "RegistryEntry"]
