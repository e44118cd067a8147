"""
Storage Layer

Durable configuration state held by the locator:
- records.py - Configuration and artifact records
- config_store.py - Per-record directory store
- artifacts.py - Versioned artifact registry
- archive.py - Zip export/import of the record tree
"""

from . import archive
from .artifacts import ArtifactRegistry, find_by_base_name
from .config_store import ConfigStore, atomic_write, sha256_digest
from .records import (
    ArtifactPayload,
    ArtifactRecord,
    ConfigurationBundle,
    ConfigurationRecord,
    RegionDefinition,
    ResolvedConfiguration,
    parse_stored_name,
    stored_name,
)

__all__ = [
    "archive",
    "ArtifactRegistry",
    "find_by_base_name",
    "ConfigStore",
    "atomic_write",
    "sha256_digest",
    "ArtifactPayload",
    "ArtifactRecord",
    "ConfigurationBundle",
    "ConfigurationRecord",
    "RegionDefinition",
    "ResolvedConfiguration",
    "parse_stored_name",
    "stored_name",
]
