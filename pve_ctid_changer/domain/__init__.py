"""Domain models for container/VM ID migration.

This package contains type-safe domain objects for entities, storages,
archives and the migration state machine.
"""

from __future__ import annotations

from .models import (
    BackupArchive,
    CapacityRequirement,
    EntityConfig,
    EntityKind,
    EntityStatus,
    ManagedEntity,
    MigrationRequest,
    MigrationResult,
    MigrationState,
    RequirementSource,
    StorageBackend,
    StorageClass,
)


__all__ = [
    "BackupArchive",
    "CapacityRequirement",
    "EntityConfig",
    "EntityKind",
    "EntityStatus",
    "ManagedEntity",
    "MigrationRequest",
    "MigrationResult",
    "MigrationState",
    "RequirementSource",
    "StorageBackend",
    "StorageClass",
]
