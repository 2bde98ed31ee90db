"""Free space estimation and enforcement for migration storages.

The requirement for a migration is the entity's live disk usage (falling back
to the configured disk size, then to a fixed default) plus a safety margin.
It is checked before the entity is stopped, against both its own storage and
the backup storage, and again before restoring to the destination storage.

ZFS quotas are looked up through the storage registration: the pool dataset
of a ``zfspool`` storage, or the dataset whose mount point is exactly the
path of a directory storage.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import (
    CapacityRequirement,
    EntityConfig,
    ManagedEntity,
    RequirementSource,
    StorageBackend,
    StorageClass,
)
from pve_ctid_changer.exceptions import (
    CapacityUndeterminedError,
    CommandError,
    InsufficientSpaceError,
)
from pve_ctid_changer.logging import LoggerFactory
from pve_ctid_changer.platform import parsers

from . import mounts
from .resolver import primary_disk_spec

log = LoggerFactory.for_capacity()

QUOTA_PROPERTIES = ("refquota", "quota")


def _mb(value: Optional[int]) -> str:
    if value is None:
        return "unknown"
    return f"{value // (1024 * 1024)} MB"


class CapacityChecker:
    """Compute space requirements and verify storages can satisfy them."""

    def __init__(self, platform, config: MigrationConfig):
        self.platform = platform
        self.config = config

    # ------------------------------------------------------------------
    # Requirement
    # ------------------------------------------------------------------

    def _primary_volume(self, entity: ManagedEntity, entity_config: Optional[EntityConfig]):
        if entity_config is None:
            return None, None, {}
        return parsers.parse_volume_spec(primary_disk_spec(entity, entity_config))

    def _entity_dataset(
        self,
        storage: StorageBackend,
        entity: Optional[ManagedEntity],
        entity_config: Optional[EntityConfig],
    ) -> Optional[str]:
        """ZFS dataset of the entity's primary disk, if it lives on ``storage``."""
        if entity is None or storage.storage_class is not StorageClass.ZFS or not storage.pool:
            return None
        volume_storage, volume, _options = self._primary_volume(entity, entity_config)
        if volume_storage != storage.name or not volume:
            return None
        return f"{storage.pool}/{volume}"

    def live_usage(
        self,
        entity: ManagedEntity,
        entity_config: Optional[EntityConfig],
        storage: StorageBackend,
    ) -> Optional[int]:
        """Bytes currently used by the entity's primary disk, if measurable."""
        dataset = self._entity_dataset(storage, entity, entity_config)
        if dataset:
            used = self.platform.zfs_get(dataset, "used")
            if used:
                log.debug(f"ZFS dataset {dataset} uses {used} bytes")
                return used

        volume_storage, volume, _options = self._primary_volume(entity, entity_config)
        if not volume_storage or not volume:
            return None
        volid = f"{volume_storage}:{volume}"
        try:
            volumes = self.platform.list_volumes(volume_storage, vmid=entity.entity_id)
        except CommandError as error:
            log.debug(f"Could not list volumes of {volume_storage}: {error}")
            return None
        for entry in volumes:
            if entry["volid"] == volid and entry["size"]:
                log.debug(f"Volume {volid} size from pvesm: {entry['size']} bytes")
                return entry["size"]
        return None

    def estimate_requirement(
        self,
        entity: ManagedEntity,
        entity_config: Optional[EntityConfig],
        storage: StorageBackend,
    ) -> CapacityRequirement:
        """Estimate the space needed to back up and restore ``entity``.

        The base is the live usage, else the ``size=`` option of the primary
        disk, else the configured default size. A fixed 20% safety margin is
        added on top.
        """
        usage = self.live_usage(entity, entity_config, storage)
        if usage:
            requirement = CapacityRequirement(usage, RequirementSource.USAGE)
        else:
            _storage, _volume, options = self._primary_volume(entity, entity_config)
            size = parsers.parse_size(options.get("size"))
            if size:
                requirement = CapacityRequirement(size, RequirementSource.CONFIG)
            else:
                log.warning(
                    f"Could not determine disk size of {entity.entity_id}, "
                    f"assuming {_mb(self.config.default_size_bytes)}"
                )
                requirement = CapacityRequirement(
                    self.config.default_size_bytes, RequirementSource.DEFAULT
                )
        log.debug(
            f"Space requirement for {entity.entity_id}: base={requirement.base_bytes} "
            f"({requirement.source.value}), required={requirement.required_bytes}"
        )
        return requirement

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _dataset_at(self, path: Optional[Path]) -> Optional[str]:
        if path is None:
            return None
        for dataset, mountpoint in self.platform.zfs_datasets():
            if mountpoint == str(path).rstrip("/"):
                return dataset
        return None

    def quota_dataset(self, storage: StorageBackend) -> Optional[str]:
        """Dataset whose space figures apply to ``storage``.

        Found through the storage registration only: the pool dataset of a
        ZFS storage, or the dataset mounted exactly at a directory storage's
        path. Datasets of individual guests are never returned.
        """
        if storage.storage_class is StorageClass.ZFS:
            return storage.pool
        if storage.storage_class is StorageClass.DIRECTORY:
            return self._dataset_at(storage.path)
        return None

    def available_bytes(self, storage: StorageBackend) -> int:
        """Measure free bytes on a storage.

        Raises:
            CapacityUndeterminedError: If no figure can be obtained
        """
        storage_class = storage.storage_class
        available: Optional[int] = None

        if storage_class is StorageClass.ZFS:
            dataset = self.quota_dataset(storage)
            if dataset:
                available = self.platform.zfs_get(dataset, "available")
                log.debug(f"ZFS dataset {dataset} available: {_mb(available)}")
            if available is None:
                available = storage.available_bytes
        elif storage_class in (StorageClass.DIRECTORY, StorageClass.NFS):
            path = storage.path
            if storage_class is StorageClass.NFS:
                path = mounts.nfs_mount_for(storage.name, storage.path)
            if path is None or not Path(path).is_dir():
                raise CapacityUndeterminedError(
                    storage.name, f"invalid or inaccessible path {path}"
                )
            available = mounts.free_bytes(path)
            log.debug(f"Free space at {path}: {_mb(available)}")
        else:
            available = storage.available_bytes

        if available is None:
            raise CapacityUndeterminedError(storage.name)
        return available

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def _raise_quota(self, dataset: str, required: int) -> bool:
        """Raise a limiting quota on ``dataset`` to ``used + required``.

        Only done when the parent dataset has at least ``required`` bytes
        available. Returns True if a quota was (or, in a dry run, would be)
        changed.
        """
        if "/" not in dataset:
            return False
        parent = dataset.rsplit("/", 1)[0]
        parent_available = self.platform.zfs_get(parent, "available")
        if parent_available is None or parent_available < required:
            log.debug(f"Parent {parent} has no headroom: {_mb(parent_available)}")
            return False
        used = self.platform.zfs_get(dataset, "used") or 0
        changed = False
        for prop in QUOTA_PROPERTIES:
            quota = self.platform.zfs_get(dataset, prop)
            if not quota or quota - used >= required:
                continue
            new_quota = used + required
            if self.config.dry_run:
                log.info(
                    f"Dry run: would raise {prop} of {dataset} from {_mb(quota)} "
                    f"to {_mb(new_quota)}"
                )
                changed = True
                continue
            log.info(f"Raising {prop} of {dataset} from {_mb(quota)} to {_mb(new_quota)}")
            try:
                self.platform.zfs_set(dataset, prop, new_quota)
            except CommandError as error:
                log.warning(f"Could not raise {prop} of {dataset}: {error}")
                continue
            changed = True
        return changed

    def ensure_capacity(self, storage: StorageBackend, requirement: CapacityRequirement) -> int:
        """Verify ``storage`` can hold ``requirement``; return available bytes.

        Raises:
            InsufficientSpaceError: If space is short after any quota raise
            CapacityUndeterminedError: If space cannot be measured
        """
        required = requirement.required_bytes
        available = self.available_bytes(storage)
        log.info(
            f"Storage {storage.name}: required {_mb(required)}, "
            f"available {_mb(available)}"
        )
        if available >= required:
            return available

        dataset = self.quota_dataset(storage)
        if dataset and self._raise_quota(dataset, required):
            if self.config.dry_run:
                return required
            available = self.available_bytes(storage)
            log.debug(f"Storage {storage.name} after quota raise: {_mb(available)}")
            if available >= required:
                return available

        raise InsufficientSpaceError(storage.name, required, available)
