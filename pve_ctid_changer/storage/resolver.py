"""Storage resolution and backup storage provisioning.

Given an entity, ``StorageResolver`` returns the registered storage holding
its primary disk and a storage that can hold vzdump archives.

Backup storage policy (first match wins):
    1. The entity's own storage, if it advertises ``backup`` content
    2. Any other active storage advertising ``backup`` content
    3. ZFS-backed entity storage: a new dataset on the same pool, registered
       as a ``dir`` storage with ``--is_mountpoint yes``
    4. Directory/NFS-backed entity storage: a timestamped subdirectory,
       registered as a ``dir`` storage
    5. Steps 3/4 on every other active storage, in ``pvesm status`` order
    6. StorageProvisioningError

Every provisioned storage must pass ``wait_until_ready()`` before it is used
for capacity checks or writes. A storage that fails half way is unregistered
and its dataset or directory removed again. Dry runs only log what would be
provisioned.
"""
from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import (
    EntityConfig,
    EntityKind,
    ManagedEntity,
    StorageBackend,
    StorageClass,
)
from pve_ctid_changer.exceptions import (
    CommandError,
    EntityConfigError,
    StorageNotFoundError,
    StorageError,
    StorageProvisioningError,
    StorageQueryError,
    StorageUnavailableError,
)
from pve_ctid_changer.logging import LoggerFactory
from pve_ctid_changer.platform import parsers

from . import mounts

log = LoggerFactory.for_storage()

BACKUP_STORAGE_PREFIX = "ctid-backup"

StorageChooser = Callable[[Sequence[StorageBackend]], StorageBackend]


def primary_disk_spec(entity: ManagedEntity, config: EntityConfig) -> Optional[str]:
    """Return the config value of the entity's primary disk.

    Containers use the ``rootfs:`` line. VMs use the first disk line with a
    known bus prefix (scsi, virtio, sata, ide), skipping CD-ROM drives and
    empty slots.
    """
    if entity.kind is EntityKind.CONTAINER:
        return config.rootfs
    for _key, value in config.disk_lines():
        storage, volume, options = parsers.parse_volume_spec(value)
        if options.get("media") == "cdrom" or volume in (None, "none"):
            continue
        if storage is None:
            continue
        return value
    return None


class StorageResolver:
    """Resolve primary and backup storages for an entity."""

    def __init__(
        self,
        platform,
        config: MigrationConfig,
        *,
        chooser: Optional[StorageChooser] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.platform = platform
        self.config = config
        self.chooser = chooser
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Primary storage
    # ------------------------------------------------------------------

    def primary_storage_name(self, entity: ManagedEntity, config: EntityConfig) -> str:
        spec = primary_disk_spec(entity, config)
        storage, _volume, _options = parsers.parse_volume_spec(spec)
        if not storage:
            raise EntityConfigError(
                entity.config_path,
                f"Could not detect storage of {entity.kind.label} {entity.entity_id}",
            )
        log.debug(f"Primary disk of {entity.entity_id}: {spec}")
        return storage

    def resolve_primary(self, entity: ManagedEntity, config: EntityConfig) -> StorageBackend:
        """Return the registered storage holding the entity's primary disk.

        Raises:
            StorageNotFoundError: If the storage is not registered. This is a
                configuration error and is never retried.
        """
        name = self.primary_storage_name(entity, config)
        storage = self._get_storage(name)
        if storage is None:
            raise StorageNotFoundError(name, entity.entity_id)
        log.info(f"Detected {entity.kind.label} storage: {name} ({storage.storage_type})")
        log.debug(
            f"Storage {name}: class={storage.storage_class.value}, "
            f"path={storage.path}, pool={storage.pool}, active={storage.active}"
        )
        return storage

    # ------------------------------------------------------------------
    # Backup storage
    # ------------------------------------------------------------------

    def resolve_backup(self, entity: ManagedEntity, primary: StorageBackend) -> StorageBackend:
        """Locate or provision a storage that accepts vzdump archives.

        In dry-run mode nothing is created: the storage that would be
        provisioned is logged and returned as a plan.
        """
        capable = [
            storage
            for storage in self._list_storages(content="backup")
            if storage.active
        ]
        capable_names = {storage.name for storage in capable}
        log.debug(f"Backup-capable storages: {sorted(capable_names) or 'none'}")

        if primary.name in capable_names:
            log.info(f"Using {entity.kind.label} storage for backups: {primary.name}")
            return primary

        log.warning(f"Storage '{primary.name}' does not support backups")
        if capable:
            chosen = capable[0]
            if len(capable) > 1 and self.chooser is not None:
                chosen = self.chooser(capable)
            log.info(f"Using backup storage: {chosen.name}")
            return chosen

        if not self.config.provision_backup_storage:
            raise StorageProvisioningError(["provisioning disabled"])

        attempts: list[str] = []
        candidates = [primary] + [
            storage
            for storage in self._list_storages()
            if storage.active and storage.name != primary.name
        ]
        for candidate in candidates:
            provisioned = self._provision_on(candidate, attempts)
            if provisioned is not None:
                return provisioned
        raise StorageProvisioningError(attempts)

    def _list_storages(self, content: Optional[str] = None) -> list[StorageBackend]:
        try:
            return self.platform.list_storages(content=content)
        except CommandError as error:
            raise StorageQueryError(str(error)) from error

    def _get_storage(self, name: str) -> Optional[StorageBackend]:
        try:
            return self.platform.get_storage(name)
        except CommandError as error:
            raise StorageQueryError(str(error)) from error

    def _new_storage_name(self) -> str:
        return f"{BACKUP_STORAGE_PREFIX}-{self._clock().strftime('%Y%m%d-%H%M%S')}"

    def _provision_on(self, storage: StorageBackend, attempts: list[str]) -> Optional[StorageBackend]:
        storage_class = storage.storage_class
        if storage_class not in (StorageClass.ZFS, StorageClass.DIRECTORY, StorageClass.NFS):
            attempts.append(f"{storage.name}: unsupported type {storage.storage_type}")
            return None
        name = self._new_storage_name()
        try:
            if storage_class is StorageClass.ZFS:
                if not storage.pool:
                    raise StorageUnavailableError(storage.name, "no pool registered")
                dataset = f"{storage.pool.split('/', 1)[0]}/{name}"
                if self.config.dry_run:
                    log.info(
                        f"Dry run: would create ZFS dataset {dataset} and "
                        f"register it as backup storage {name}"
                    )
                    return replace(storage, name=name, pool=dataset.split("/", 1)[0])
                return self._provision_zfs_dataset(name, dataset)

            base = self.storage_mount_path(storage)
            if self.config.dry_run:
                log.info(
                    f"Dry run: would create {base / name} and register it as "
                    f"backup storage {name}"
                )
                return replace(storage, name=name, storage_type="dir", path=base)
            return self._provision_subdirectory(name, base / name)
        except (CommandError, OSError, StorageUnavailableError) as error:
            log.warning(f"Could not provision backup storage on {storage.name}: {error}")
            attempts.append(f"{storage.name}: {error}")
            return None

    def _provision_zfs_dataset(self, name: str, dataset: str) -> StorageBackend:
        log.info(f"Creating ZFS dataset {dataset} for backups")
        mountpoint = self.platform.zfs_create(dataset)
        try:
            if mountpoint is None:
                raise StorageUnavailableError(name, f"dataset {dataset} has no mountpoint")
            return self._register(name, mountpoint, is_mountpoint=True)
        except (CommandError, StorageError):
            self._cleanup(
                f"dataset {dataset}",
                f"zfs destroy {dataset}",
                lambda: self.platform.zfs_destroy(dataset),
            )
            raise

    def _provision_subdirectory(self, name: str, directory: Path) -> StorageBackend:
        log.info(f"Creating backup directory {directory}")
        directory.mkdir(parents=True, exist_ok=False)
        try:
            return self._register(name, directory, is_mountpoint=False)
        except (CommandError, StorageError):
            self._cleanup(f"directory {directory}", f"rmdir {directory}", directory.rmdir)
            raise

    def _register(self, name: str, path: Path, *, is_mountpoint: bool) -> StorageBackend:
        """Register ``path`` as a backup storage and wait until it is usable.

        The registration is removed again if the storage never becomes ready.
        """
        self.platform.add_dir_storage(name, path, is_mountpoint=is_mountpoint)
        log.info(f"Registered backup storage {name} at {path}")
        try:
            return self.wait_until_ready(name)
        except StorageError:
            self._cleanup(
                f"storage registration {name}",
                f"pvesm remove {name}",
                lambda: self.platform.remove_storage(name),
            )
            raise

    def _cleanup(self, what: str, command: str, action: Callable[[], None]) -> None:
        try:
            action()
        except (CommandError, OSError) as error:
            log.warning(f"Could not remove {what}: {error}. Remove it with '{command}'")
            return
        log.info(f"Removed {what}")

    def storage_mount_path(self, storage: StorageBackend) -> Path:
        """Resolve the accessible path of a directory or NFS storage.

        NFS paths come from the live mount table; the registry may omit them.

        Raises:
            StorageUnavailableError: If no existing directory can be resolved
        """
        path = storage.path
        if storage.storage_class is StorageClass.NFS:
            path = mounts.nfs_mount_for(storage.name, storage.path)
            if path is None:
                raise StorageUnavailableError(storage.name, "NFS share is not mounted")
        if path is None or not path.is_dir():
            raise StorageUnavailableError(
                storage.name, f"invalid or inaccessible path {path}"
            )
        log.debug(f"Resolved path of {storage.name}: {path}")
        return path

    def wait_until_ready(self, name: str) -> StorageBackend:
        """Poll a freshly registered storage until it is usable.

        Retries ``readiness_attempts`` times with linear backoff. A storage is
        ready when pvesm reports it active, its path is an existing directory,
        and, for ``is_mountpoint`` storages, the path is mounted.

        Raises:
            StorageUnavailableError: If the storage never becomes ready
        """
        attempts = max(1, self.config.readiness_attempts)
        reason = "not registered"
        for attempt in range(1, attempts + 1):
            storage = self._get_storage(name)
            if storage is None:
                reason = "not registered"
            elif not storage.active:
                reason = "not active"
            elif storage.path is None or not storage.path.is_dir():
                reason = f"path {storage.path} not resolvable"
            elif storage.is_mountpoint and not mounts.is_mount_point(storage.path):
                reason = f"path {storage.path} not mounted"
            else:
                log.debug(f"Storage {name} ready after {attempt} attempt(s)")
                return storage
            log.debug(f"Storage {name} not ready ({reason}), attempt {attempt}/{attempts}")
            if attempt < attempts:
                self._sleep(self.config.readiness_backoff_seconds * attempt)
        raise StorageUnavailableError(name, reason)
