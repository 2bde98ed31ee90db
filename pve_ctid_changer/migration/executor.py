"""Backup/restore state machine that moves an entity to a new identifier.

States, in order::

    IDLE -> STOPPED -> BACKED_UP -> RESTORED -> STARTED -> VERIFIED -> OLD_DESTROYED

The original entity is destroyed only after the new identifier has been
confirmed running. A failure in any earlier state raises and leaves the
original in place; nothing is rolled back. Storage resolution and every
capacity check happen before the entity is stopped.
"""
from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import (
    BackupArchive,
    EntityConfig,
    EntityStatus,
    ManagedEntity,
    MigrationRequest,
    MigrationResult,
    MigrationState,
    StorageBackend,
)
from pve_ctid_changer.exceptions import (
    BackupFailedError,
    CommandError,
    DestroyFailedError,
    EntityConfigError,
    RestoreFailedError,
    StartFailedError,
    StopFailedError,
    VerificationFailedError,
)
from pve_ctid_changer.storage import CapacityChecker, StorageResolver, primary_disk_spec

from .reporter import START_FAILURE_HINT, MigrationReporter

BACKUP_HINTS = (
    ("Permission denied", "Check the permissions of the backup storage path"),
    ("No space left", "Free up space on the backup storage or choose another storage"),
)


def backup_hint(output: str) -> Optional[str]:
    """Map known vzdump failure messages to an operator hint."""
    for needle, hint in BACKUP_HINTS:
        if needle.lower() in (output or "").lower():
            return hint
    return None


class MigrationExecutor:
    """Run one MigrationRequest through the backup/restore state machine."""

    def __init__(
        self,
        platform,
        config: MigrationConfig,
        *,
        resolver: Optional[StorageResolver] = None,
        capacity: Optional[CapacityChecker] = None,
        reporter: Optional[MigrationReporter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.platform = platform
        self.config = config
        self.resolver = resolver or StorageResolver(platform, config, sleep=sleep)
        self.capacity = capacity or CapacityChecker(platform, config)
        self.reporter = reporter or MigrationReporter()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _read_config(self, entity: ManagedEntity) -> EntityConfig:
        entity_config = self.platform.read_config(entity.entity_id, entity.kind)
        if entity_config is None:
            raise EntityConfigError(entity.config_path, "Config file not found")
        if primary_disk_spec(entity, entity_config) is None:
            line = "rootfs" if entity.archive_kind == "lxc" else "disk"
            raise EntityConfigError(entity.config_path, f"No {line} line in config")
        return entity_config

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _stop(self, entity: ManagedEntity, result: MigrationResult) -> None:
        label = f"{entity.kind.label} {entity.entity_id}"
        try:
            status = self.platform.get_status(entity.entity_id, entity.kind)
        except CommandError as error:
            raise StopFailedError(
                f"Could not query status of {label}: {error}", entity.entity_id
            ) from error
        self.reporter.detail(f"{label} status: {status.value}")
        if status is EntityStatus.STOPPED:
            self.reporter.transition(result, MigrationState.STOPPED, f"{label} already stopped")
            return
        self.reporter.step(f"Stopping {label}")
        try:
            self.platform.stop(entity.entity_id, entity.kind)
        except CommandError as error:
            raise StopFailedError(f"Failed to stop {label}: {error}", entity.entity_id) from error
        self.reporter.transition(result, MigrationState.STOPPED, label)

    def find_existing_archive(
        self, entity: ManagedEntity, storage: StorageBackend
    ) -> Optional[BackupArchive]:
        """Return the newest archive of ``entity`` on ``storage`` still on disk.

        Registry entries pointing at a vanished file are skipped.
        """
        try:
            volumes = self.platform.list_volumes(
                storage.name, content="backup", vmid=entity.entity_id
            )
        except CommandError as error:
            self.reporter.warning(f"Could not list backups on {storage.name}: {error}")
            return None

        candidates = []
        for entry in volumes:
            volid = entry["volid"]
            archive = BackupArchive.from_filename(
                volid.rsplit("/", 1)[-1],
                storage=storage.name,
                volid=volid,
                size_bytes=entry.get("size"),
            )
            if archive is None or archive.entity_id != entity.entity_id:
                continue
            if archive.kind != entity.archive_kind:
                continue
            candidates.append(archive)
        candidates.sort(key=lambda item: item.created_at or datetime.min, reverse=True)

        for archive in candidates:
            path = self.platform.volume_path(archive.volid)
            if path is not None and path.is_file():
                return replace(archive, path=path, reused=True)
            self.reporter.detail(f"Backup {archive.volid} is registered but missing on disk")
        return None

    def create_archive(self, entity: ManagedEntity, storage: StorageBackend) -> BackupArchive:
        label = f"{entity.kind.label} {entity.entity_id}"
        self.reporter.step(f"Creating backup of {label} on {storage.name}")
        try:
            path, output = self.platform.create_archive(
                entity,
                storage.name,
                compress=self.config.backup_compress,
                mode=self.config.backup_mode,
            )
        except CommandError as error:
            raise BackupFailedError(
                f"Backup of {label} failed: {error}",
                entity.entity_id,
                hint=backup_hint(error.output),
            ) from error
        if path is None:
            raise BackupFailedError(
                "Could not determine backup file path from vzdump output",
                entity.entity_id,
                hint=backup_hint(output),
            )
        if not path.is_file():
            raise BackupFailedError(f"Backup file not found: {path}", entity.entity_id)
        size = path.stat().st_size
        self.reporter.detail(f"Backup file {path}: {size} bytes")
        return BackupArchive.from_filename(
            path.name, path=path, storage=storage.name, size_bytes=size
        ) or BackupArchive(
            entity_id=entity.entity_id, path=path, storage=storage.name, size_bytes=size
        )

    def _backup(self, entity: ManagedEntity, storage: StorageBackend, result: MigrationResult) -> BackupArchive:
        archive = self.find_existing_archive(entity, storage)
        if archive is not None:
            self.reporter.step(f"Using existing backup: {archive.path}")
        else:
            self.reporter.step(f"No existing backup of {entity.entity_id} found")
            archive = self.create_archive(entity, storage)
        result.archive = archive
        self.reporter.transition(result, MigrationState.BACKED_UP, str(archive.path))
        return archive

    def _restore(
        self,
        entity: ManagedEntity,
        archive: BackupArchive,
        new_id: int,
        storage: StorageBackend,
        result: MigrationResult,
    ) -> None:
        label = f"{entity.kind.label} {new_id}"
        flag = " (unprivileged)" if entity.unprivileged else ""
        self.reporter.step(f"Restoring {label} on {storage.name}{flag}")
        try:
            self.platform.restore(
                archive.path,
                new_id,
                entity.kind,
                storage.name,
                unprivileged=entity.unprivileged,
            )
        except CommandError as error:
            raise RestoreFailedError(
                f"Restore to {new_id} failed: {error}",
                new_id,
                hint=(
                    f"{entity.kind.label} {entity.entity_id} is untouched; "
                    f"the backup is kept at {archive.path}"
                ),
            ) from error
        self.reporter.transition(result, MigrationState.RESTORED, label)

    def _start(self, entity: ManagedEntity, new_id: int, result: MigrationResult) -> None:
        label = f"{entity.kind.label} {new_id}"
        self.reporter.step(f"Starting {label}")
        try:
            self.platform.start(new_id, entity.kind)
        except CommandError as error:
            raise StartFailedError(
                f"Failed to start {label}: {error}", new_id, hint=START_FAILURE_HINT
            ) from error
        self.reporter.transition(result, MigrationState.STARTED, label)

    def _verify(self, entity: ManagedEntity, new_id: int, result: MigrationResult) -> None:
        label = f"{entity.kind.label} {new_id}"
        attempts = max(1, self.config.verify_attempts)
        status = EntityStatus.UNKNOWN
        for attempt in range(1, attempts + 1):
            try:
                status = self.platform.get_status(new_id, entity.kind)
            except CommandError as error:
                self.reporter.detail(f"Status query of {new_id} failed: {error}")
                status = EntityStatus.UNKNOWN
            self.reporter.detail(f"{label} status: {status.value} ({attempt}/{attempts})")
            if status is EntityStatus.RUNNING:
                self.reporter.transition(result, MigrationState.VERIFIED, label)
                return
            if attempt < attempts:
                self._sleep(self.config.verify_interval_seconds)
        raise VerificationFailedError(
            f"{label} was restored but is not running (status: {status.value})",
            new_id,
            hint=START_FAILURE_HINT,
        )

    def _destroy_old(self, entity: ManagedEntity, result: MigrationResult) -> None:
        label = f"{entity.kind.label} {entity.entity_id}"
        self.reporter.step(f"Destroying old {label}")
        try:
            self.platform.destroy(entity.entity_id, entity.kind)
        except CommandError as error:
            warning = DestroyFailedError(
                f"Could not destroy old {label}: {error}",
                entity.entity_id,
                hint=f"Remove it manually with '{_tool(entity)} destroy {entity.entity_id}'",
            )
            result.cleanup_warning = str(warning)
            self.reporter.warning(f"{warning}. Hint: {warning.hint}")
            return
        self.reporter.transition(result, MigrationState.OLD_DESTROYED, label)

    def _remove_archive(self, archive: BackupArchive) -> None:
        if archive.reused:
            self.reporter.detail(f"Keeping pre-existing backup {archive.path}")
            return
        try:
            archive.path.unlink()
        except OSError as error:
            self.reporter.warning(f"Could not remove backup {archive.path}: {error}")
            return
        self.reporter.step(f"Removed backup {archive.path}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, request: MigrationRequest) -> MigrationResult:
        """Execute the migration and return its result.

        Raises:
            MigrationError: On any fatal failure before VERIFIED. A failure to
                destroy the old identifier is reported on the result instead.
        """
        request.validate()
        entity = request.current
        result = MigrationResult(request=request, dry_run=self.config.dry_run)

        entity_config = self._read_config(entity)
        primary = self.resolver.resolve_primary(entity, entity_config)
        backup = self.resolver.resolve_backup(entity, primary)

        requirement = self.capacity.estimate_requirement(entity, entity_config, primary)
        self.capacity.ensure_capacity(primary, requirement)
        if backup.name != primary.name:
            self.capacity.ensure_capacity(backup, requirement)

        if self.config.dry_run:
            self.reporter.plan(
                [
                    f"stop {entity.kind.label} {entity.entity_id} if running",
                    f"back up {entity.entity_id} to {backup.name} (reusing an existing backup if present)",
                    f"restore as {request.new_id} on {primary.name}"
                    + (" with --unprivileged 1" if entity.unprivileged else ""),
                    f"start {request.new_id} and verify it is running",
                    f"destroy {entity.entity_id}",
                ]
            )
            return result

        self._stop(entity, result)
        archive = self._backup(entity, backup, result)

        self.capacity.ensure_capacity(primary, requirement)
        self._restore(entity, archive, request.new_id, primary, result)
        self._start(entity, request.new_id, result)
        self._verify(entity, request.new_id, result)

        self.reporter.success(result)
        self._destroy_old(entity, result)

        if not self.config.keep_backup:
            self._remove_archive(archive)
        else:
            self.reporter.step(f"Backup kept at {archive.path}")
        return result


def _tool(entity: ManagedEntity) -> str:
    return "pct" if entity.archive_kind == "lxc" else "qm"
