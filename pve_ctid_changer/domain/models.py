"""Domain model for container/VM ID migration.

Type-safe objects for the entities, storages and archives that the platform
adapter parses out of pct/qm/pvesm/vzdump output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Entity Domain
# ==============================================================================


class EntityKind(Enum):
    """Kind of managed entity."""

    CONTAINER = "lxc"
    VIRTUAL_MACHINE = "qemu"

    @property
    def label(self) -> str:
        return "CT" if self is EntityKind.CONTAINER else "VM"


class EntityStatus(Enum):
    """Lifecycle status reported by pct/qm status."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> EntityStatus:
        value = (value or "").strip().lower()
        for status in cls:
            if status.value == value:
                return status
        return cls.UNKNOWN


@dataclass(frozen=True)
class ManagedEntity:
    """A container or virtual machine known to the platform."""

    entity_id: int
    kind: EntityKind
    name: str = ""
    status: EntityStatus = EntityStatus.UNKNOWN
    config_path: Optional[Path] = None
    unprivileged: bool = False

    @property
    def archive_kind(self) -> str:
        """Archive kind token used in vzdump filenames (lxc or qemu)."""
        return self.kind.value

    def format_label(self) -> str:
        """Format a menu label, e.g. "[running] web01 (CT, unprivileged)"."""
        details = [self.kind.label]
        if self.kind is EntityKind.CONTAINER and self.unprivileged:
            details.append("unprivileged")
        name = self.name or "Unnamed"
        return f"[{self.status.value}] {name} ({', '.join(details)})"


@dataclass(frozen=True)
class EntityConfig:
    """Key/value view of a /etc/pve/{lxc,qemu-server}/<id>.conf file.

    Only the current configuration is kept; snapshot sections
    (``[snapshot-name]``) are ignored.
    """

    values: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)

    @property
    def hostname(self) -> Optional[str]:
        return self.values.get("hostname") or self.values.get("name")

    @property
    def unprivileged(self) -> bool:
        return self.values.get("unprivileged", "0").strip() == "1"

    @property
    def rootfs(self) -> Optional[str]:
        return self.values.get("rootfs")

    def disk_lines(self) -> list[tuple[str, str]]:
        """Return (key, value) for every VM disk line, in config order."""
        return [
            (key, value)
            for key, value in self.values.items()
            if DISK_KEY_RE.match(key)
        ]


DISK_KEY_RE = re.compile(r"^(scsi|virtio|sata|ide)\d+$")


# ==============================================================================
# Storage Domain
# ==============================================================================


class StorageClass(Enum):
    """Storage class relevant for capacity checks and provisioning."""

    DIRECTORY = "dir"
    ZFS = "zfs"
    NFS = "nfs"
    OTHER = "other"

    @classmethod
    def from_type(cls, storage_type: str) -> StorageClass:
        storage_type = (storage_type or "").lower()
        if storage_type in ("zfspool", "zfs"):
            return cls.ZFS
        if storage_type == "nfs":
            return cls.NFS
        if storage_type in ("dir", "cifs", "cephfs", "glusterfs", "btrfs"):
            return cls.DIRECTORY
        return cls.OTHER


@dataclass(frozen=True)
class StorageBackend:
    """A named storage registered with the platform."""

    name: str
    storage_type: str
    path: Optional[Path] = None
    pool: Optional[str] = None
    content: frozenset[str] = frozenset()
    active: bool = True
    available_bytes: Optional[int] = None
    is_mountpoint: bool = False

    @property
    def storage_class(self) -> StorageClass:
        return StorageClass.from_type(self.storage_type)

    @property
    def supports_backup(self) -> bool:
        return "backup" in self.content

    def format_label(self) -> str:
        content = ",".join(sorted(self.content)) or "-"
        return f"{self.storage_type} [{content}]"


# ==============================================================================
# Archive Domain
# ==============================================================================


ARCHIVE_NAME_RE = re.compile(
    r"vzdump-(?P<kind>lxc|qemu)-(?P<vmid>\d+)-"
    r"(?P<stamp>\d{4}_\d{2}_\d{2}-\d{2}_\d{2}_\d{2})\.(?P<ext>[A-Za-z0-9.]+)$"
)
ARCHIVE_TIMESTAMP_FORMAT = "%Y_%m_%d-%H_%M_%S"


@dataclass(frozen=True)
class BackupArchive:
    """A vzdump archive of an entity on a storage."""

    entity_id: int
    path: Path
    storage: Optional[str] = None
    volid: Optional[str] = None
    created_at: Optional[datetime] = None
    size_bytes: Optional[int] = None
    reused: bool = False

    @classmethod
    def from_filename(
        cls,
        name: str,
        *,
        path: Optional[Path] = None,
        storage: Optional[str] = None,
        volid: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> Optional[BackupArchive]:
        """Parse a vzdump archive filename, returning None if it does not match."""
        match = ARCHIVE_NAME_RE.search(name)
        if not match:
            return None
        try:
            created_at = datetime.strptime(
                match.group("stamp"), ARCHIVE_TIMESTAMP_FORMAT
            )
        except ValueError:
            created_at = None
        return cls(
            entity_id=int(match.group("vmid")),
            path=path or Path(name),
            storage=storage,
            volid=volid,
            created_at=created_at,
            size_bytes=size_bytes,
        )

    @property
    def kind(self) -> Optional[str]:
        match = ARCHIVE_NAME_RE.search(self.path.name)
        return match.group("kind") if match else None


# ==============================================================================
# Capacity Domain
# ==============================================================================

SAFETY_MARGIN_DIVISOR = 5  # +20%


class RequirementSource(Enum):
    """Where the base size of a capacity requirement came from."""

    USAGE = "usage"
    CONFIG = "config"
    DEFAULT = "default"


@dataclass(frozen=True)
class CapacityRequirement:
    """Estimated space needed to back up and restore an entity."""

    base_bytes: int
    source: RequirementSource

    @property
    def required_bytes(self) -> int:
        return self.base_bytes + self.base_bytes // SAFETY_MARGIN_DIVISOR


# ==============================================================================
# Migration Domain
# ==============================================================================


class MigrationState(Enum):
    """States of the backup/restore state machine, in order."""

    IDLE = "idle"
    STOPPED = "stopped"
    BACKED_UP = "backed_up"
    RESTORED = "restored"
    STARTED = "started"
    VERIFIED = "verified"
    OLD_DESTROYED = "old_destroyed"


@dataclass(frozen=True)
class MigrationRequest:
    """A validated (current entity, new identifier) pair."""

    current: ManagedEntity
    new_id: int

    def validate(self) -> None:
        """Check structural constraints of the pair.

        Raises:
            ValueError: If the identifiers are not usable
        """
        if self.new_id <= 0:
            raise ValueError(f"New ID must be positive, got {self.new_id}")
        if self.current.entity_id == self.new_id:
            raise ValueError(
                f"New ID must differ from the current ID {self.current.entity_id}"
            )


@dataclass
class MigrationResult:
    """Outcome of a migration run."""

    request: MigrationRequest
    state: MigrationState = MigrationState.IDLE
    archive: Optional[BackupArchive] = None
    transitions: list[MigrationState] = field(default_factory=list)
    cleanup_warning: Optional[str] = None
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state in (MigrationState.VERIFIED, MigrationState.OLD_DESTROYED)
