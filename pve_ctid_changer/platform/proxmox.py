"""Adapter for the Proxmox VE command-line surface.

``ProxmoxPlatform`` is the only object in the package that talks to the
host: it spawns ``pct``, ``qm``, ``qmrestore``, ``vzdump``, ``pvesm`` and
``zfs`` and turns their text output into domain objects via ``parsers``.

Operations:
    - list_entities(): containers and VMs joined with their config files
    - entity_kind(), get_status(): live existence and status queries
    - stop(), start(), destroy(): lifecycle calls
    - create_archive(): vzdump, returning the archive path vzdump reported
    - restore(): pct restore / qmrestore to a new identifier
    - list_storages(), get_storage(): pvesm status joined with storage.cfg
    - list_volumes(), volume_path(), add_dir_storage(), remove_storage()
    - zfs_get(), zfs_set(), zfs_create(), zfs_destroy(), zfs_datasets()

Methods raise ``CommandError`` when a command fails; callers translate it
into the migration exception matching their step.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import (
    EntityConfig,
    EntityKind,
    EntityStatus,
    ManagedEntity,
    StorageBackend,
)
from pve_ctid_changer.exceptions import CommandError
from pve_ctid_changer.logging import LoggerFactory

from . import parsers
from .command_runners import (
    is_tool,
    run_checked_command,
    run_command,
    run_succeeds,
)

log = LoggerFactory.for_platform()

CONTAINER_TOOLS = ("pct", "vzdump", "pvesm")
VM_TOOLS = ("qm", "qmrestore")


class ProxmoxPlatform:
    """Process-invocation adapter over pct/qm/vzdump/pvesm/zfs."""

    def __init__(self, config: Optional[MigrationConfig] = None):
        self.config = config or MigrationConfig()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def config_path(self, entity_id: int, kind: EntityKind) -> Path:
        base = (
            self.config.lxc_config_dir
            if kind is EntityKind.CONTAINER
            else self.config.qemu_config_dir
        )
        return base / f"{entity_id}.conf"

    def read_config(self, entity_id: int, kind: EntityKind) -> Optional[EntityConfig]:
        path = self.config_path(entity_id, kind)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            log.debug(f"Config file not readable: {path}")
            return None
        return parsers.parse_entity_config(text)

    def _build_entity(self, entry: dict, kind: EntityKind) -> ManagedEntity:
        entity_id = entry["vmid"]
        config = self.read_config(entity_id, kind)
        name = entry.get("name") or ""
        unprivileged = False
        if config is not None:
            name = config.hostname or name
            unprivileged = kind is EntityKind.CONTAINER and config.unprivileged
        return ManagedEntity(
            entity_id=entity_id,
            kind=kind,
            name=name,
            status=EntityStatus.parse(entry.get("status")),
            config_path=self.config_path(entity_id, kind),
            unprivileged=unprivileged,
        )

    def list_containers(self) -> list[ManagedEntity]:
        output = run_checked_command(["pct", "list"])
        return [
            self._build_entity(entry, EntityKind.CONTAINER)
            for entry in parsers.parse_pct_list(output)
        ]

    def list_vms(self) -> list[ManagedEntity]:
        if not is_tool("qm"):
            return []
        output = run_checked_command(["qm", "list"])
        return [
            self._build_entity(entry, EntityKind.VIRTUAL_MACHINE)
            for entry in parsers.parse_qm_list(output)
        ]

    def list_entities(self) -> list[ManagedEntity]:
        entities = self.list_containers() + self.list_vms()
        return sorted(entities, key=lambda entity: entity.entity_id)

    def entity_kind(self, entity_id: int) -> Optional[EntityKind]:
        """Return the namespace an identifier lives in, or None if it is free."""
        if run_succeeds(["pct", "status", str(entity_id)]):
            return EntityKind.CONTAINER
        if is_tool("qm") and run_succeeds(["qm", "status", str(entity_id)]):
            return EntityKind.VIRTUAL_MACHINE
        for kind in EntityKind:
            if self.config_path(entity_id, kind).exists():
                return kind
        return None

    def get_entity(self, entity_id: int) -> Optional[ManagedEntity]:
        kind = self.entity_kind(entity_id)
        if kind is None:
            return None
        try:
            status = self.get_status(entity_id, kind)
        except CommandError as error:
            log.debug(f"Status query of {entity_id} failed: {error}")
            status = EntityStatus.UNKNOWN
        return self._build_entity(
            {"vmid": entity_id, "status": status.value}, kind
        )

    def get_status(self, entity_id: int, kind: EntityKind) -> EntityStatus:
        output = run_checked_command([_lifecycle_tool(kind), "status", str(entity_id)])
        return parsers.parse_status(output)

    def stop(self, entity_id: int, kind: EntityKind) -> None:
        run_checked_command([_lifecycle_tool(kind), "stop", str(entity_id)])

    def start(self, entity_id: int, kind: EntityKind) -> None:
        run_checked_command([_lifecycle_tool(kind), "start", str(entity_id)])

    def destroy(self, entity_id: int, kind: EntityKind) -> None:
        run_checked_command([_lifecycle_tool(kind), "destroy", str(entity_id)])

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def create_archive(
        self,
        entity: ManagedEntity,
        storage: str,
        *,
        compress: str = "zstd",
        mode: str = "snapshot",
    ) -> tuple[Optional[Path], str]:
        """Run vzdump and return (reported archive path, combined output).

        The path is taken from vzdump's own output; no naming convention is
        assumed. It is None when vzdump succeeded without reporting one.
        """
        command = [
            "vzdump",
            str(entity.entity_id),
            "--compress",
            compress,
            "--storage",
            storage,
            "--mode",
            mode,
        ]
        result = run_command(command)
        output = "\n".join(
            part for part in (result.stdout, result.stderr) if part
        )
        if result.returncode != 0:
            raise CommandError(
                command, result.returncode, stdout=result.stdout, stderr=result.stderr
            )
        return parsers.parse_vzdump_archive(output), output

    def restore(
        self,
        archive: Path,
        new_id: int,
        kind: EntityKind,
        storage: str,
        *,
        unprivileged: bool = False,
    ) -> None:
        if kind is EntityKind.CONTAINER:
            command = [
                "pct",
                "restore",
                str(new_id),
                str(archive),
                "--storage",
                storage,
            ]
            if unprivileged:
                command += ["--unprivileged", "1"]
        else:
            command = ["qmrestore", str(archive), str(new_id), "--storage", storage]
        run_checked_command(command)

    # ------------------------------------------------------------------
    # Storage registry
    # ------------------------------------------------------------------

    def _storage_cfg(self) -> dict[str, dict[str, str]]:
        try:
            text = self.config.storage_config_path.read_text(encoding="utf-8")
        except OSError:
            log.debug(f"Storage config not readable: {self.config.storage_config_path}")
            return {}
        return parsers.parse_storage_cfg(text)

    def list_storages(self, content: Optional[str] = None) -> list[StorageBackend]:
        """List registered storages with live status and capacity."""
        command = ["pvesm", "status"]
        if content:
            command += ["--content", content]
        status_entries = parsers.parse_pvesm_status(run_checked_command(command))
        registry = self._storage_cfg()
        storages = []
        for entry in status_entries:
            options = registry.get(entry["name"], {})
            path = options.get("path")
            if not path and entry["type"] == "nfs":
                path = f"/mnt/pve/{entry['name']}"
            elif not path and options.get("mountpoint"):
                path = options["mountpoint"]
            storages.append(
                StorageBackend(
                    name=entry["name"],
                    storage_type=entry["type"],
                    path=Path(path) if path else None,
                    pool=options.get("pool"),
                    content=parsers.parse_content(options.get("content"))
                    or (frozenset({content}) if content else frozenset()),
                    active=entry["active"],
                    available_bytes=entry["available_bytes"],
                    is_mountpoint=options.get("is_mountpoint", "no")
                    not in ("no", "0", ""),
                )
            )
        return storages

    def get_storage(self, name: str) -> Optional[StorageBackend]:
        for storage in self.list_storages():
            if storage.name == name:
                return storage
        return None

    def list_volumes(
        self,
        storage: str,
        *,
        content: Optional[str] = None,
        vmid: Optional[int] = None,
    ) -> list[dict]:
        command = ["pvesm", "list", storage]
        if content:
            command += ["--content", content]
        if vmid is not None:
            command += ["--vmid", str(vmid)]
        return parsers.parse_pvesm_list(run_checked_command(command))

    def volume_path(self, volid: str) -> Optional[Path]:
        result = run_command(["pvesm", "path", volid])
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return Path(result.stdout.strip().splitlines()[0])

    def add_dir_storage(self, name: str, path: Path, *, is_mountpoint: bool) -> None:
        command = [
            "pvesm",
            "add",
            "dir",
            name,
            "--path",
            str(path),
            "--content",
            "backup",
        ]
        if is_mountpoint:
            command += ["--is_mountpoint", "yes"]
        run_checked_command(command)

    def remove_storage(self, name: str) -> None:
        run_checked_command(["pvesm", "remove", name])

    # ------------------------------------------------------------------
    # ZFS
    # ------------------------------------------------------------------

    def zfs_get(self, dataset: str, prop: str) -> Optional[int]:
        if not is_tool("zfs"):
            return None
        result = run_command(["zfs", "get", "-H", "-p", "-o", "value", prop, dataset])
        if result.returncode != 0:
            return None
        return parsers.parse_zfs_value(result.stdout)

    def zfs_set(self, dataset: str, prop: str, value: int) -> None:
        run_checked_command(["zfs", "set", f"{prop}={value}", dataset])

    def zfs_create(self, dataset: str) -> Optional[Path]:
        """Create a dataset and return its mount point."""
        run_checked_command(["zfs", "create", dataset])
        output = run_checked_command(
            ["zfs", "get", "-H", "-o", "value", "mountpoint", dataset]
        ).strip()
        if not output or output in ("-", "none", "legacy"):
            return None
        return Path(output)

    def zfs_destroy(self, dataset: str) -> None:
        run_checked_command(["zfs", "destroy", dataset])

    def zfs_datasets(self) -> list[tuple[str, str]]:
        if not is_tool("zfs"):
            return []
        result = run_command(["zfs", "list", "-H", "-o", "name,mountpoint"])
        if result.returncode != 0:
            return []
        return parsers.parse_zfs_mountpoints(result.stdout)


def _lifecycle_tool(kind: EntityKind) -> str:
    return "pct" if kind is EntityKind.CONTAINER else "qm"
