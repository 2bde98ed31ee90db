"""
Pytest configuration and shared fixtures for pve-ctid-changer tests.

This module provides a recording fake of the Proxmox platform adapter plus
entity, storage and config fixtures used across all test modules.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest
from loguru import logger

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import (
    EntityConfig,
    EntityKind,
    EntityStatus,
    ManagedEntity,
    StorageBackend,
)
from pve_ctid_changer.exceptions import CommandError
from pve_ctid_changer.platform.parsers import parse_vzdump_archive

GIB = 1024**3
ARCHIVE_NAME = "vzdump-lxc-105-2024_05_01-10_00_00.tar.zst"


# ==============================================================================
# Fake Platform
# ==============================================================================


class FakePlatform:
    """In-memory stand-in for ProxmoxPlatform that records every call.

    ``calls`` holds ``(operation, *args)`` tuples in invocation order.
    ``failures`` maps an operation name to the CommandError it should raise.
    """

    def __init__(self, archive_dir: Path):
        self.archive_dir = archive_dir
        self.entities: Dict[int, ManagedEntity] = {}
        self.configs: Dict[int, EntityConfig] = {}
        self.statuses: Dict[int, EntityStatus] = {}
        self.storages: List[StorageBackend] = []
        self.volumes: Dict[str, List[Dict[str, Any]]] = {}
        self.volume_paths: Dict[str, Path] = {}
        self.zfs: Dict[tuple, int] = {}
        self.datasets: List[tuple] = []
        self.failures: Dict[str, CommandError] = {}
        self.vzdump_output: Optional[str] = None
        self.calls: List[tuple] = []

    # helpers -----------------------------------------------------------

    def add_entity(self, entity: ManagedEntity, config: Dict[str, str], status=None):
        self.entities[entity.entity_id] = entity
        self.configs[entity.entity_id] = EntityConfig(values=dict(config))
        self.statuses[entity.entity_id] = status or entity.status

    def _record(self, operation: str, *args):
        self.calls.append((operation, *args))
        if operation in self.failures:
            raise self.failures[operation]

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]

    # entities ----------------------------------------------------------

    def list_entities(self):
        self._record("list_entities")
        return sorted(self.entities.values(), key=lambda entity: entity.entity_id)

    def entity_kind(self, entity_id):
        self._record("entity_kind", entity_id)
        entity = self.entities.get(entity_id)
        return entity.kind if entity else None

    def get_entity(self, entity_id):
        self._record("get_entity", entity_id)
        return self.entities.get(entity_id)

    def read_config(self, entity_id, kind):
        return self.configs.get(entity_id)

    def get_status(self, entity_id, kind):
        self._record("status", entity_id)
        if entity_id not in self.statuses:
            raise CommandError(["pct", "status", str(entity_id)], 2, stderr="does not exist")
        return self.statuses[entity_id]

    def stop(self, entity_id, kind):
        self._record("stop", entity_id)
        if self.statuses.get(entity_id) is EntityStatus.STOPPED:
            raise CommandError(["pct", "stop", str(entity_id)], 255, stderr="not running")
        self.statuses[entity_id] = EntityStatus.STOPPED

    def start(self, entity_id, kind):
        self._record("start", entity_id)
        self.statuses[entity_id] = EntityStatus.RUNNING

    def destroy(self, entity_id, kind):
        self._record("destroy", entity_id)
        self.entities.pop(entity_id, None)
        self.statuses.pop(entity_id, None)

    # backup / restore --------------------------------------------------

    def create_archive(self, entity, storage, *, compress="zstd", mode="snapshot"):
        self._record("create_archive", entity.entity_id, storage)
        path = self.archive_dir / ARCHIVE_NAME.replace("105", str(entity.entity_id))
        path.write_bytes(b"archive")
        output = self.vzdump_output
        if output is None:
            output = f"INFO: creating vzdump archive '{path}'\nINFO: Finished Backup"
        return parse_vzdump_archive(output), output

    def restore(self, archive, new_id, kind, storage, *, unprivileged=False):
        self._record("restore", new_id, str(archive), storage, unprivileged)
        self.entities[new_id] = ManagedEntity(
            entity_id=new_id, kind=kind, unprivileged=unprivileged
        )
        self.statuses[new_id] = EntityStatus.STOPPED

    # storage -----------------------------------------------------------

    def list_storages(self, content=None):
        self._record("list_storages", content)
        if content:
            return [storage for storage in self.storages if content in storage.content]
        return list(self.storages)

    def get_storage(self, name):
        self._record("get_storage", name)
        for storage in self.storages:
            if storage.name == name:
                return storage
        return None

    def list_volumes(self, storage, *, content=None, vmid=None):
        self._record("list_volumes", storage, content, vmid)
        entries = self.volumes.get(storage, [])
        return [
            entry
            for entry in entries
            if (content is None or entry.get("content") == content)
            and (vmid is None or entry.get("vmid") == vmid)
        ]

    def volume_path(self, volid):
        return self.volume_paths.get(volid)

    def add_dir_storage(self, name, path, *, is_mountpoint):
        self._record("add_dir_storage", name, str(path), is_mountpoint)
        self.storages.append(
            StorageBackend(
                name=name,
                storage_type="dir",
                path=Path(path),
                content=frozenset({"backup"}),
                is_mountpoint=is_mountpoint,
            )
        )

    def remove_storage(self, name):
        self._record("remove_storage", name)
        self.storages = [storage for storage in self.storages if storage.name != name]

    # zfs ---------------------------------------------------------------

    def zfs_get(self, dataset, prop):
        return self.zfs.get((dataset, prop))

    def zfs_set(self, dataset, prop, value):
        self._record("zfs_set", dataset, prop, value)
        self.zfs[(dataset, prop)] = value

    def zfs_create(self, dataset):
        self._record("zfs_create", dataset)
        mountpoint = self.archive_dir / dataset.replace("/", "_")
        mountpoint.mkdir(parents=True, exist_ok=True)
        return mountpoint

    def zfs_destroy(self, dataset):
        self._record("zfs_destroy", dataset)

    def zfs_datasets(self):
        return list(self.datasets)


# ==============================================================================
# Config Fixtures
# ==============================================================================


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    """
    Fixture providing a MigrationConfig with no delays.

    Returns:
        MigrationConfig pointing its files into tmp_path.
    """
    return MigrationConfig(
        log_file=tmp_path / "change_ct_id.log",
        interactive=False,
        use_dialog=False,
        readiness_backoff_seconds=0,
        verify_interval_seconds=0,
        lxc_config_dir=tmp_path / "lxc",
        qemu_config_dir=tmp_path / "qemu-server",
        storage_config_path=tmp_path / "storage.cfg",
    )


# ==============================================================================
# Entity Fixtures
# ==============================================================================


@pytest.fixture
def container() -> ManagedEntity:
    """Fixture providing running unprivileged container 105."""
    return ManagedEntity(
        entity_id=105,
        kind=EntityKind.CONTAINER,
        name="web01",
        status=EntityStatus.RUNNING,
        config_path=Path("/etc/pve/lxc/105.conf"),
        unprivileged=True,
    )


@pytest.fixture
def container_config() -> Dict[str, str]:
    return {
        "arch": "amd64",
        "hostname": "web01",
        "rootfs": "local:105/vm-105-disk-0.raw,size=8G",
        "unprivileged": "1",
    }


# ==============================================================================
# Storage Fixtures
# ==============================================================================


@pytest.fixture
def local_storage(tmp_path) -> StorageBackend:
    """Fixture providing the 'local' directory storage with backup content."""
    path = tmp_path / "local"
    path.mkdir()
    return StorageBackend(
        name="local",
        storage_type="dir",
        path=path,
        content=frozenset({"backup", "rootdir", "images", "vztmpl", "iso"}),
        available_bytes=100 * GIB,
    )


@pytest.fixture
def zfs_storage() -> StorageBackend:
    """Fixture providing a 'local-zfs' zfspool storage without backup content."""
    return StorageBackend(
        name="local-zfs",
        storage_type="zfspool",
        pool="rpool/data",
        content=frozenset({"rootdir", "images"}),
        available_bytes=50 * GIB,
    )


# ==============================================================================
# Platform Fixtures
# ==============================================================================


@pytest.fixture
def archive_dir(tmp_path) -> Path:
    path = tmp_path / "dump"
    path.mkdir()
    return path


@pytest.fixture
def platform(archive_dir) -> FakePlatform:
    """Fixture providing an empty recording platform."""
    return FakePlatform(archive_dir)


@pytest.fixture
def scenario_platform(platform, container, container_config, local_storage) -> FakePlatform:
    """
    Fixture providing the standard scenario.

    Container 105 is running and unprivileged with 8 GiB used on storage
    'local'; ID 150 is unused and no backup exists.
    """
    platform.add_entity(container, container_config)
    platform.storages.append(local_storage)
    platform.volumes["local"] = [
        {
            "volid": "local:105/vm-105-disk-0.raw",
            "format": "raw",
            "type": "images",
            "size": 8 * GIB,
            "vmid": 105,
            "content": "rootdir",
        }
    ]
    return platform


@pytest.fixture
def free_bytes(mocker) -> Mock:
    """Fixture controlling the free space reported for directory paths."""
    return mocker.patch(
        "pve_ctid_changer.storage.mounts.free_bytes", return_value=100 * GIB
    )


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_messages():
    """
    Fixture capturing loguru messages emitted during a test.

    Returns:
        List that receives every formatted message in emission order.
    """
    messages: List[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="TRACE")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")
