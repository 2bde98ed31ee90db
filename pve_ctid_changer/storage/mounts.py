"""Mount table and free-space helpers built on psutil."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import psutil

from pve_ctid_changer.logging import LoggerFactory

log = LoggerFactory.for_storage()

NFS_FSTYPES = ("nfs", "nfs4")


def free_bytes(path: Path) -> Optional[int]:
    """Free bytes on the filesystem holding ``path`` (df --output=avail)."""
    try:
        return int(psutil.disk_usage(str(path)).free)
    except OSError as error:
        log.debug(f"disk_usage failed for {path}: {error}")
        return None


def mount_table():
    """Return the live mount table, including pseudo and network mounts."""
    try:
        return psutil.disk_partitions(all=True)
    except OSError as error:
        log.debug(f"Could not read mount table: {error}")
        return []


def is_mount_point(path: Path) -> bool:
    target = os.path.normpath(str(path))
    for partition in mount_table():
        if os.path.normpath(partition.mountpoint) == target:
            return True
    return os.path.ismount(target)


def nfs_mount_for(storage_name: str, registered_path: Optional[Path] = None) -> Optional[Path]:
    """Resolve the live mount point of an NFS storage.

    The storage registry may omit the path for NFS storages, so the mount
    table is consulted: first for the registered path, then for the
    conventional ``/mnt/pve/<name>`` location.
    """
    candidates = []
    if registered_path is not None:
        candidates.append(os.path.normpath(str(registered_path)))
    candidates.append(f"/mnt/pve/{storage_name}")
    nfs_mounts = [
        partition
        for partition in mount_table()
        if partition.fstype.lower() in NFS_FSTYPES
    ]
    for candidate in candidates:
        for partition in nfs_mounts:
            if os.path.normpath(partition.mountpoint) == candidate:
                return Path(partition.mountpoint)
    for partition in nfs_mounts:
        if os.path.basename(os.path.normpath(partition.mountpoint)) == storage_name:
            return Path(partition.mountpoint)
    return None
