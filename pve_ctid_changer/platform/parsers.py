"""Parsers for pct/qm/pvesm/vzdump/zfs text output and PVE config files.

All knowledge of the free-form text printed by the Proxmox tools lives here,
so that a switch to structured output (``pvesh ... --output-format json``)
only touches this module and the adapter that calls it.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from pve_ctid_changer.domain import EntityConfig, EntityStatus

SIZE_UNITS = {
    "": 1024**3,  # bare numbers in PVE size= options are GiB
    "B": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(i?B)?\s*$", re.IGNORECASE)
_STATUS_RE = re.compile(r"^status:\s*(\S+)", re.MULTILINE)
_ARCHIVE_RES = (
    re.compile(r"creating vzdump archive '([^']+)'"),
    re.compile(r"creating archive '([^']+)'"),
)


def parse_size(value: Optional[str]) -> Optional[int]:
    """Convert a PVE size string (``8G``, ``512M``, ``32``) to bytes.

    Returns:
        Size in bytes, or None if the value cannot be parsed
    """
    if not value:
        return None
    match = _SIZE_RE.match(value)
    if not match:
        return None
    number = float(match.group(1))
    unit = match.group(2).upper()
    if not unit and match.group(3):
        unit = "B"
    return int(number * SIZE_UNITS[unit])


def parse_status(output: str) -> EntityStatus:
    """Parse ``pct status``/``qm status`` output (``status: running``)."""
    match = _STATUS_RE.search(output or "")
    if not match:
        return EntityStatus.UNKNOWN
    return EntityStatus.parse(match.group(1))


def parse_pct_list(output: str) -> list[dict]:
    """Parse ``pct list``.

    Columns are VMID, Status, Lock, Name. Lock is usually empty, so the name
    is taken from the last column.
    """
    entries = []
    for line in (output or "").splitlines()[1:]:
        parts = line.split()
        if len(parts) < 2 or not parts[0].isdigit():
            continue
        entries.append(
            {
                "vmid": int(parts[0]),
                "status": parts[1],
                "name": parts[-1] if len(parts) >= 3 else "",
            }
        )
    return entries


def parse_qm_list(output: str) -> list[dict]:
    """Parse ``qm list`` (VMID, NAME, STATUS, MEM(MB), BOOTDISK(GB), PID)."""
    entries = []
    for line in (output or "").splitlines()[1:]:
        parts = line.split()
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        entries.append({"vmid": int(parts[0]), "name": parts[1], "status": parts[2]})
    return entries


def _kib_to_bytes(value: str) -> Optional[int]:
    try:
        return int(value) * 1024
    except (TypeError, ValueError):
        return None


def parse_pvesm_status(output: str) -> list[dict]:
    """Parse ``pvesm status`` (Name, Type, Status, Total, Used, Available, %).

    Total/Used/Available are reported in KiB and converted to bytes.
    """
    entries = []
    for line in (output or "").splitlines():
        parts = line.split()
        if len(parts) < 3 or parts[0] == "Name":
            continue
        entries.append(
            {
                "name": parts[0],
                "type": parts[1],
                "active": parts[2] == "active",
                "total_bytes": _kib_to_bytes(parts[3]) if len(parts) > 3 else None,
                "used_bytes": _kib_to_bytes(parts[4]) if len(parts) > 4 else None,
                "available_bytes": _kib_to_bytes(parts[5]) if len(parts) > 5 else None,
            }
        )
    return entries


def parse_pvesm_list(output: str) -> list[dict]:
    """Parse ``pvesm list <storage>`` (Volid, Format, Type, Size, VMID)."""
    entries = []
    for line in (output or "").splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] == "Volid" or ":" not in parts[0]:
            continue
        vmid = None
        size = None
        if len(parts) >= 5 and parts[-1].isdigit():
            vmid = int(parts[-1])
            if parts[-2].isdigit():
                size = int(parts[-2])
        elif parts[-1].isdigit():
            size = int(parts[-1])
        entries.append(
            {
                "volid": parts[0],
                "format": parts[1] if len(parts) >= 4 else "",
                "type": parts[2] if len(parts) >= 5 else "",
                "size": size,
                "vmid": vmid,
            }
        )
    return entries


def parse_storage_cfg(text: str) -> dict[str, dict[str, str]]:
    """Parse /etc/pve/storage.cfg into ``{name: {"type": ..., key: value}}``.

    Example section::

        zfspool: local-zfs
                pool rpool/data
                content images,rootdir
    """
    storages: dict[str, dict[str, str]] = {}
    current: Optional[dict[str, str]] = None
    for raw_line in (text or "").splitlines():
        line = raw_line.rstrip()
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if not raw_line[0].isspace() and ":" in line:
            storage_type, _, name = line.partition(":")
            current = {"type": storage_type.strip()}
            storages[name.strip()] = current
            continue
        if current is None:
            continue
        key, _, value = line.strip().partition(" ")
        # flag options such as "sparse" carry no value
        current[key] = value.strip() if value else "1"
    return storages


def parse_content(value: Optional[str]) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def parse_entity_config(text: str) -> EntityConfig:
    """Parse a PVE guest config, stopping at the first snapshot section."""
    values: dict[str, str] = {}
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if line.startswith("["):
            break
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, _, value = line.partition(":")
        values.setdefault(key.strip(), value.strip())
    return EntityConfig(values=values)


def parse_volume_spec(spec: Optional[str]) -> tuple[Optional[str], Optional[str], dict[str, str]]:
    """Split ``local-zfs:subvol-105-disk-0,size=8G`` into its parts.

    Returns:
        (storage name, volume name, options). Bind-mount style specs without
        a storage prefix (``/mnt/data,mp=/data``) return (None, path, options).
    """
    if not spec:
        return None, None, {}
    head, *option_parts = spec.split(",")
    options: dict[str, str] = {}
    for part in option_parts:
        key, sep, value = part.partition("=")
        if sep:
            options[key.strip()] = value.strip()
    head = head.strip()
    if head.startswith("volume="):
        head = head[len("volume="):]
    if head.startswith("/") or ":" not in head:
        return None, head or None, options
    storage, _, volume = head.partition(":")
    return storage.strip() or None, volume.strip() or None, options


def parse_vzdump_archive(output: str) -> Optional[Path]:
    """Recover the archive path that vzdump reports having written."""
    for pattern in _ARCHIVE_RES:
        match = pattern.search(output or "")
        if match:
            return Path(match.group(1))
    return None


def parse_zfs_value(output: str) -> Optional[int]:
    """Parse ``zfs get -H -p -o value <prop>``; ``-``/``none`` mean unset."""
    value = (output or "").strip().splitlines()
    if not value:
        return None
    value = value[0].strip()
    if not value.isdigit():
        return None
    return int(value)


def parse_zfs_mountpoints(output: str) -> list[tuple[str, str]]:
    """Parse ``zfs list -H -o name,mountpoint`` into (dataset, mountpoint)."""
    datasets = []
    for line in (output or "").splitlines():
        parts = line.split("\t") if "\t" in line else line.split()
        if len(parts) < 2:
            continue
        datasets.append((parts[0].strip(), parts[1].strip()))
    return datasets
