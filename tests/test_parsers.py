"""Tests for Proxmox CLI output and config file parsers."""
from pathlib import Path

import pytest

from pve_ctid_changer.domain import EntityStatus
from pve_ctid_changer.platform import parsers

PCT_LIST = """\
VMID       Status     Lock         Name
105        running                 web01
106        stopped    backup       mail
"""

QM_LIST = """\
      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       200 db01                 running    4096              32.00 1234
"""

PVESM_STATUS = """\
Name             Type     Status           Total            Used       Available        %
local             dir     active        98497780        12345678        81085816   12.53%
local-zfs     zfspool     active       450000000        20000000       430000000    4.44%
nas               nfs   inactive               0               0               0    0.00%
"""

PVESM_LIST = """\
Volid                                                  Format  Type      Size VMID
local:backup/vzdump-lxc-105-2024_05_01-10_00_00.tar.zst tar.zst backup 123456 105
local-zfs:subvol-105-disk-0                            subvol  rootdir 8589934592 105
"""

STORAGE_CFG = """\
dir: local
\tpath /var/lib/vz
\tcontent iso,vztmpl,backup

zfspool: local-zfs
\tpool rpool/data
\tcontent images,rootdir
\tsparse

nfs: nas
\texport /export/pve
\tserver 10.0.0.5
\tcontent backup
"""

LXC_CONF = """\
arch: amd64
hostname: web01
rootfs: local-zfs:subvol-105-disk-0,size=8G
unprivileged: 1

[before-upgrade]
hostname: old-name
rootfs: local-zfs:subvol-105-disk-0,size=4G
"""


class TestParseSize:
    """Tests for parse_size()."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("8G", 8 * 1024**3),
            ("512M", 512 * 1024**2),
            ("1T", 1024**4),
            ("64K", 64 * 1024),
            ("32", 32 * 1024**3),
            ("1.5G", int(1.5 * 1024**3)),
            ("100B", 100),
            ("2GiB", 2 * 1024**3),
        ],
    )
    def test_valid_sizes(self, value, expected):
        assert parsers.parse_size(value) == expected

    @pytest.mark.parametrize("value", [None, "", "big", "8X"])
    def test_invalid_sizes(self, value):
        assert parsers.parse_size(value) is None


class TestEntityListings:
    """Tests for pct/qm list and status parsing."""

    def test_parse_pct_list(self):
        entries = parsers.parse_pct_list(PCT_LIST)

        assert entries == [
            {"vmid": 105, "status": "running", "name": "web01"},
            {"vmid": 106, "status": "stopped", "name": "mail"},
        ]

    def test_parse_qm_list(self):
        assert parsers.parse_qm_list(QM_LIST) == [
            {"vmid": 200, "name": "db01", "status": "running"}
        ]

    def test_parse_status(self):
        assert parsers.parse_status("status: running\n") is EntityStatus.RUNNING
        assert parsers.parse_status("garbage") is EntityStatus.UNKNOWN


class TestStorageParsing:
    """Tests for pvesm and storage.cfg parsing."""

    def test_parse_pvesm_status_converts_kib(self):
        entries = parsers.parse_pvesm_status(PVESM_STATUS)

        assert [entry["name"] for entry in entries] == ["local", "local-zfs", "nas"]
        assert entries[0]["available_bytes"] == 81085816 * 1024
        assert entries[2]["active"] is False

    def test_parse_pvesm_list(self):
        entries = parsers.parse_pvesm_list(PVESM_LIST)

        assert entries[0]["volid"].endswith(".tar.zst")
        assert entries[0]["size"] == 123456
        assert entries[0]["vmid"] == 105
        assert entries[1]["size"] == 8589934592

    def test_parse_storage_cfg(self):
        storages = parsers.parse_storage_cfg(STORAGE_CFG)

        assert storages["local"] == {
            "type": "dir",
            "path": "/var/lib/vz",
            "content": "iso,vztmpl,backup",
        }
        assert storages["local-zfs"]["pool"] == "rpool/data"
        assert storages["local-zfs"]["sparse"] == "1"
        assert storages["nas"]["type"] == "nfs"

    def test_parse_content(self):
        assert parsers.parse_content("images, rootdir") == frozenset({"images", "rootdir"})
        assert parsers.parse_content(None) == frozenset()


class TestConfigParsing:
    """Tests for guest config and volume spec parsing."""

    def test_snapshot_sections_ignored(self):
        """Test values come from the current config, not snapshots."""
        config = parsers.parse_entity_config(LXC_CONF)

        assert config.hostname == "web01"
        assert config.rootfs == "local-zfs:subvol-105-disk-0,size=8G"
        assert config.unprivileged is True

    def test_parse_volume_spec(self):
        assert parsers.parse_volume_spec("local-zfs:subvol-105-disk-0,size=8G") == (
            "local-zfs",
            "subvol-105-disk-0",
            {"size": "8G"},
        )

    def test_bind_mount_has_no_storage(self):
        storage, volume, options = parsers.parse_volume_spec("/mnt/data,mp=/data")

        assert storage is None
        assert volume == "/mnt/data"
        assert options == {"mp": "/data"}

    def test_volume_prefix(self):
        storage, volume, _options = parsers.parse_volume_spec("volume=local:105/disk.raw,size=4G")
        assert (storage, volume) == ("local", "105/disk.raw")


class TestToolOutput:
    """Tests for vzdump and zfs output parsing."""

    def test_vzdump_archive_path(self):
        output = (
            "INFO: starting new backup job: vzdump 105 --compress zstd\n"
            "INFO: creating vzdump archive '/var/lib/vz/dump/vzdump-lxc-105-2024_05_01-10_00_00.tar.zst'\n"
            "INFO: Finished Backup of VM 105 (00:00:12)\n"
        )
        assert parsers.parse_vzdump_archive(output) == Path(
            "/var/lib/vz/dump/vzdump-lxc-105-2024_05_01-10_00_00.tar.zst"
        )

    def test_vzdump_archive_variant(self):
        output = "INFO: creating archive '/mnt/backup/dump/vzdump-lxc-105-2024_05_01-10_00_00.tar.zst'"
        assert parsers.parse_vzdump_archive(output).name.startswith("vzdump-lxc-105")

    def test_vzdump_without_archive(self):
        assert parsers.parse_vzdump_archive("ERROR: Backup of VM 105 failed") is None

    @pytest.mark.parametrize("output, expected", [("1234\n", 1234), ("-\n", None), ("none", None), ("", None)])
    def test_parse_zfs_value(self, output, expected):
        assert parsers.parse_zfs_value(output) == expected

    def test_parse_zfs_mountpoints(self):
        output = "rpool\t/rpool\nrpool/data\t/rpool/data\n"
        assert parsers.parse_zfs_mountpoints(output) == [
            ("rpool", "/rpool"),
            ("rpool/data", "/rpool/data"),
        ]
