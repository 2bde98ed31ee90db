"""Settings storage for migration configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "PVE_CTID_CHANGER_SETTINGS_PATH",
        "/etc/pve-ctid-changer.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SIZE_BYTES = 10 * 1024**3
DEFAULT_READINESS_ATTEMPTS = 5
DEFAULT_READINESS_BACKOFF = 1.0
DEFAULT_VERIFY_ATTEMPTS = 5
DEFAULT_VERIFY_INTERVAL = 2.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "log_file": "/var/log/change_ct_id.log",
    "backup_compress": "zstd",
    "backup_mode": "snapshot",
    "keep_backup": True,
    "provision_backup_storage": True,
    "install_dialog_tool": True,
    "default_size_bytes": DEFAULT_SIZE_BYTES,
    "readiness_attempts": DEFAULT_READINESS_ATTEMPTS,
    "readiness_backoff_seconds": DEFAULT_READINESS_BACKOFF,
    "verify_attempts": DEFAULT_VERIFY_ATTEMPTS,
    "verify_interval_seconds": DEFAULT_VERIFY_INTERVAL,
    "lxc_config_dir": "/etc/pve/lxc",
    "qemu_config_dir": "/etc/pve/qemu-server",
    "storage_config_path": "/etc/pve/storage.cfg",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class MigrationConfig:
    """Explicit configuration handed to every component of a run.

    Built once in ``main()`` from the settings file and the command line;
    components never read the environment or the settings store themselves.
    """

    log_file: Path = Path(DEFAULT_SETTINGS["log_file"])
    verbose: bool = False
    dry_run: bool = False
    interactive: bool = True
    use_dialog: bool = True
    install_dialog_tool: bool = True
    backup_compress: str = "zstd"
    backup_mode: str = "snapshot"
    keep_backup: bool = True
    provision_backup_storage: bool = True
    default_size_bytes: int = DEFAULT_SIZE_BYTES
    readiness_attempts: int = DEFAULT_READINESS_ATTEMPTS
    readiness_backoff_seconds: float = DEFAULT_READINESS_BACKOFF
    verify_attempts: int = DEFAULT_VERIFY_ATTEMPTS
    verify_interval_seconds: float = DEFAULT_VERIFY_INTERVAL
    lxc_config_dir: Path = Path(DEFAULT_SETTINGS["lxc_config_dir"])
    qemu_config_dir: Path = Path(DEFAULT_SETTINGS["qemu_config_dir"])
    storage_config_path: Path = Path(DEFAULT_SETTINGS["storage_config_path"])

    @classmethod
    def from_settings(cls, **overrides: Any) -> "MigrationConfig":
        """Create a config from the loaded settings, then apply overrides.

        Overrides set to None are ignored so that unset CLI options fall back
        to the settings file.
        """
        config = cls(
            log_file=Path(get_setting("log_file", DEFAULT_SETTINGS["log_file"])),
            install_dialog_tool=get_bool("install_dialog_tool", True),
            backup_compress=str(get_setting("backup_compress", "zstd")),
            backup_mode=str(get_setting("backup_mode", "snapshot")),
            keep_backup=get_bool("keep_backup", True),
            provision_backup_storage=get_bool("provision_backup_storage", True),
            default_size_bytes=get_int("default_size_bytes", DEFAULT_SIZE_BYTES),
            readiness_attempts=get_int(
                "readiness_attempts", DEFAULT_READINESS_ATTEMPTS
            ),
            readiness_backoff_seconds=get_float(
                "readiness_backoff_seconds", DEFAULT_READINESS_BACKOFF
            ),
            verify_attempts=get_int("verify_attempts", DEFAULT_VERIFY_ATTEMPTS),
            verify_interval_seconds=get_float(
                "verify_interval_seconds", DEFAULT_VERIFY_INTERVAL
            ),
            lxc_config_dir=Path(get_setting("lxc_config_dir", "/etc/pve/lxc")),
            qemu_config_dir=Path(
                get_setting("qemu_config_dir", "/etc/pve/qemu-server")
            ),
            storage_config_path=Path(
                get_setting("storage_config_path", "/etc/pve/storage.cfg")
            ),
        )
        known = {f.name for f in fields(cls)}
        applied = {
            key: value
            for key, value in overrides.items()
            if key in known and value is not None
        }
        return replace(config, **applied)


load_settings()
