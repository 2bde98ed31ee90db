"""Custom exceptions for ID migration operations.

This module defines a hierarchy of exceptions for the migration flow. Every
exception carries an ``exit_code`` so that ``main()`` can tell calling
automation whether a failure was caused by bad input (1) or by the
infrastructure (2).

Exception Hierarchy:
    MigrationError (base, exit 2)
        ├── EntityConfigError
        ├── InventoryError
        ├── ValidationError (exit 1)
        │   ├── InvalidIdentifierError
        │   ├── EntityNotFoundError
        │   ├── IdentifierInUseError
        │   ├── NoEntitiesError
        │   ├── SelectionCancelledError
        │   ├── MissingToolError
        │   └── PrivilegeError
        ├── StorageError
        │   ├── StorageNotFoundError
        │   ├── StorageUnavailableError
        │   ├── StorageQueryError
        │   └── StorageProvisioningError
        ├── CapacityError
        │   ├── InsufficientSpaceError
        │   └── CapacityUndeterminedError
        └── OperationError
            ├── StopFailedError
            ├── BackupFailedError
            ├── RestoreFailedError
            ├── StartFailedError
            ├── VerificationFailedError
            └── DestroyFailedError

    CommandError (RuntimeError): raised by the command runner

Usage:
    from pve_ctid_changer.exceptions import IdentifierInUseError

    if platform.entity_exists(new_id):
        raise IdentifierInUseError(new_id)
"""

from __future__ import annotations

from typing import Optional, Sequence


EXIT_SUCCESS = 0
EXIT_VALIDATION = 1
EXIT_OPERATIONAL = 2


class CommandError(RuntimeError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        message = self.stderr.strip() or self.stdout.strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as a user would have seen it."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part).strip()


class MigrationError(Exception):
    """Base exception for all migration failures."""

    exit_code = EXIT_OPERATIONAL
    step = "migration"
    hint: Optional[str] = None


class EntityConfigError(MigrationError):
    """An entity config file is missing or lacks a required line."""

    step = "config"

    def __init__(self, config_path, reason: str):
        self.config_path = config_path
        self.reason = reason
        super().__init__(f"{reason}: {config_path}")


class InventoryError(MigrationError):
    """Containers and VMs could not be listed or queried."""

    step = "inventory"
    hint = "Check that the cluster filesystem is up: 'systemctl status pve-cluster'"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Could not query containers/VMs: {reason}")


# ==============================================================================
# Validation (exit 1)
# ==============================================================================


class ValidationError(MigrationError):
    """Base exception for user input and precondition failures."""

    exit_code = EXIT_VALIDATION
    step = "validation"


class InvalidIdentifierError(ValidationError):
    """Identifier is not a positive integer."""

    def __init__(self, value: str, reason: str = "must be a positive integer"):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid identifier {value!r}: {reason}")


class EntityNotFoundError(ValidationError):
    """No container or VM exists under the identifier."""

    def __init__(self, entity_id: int):
        self.entity_id = entity_id
        super().__init__(f"Container or VM with ID {entity_id} does not exist")


class IdentifierInUseError(ValidationError):
    """The requested new identifier is already taken."""

    def __init__(self, entity_id: int, status: str = ""):
        self.entity_id = entity_id
        self.status = status
        msg = f"ID {entity_id} is already in use"
        if status:
            msg += f" (status: {status})"
        super().__init__(msg)


class NoEntitiesError(ValidationError):
    """The platform reported no containers or VMs."""

    def __init__(self):
        super().__init__("No containers or VMs found on this system")


class SelectionCancelledError(ValidationError):
    """The operator cancelled a menu or prompt."""

    def __init__(self, what: str = "Selection"):
        self.what = what
        super().__init__(f"{what} cancelled")


class MissingToolError(ValidationError):
    """A required command-line tool is not installed."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(
            f"Required tool(s) not found: {', '.join(self.tools)}. "
            "Is this a Proxmox VE host?"
        )


class PrivilegeError(ValidationError):
    """The tool was started without root privileges."""

    def __init__(self):
        super().__init__("This tool must be run as root")


# ==============================================================================
# Storage (exit 2)
# ==============================================================================


class StorageError(MigrationError):
    """Base exception for storage resolution and provisioning failures."""

    step = "storage"


class StorageNotFoundError(StorageError):
    """A storage named by an entity config is not registered."""

    def __init__(self, storage_name: str, entity_id: Optional[int] = None):
        self.storage_name = storage_name
        self.entity_id = entity_id
        msg = f"Storage '{storage_name}' is not registered"
        if entity_id is not None:
            msg = f"Storage '{storage_name}' used by {entity_id} is not registered"
        super().__init__(msg)


class StorageUnavailableError(StorageError):
    """A storage exists but its path cannot be resolved or is not mounted."""

    def __init__(self, storage_name: str, reason: str):
        self.storage_name = storage_name
        self.reason = reason
        super().__init__(f"Storage '{storage_name}' is not accessible: {reason}")


class StorageQueryError(StorageError):
    """The storage registry could not be queried (pvesm failed)."""

    hint = "Check 'pvesm status' and that pvestatd is running"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Could not query storages: {reason}")


class StorageProvisioningError(StorageError):
    """No backup-capable storage could be found or created."""

    hint = (
        "Configure a storage with 'backup' content, e.g. "
        "'zfs create rpool/backup' followed by "
        "'pvesm add dir zfs-backup --path /rpool/backup --content backup "
        "--is_mountpoint yes', or 'pvesm set <storage> --content backup'."
    )

    def __init__(self, attempts: Sequence[str] = ()):
        self.attempts = list(attempts)
        msg = "No storage available for backups"
        if self.attempts:
            msg += f" (tried: {'; '.join(self.attempts)})"
        super().__init__(msg)


# ==============================================================================
# Capacity (exit 2)
# ==============================================================================


class CapacityError(MigrationError):
    """Base exception for free-space checks."""

    step = "capacity"


class InsufficientSpaceError(CapacityError):
    """Storage has less free space than the migration requires."""

    def __init__(self, storage_name: str, required_bytes: int, available_bytes: int):
        self.storage_name = storage_name
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Insufficient disk space on storage '{storage_name}'. "
            f"Required: {required_bytes // (1024 * 1024)} MB, "
            f"Available: {available_bytes // (1024 * 1024)} MB"
        )


class CapacityUndeterminedError(CapacityError):
    """Free space on a storage could not be measured."""

    def __init__(self, storage_name: str, reason: str = ""):
        self.storage_name = storage_name
        self.reason = reason
        msg = f"Could not determine available space for storage '{storage_name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# ==============================================================================
# Operations (exit 2)
# ==============================================================================


class OperationError(MigrationError):
    """Base exception for stop/backup/restore/start/destroy failures."""

    def __init__(self, message: str, entity_id: Optional[int] = None, hint: str = None):
        self.entity_id = entity_id
        if hint:
            self.hint = hint
        super().__init__(message)


class StopFailedError(OperationError):
    step = "stop"


class BackupFailedError(OperationError):
    step = "backup"


class RestoreFailedError(OperationError):
    step = "restore"


class StartFailedError(OperationError):
    step = "start"


class VerificationFailedError(OperationError):
    step = "verify"


class DestroyFailedError(OperationError):
    """The old identifier could not be removed after a verified migration."""

    step = "destroy"
