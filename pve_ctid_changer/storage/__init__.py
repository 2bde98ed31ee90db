"""Storage resolution, provisioning and capacity checks."""

from .capacity import CapacityChecker
from .resolver import StorageResolver, primary_disk_spec

__all__ = ["CapacityChecker", "StorageResolver", "primary_disk_spec"]
