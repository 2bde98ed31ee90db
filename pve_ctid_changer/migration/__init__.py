"""Backup/restore state machine and progress reporting."""

from .executor import MigrationExecutor
from .reporter import MigrationReporter

__all__ = ["MigrationExecutor", "MigrationReporter"]
