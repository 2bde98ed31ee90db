from __future__ import annotations

import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_FILE = Path("/var/log/change_ct_id.log")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]: <10} | "
    "{extra[job_id]: <18} | "
    "{message}"
)


def _is_command_trace(record) -> bool:
    return "command" in record["extra"].get("tags", [])


def _console_filter(record) -> bool:
    """Keep raw command output off the console unless it is DEBUG or above."""
    if _is_command_trace(record):
        return record["level"].no >= logger.level("DEBUG").no
    return True


def setup_logging(
    *,
    verbose: bool = False,
    log_file: Path | None = None,
    console: bool = True,
) -> Logger:
    """
    Setup console and persistent file logging.

    Logging Tiers:
    - ERROR: Fatal migration failures
    - WARNING: Post-success cleanup problems, degraded modes
    - SUCCESS/INFO: Every state transition of the migration
    - DEBUG: Resolved paths, byte counts, commands and exit codes (--verbose)
    - TRACE: Raw command output (--verbose, file only)

    The log file is append-only: it is never rotated, truncated or compressed
    by this tool.

    Args:
        verbose: Enable DEBUG on the console and TRACE in the log file
        log_file: Log file path (defaults to /var/log/change_ct_id.log)
        console: Add the colored stderr sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    console_level = "DEBUG" if verbose else "INFO"
    file_level = "TRACE" if verbose else "INFO"

    # SINK 1: Console (stderr) - colored, user-facing
    if console:
        logger.add(
            sys.stderr,
            level=console_level,
            backtrace=False,
            diagnose=False,
            filter=_console_filter,
            colorize=True,
            format=CONSOLE_FORMAT,
        )

    # SINK 2: Persistent log - timestamped history for post-mortem diagnosis
    log_file = log_file or DEFAULT_LOG_FILE
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=file_level,
            mode="a",
            backtrace=False,
            diagnose=False,
            format=FILE_FORMAT,
        )
    except OSError as error:
        logger.bind(source="system").warning(
            f"Cannot write log file {log_file}: {error}"
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a migration run
        tags: Tags for filtering (e.g., ["storage", "zfs"])
        source: Source component (e.g., "storage", "migrate")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking the migration run with automatic timing.

    Logs operation start, completion and failure with the elapsed time. Every
    log line emitted inside the block carries the same job_id.

    Example:
        with operation_context("migrate", current=105, new=150) as log:
            log.info("Stopping container 105")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        summary = ", ".join(f"{key}={value}" for key, value in details.items())
        log.info(f"{operation.capitalize()} started" + (f" ({summary})" if summary else ""))

        try:
            yield log
            duration = time.time() - start_time
            log.success(f"{operation.capitalize()} completed in {duration:.1f}s")
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed after {duration:.1f}s "
                f"({type(e).__name__})"
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one component of the migration flow.
    """

    @staticmethod
    def for_inventory() -> Logger:
        """Logger for entity enumeration and selection."""
        return logger.bind(source="inventory", tags=["inventory"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for storage resolution and provisioning."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_capacity() -> Logger:
        """Logger for free space estimation and quota handling."""
        return logger.bind(source="capacity", tags=["storage", "capacity"])

    @staticmethod
    def for_migration(job_id: str | None = None) -> Logger:
        """Logger for the backup/restore state machine."""
        if job_id is None:
            job_id = f"migrate-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="migrate", tags=["migrate"])

    @staticmethod
    def for_platform() -> Logger:
        """Logger for pct/qm/pvesm/vzdump/zfs invocations."""
        return logger.bind(source="platform", tags=["platform", "command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup checks and configuration."""
        return logger.bind(source="system", tags=["system"])
