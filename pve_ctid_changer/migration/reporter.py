"""User-facing reporting of migration progress and failures.

All output goes through loguru, so every line lands both on the colored
console sink and in the append-only log file.
"""
from __future__ import annotations

from pve_ctid_changer.domain import MigrationResult, MigrationState
from pve_ctid_changer.exceptions import MigrationError
from pve_ctid_changer.logging import LoggerFactory

START_FAILURE_HINT = "Check 'journalctl -u pve*' and the task log in the web UI"

STATE_DESCRIPTIONS = {
    MigrationState.STOPPED: "stopped",
    MigrationState.BACKED_UP: "backed up",
    MigrationState.RESTORED: "restored",
    MigrationState.STARTED: "started",
    MigrationState.VERIFIED: "verified running",
    MigrationState.OLD_DESTROYED: "old ID destroyed",
}


class MigrationReporter:
    """Record state transitions on a result and log them."""

    def __init__(self, log=None):
        self.log = log or LoggerFactory.for_migration()

    def transition(self, result: MigrationResult, state: MigrationState, detail: str = "") -> None:
        result.transitions.append(state)
        result.state = state
        message = f"[{state.name}] {STATE_DESCRIPTIONS.get(state, state.value)}"
        if detail:
            message += f": {detail}"
        self.log.info(message)

    def step(self, message: str) -> None:
        self.log.info(message)

    def detail(self, message: str) -> None:
        self.log.debug(message)

    def warning(self, message: str) -> None:
        self.log.warning(message)

    def plan(self, lines) -> None:
        self.log.info("Dry run, no changes will be made. Planned steps:")
        for number, line in enumerate(lines, start=1):
            self.log.info(f"  {number}. {line}")

    def success(self, result: MigrationResult) -> None:
        request = result.request
        self.log.success(
            f"{request.current.kind.label} {request.current.entity_id} is now running "
            f"as {request.new_id}"
        )

    def failure(self, error: BaseException) -> None:
        """Log a failure naming the step, the reason and any hint."""
        step = getattr(error, "step", "migration")
        self.log.error(f"Step '{step}' failed: {error}")
        hint = getattr(error, "hint", None)
        if hint:
            self.log.error(f"Hint: {hint}")
        if isinstance(error, MigrationError) and error.exit_code == 1:
            return
        self.log.info("The original container/VM has not been destroyed")
