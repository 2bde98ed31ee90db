"""Command execution utilities for the Proxmox command-line surface."""

import shutil
import subprocess

from pve_ctid_changer.exceptions import CommandError
from pve_ctid_changer.logging import LoggerFactory


log = LoggerFactory.for_platform()


def run_command(command, input_text=None):
    """Run a command and return the CompletedProcess, whatever its exit code."""
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError:
        log.debug(f"Command not found: {command[0]}")
        return subprocess.CompletedProcess(
            command, 127, stdout="", stderr=f"{command[0]}: command not found"
        )
    log.debug(f"Command exited with code {result.returncode}: {command[0]}")
    if result.stdout:
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        log.trace(f"stderr: {result.stderr.strip()}")
    return result


def run_checked_command(command, input_text=None):
    """Run a command and raise CommandError if it fails."""
    result = run_command(command, input_text=input_text)
    if result.returncode != 0:
        raise CommandError(
            command,
            result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
    return result.stdout


def run_succeeds(command):
    """Run a command and report only whether it exited with code 0."""
    return run_command(command).returncode == 0


def is_tool(name):
    """Check whether a command-line tool is on PATH."""
    return shutil.which(name) is not None


def missing_tools(names):
    """Return the subset of ``names`` that is not on PATH, in order."""
    return [name for name in names if not is_tool(name)]


__all__ = [
    "run_command",
    "run_checked_command",
    "run_succeeds",
    "is_tool",
    "missing_tools",
]
