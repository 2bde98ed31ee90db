"""Adapter layer over the Proxmox VE command-line tools.

Everything that spawns a process or parses CLI text lives in this package:

    - ProxmoxPlatform: pct/qm/vzdump/pvesm/zfs operations
    - parsers: text output and config file parsers
    - command_runners: subprocess helpers
"""

from .command_runners import (
    is_tool,
    missing_tools,
    run_checked_command,
    run_command,
    run_succeeds,
)
from .proxmox import CONTAINER_TOOLS, VM_TOOLS, ProxmoxPlatform

__all__ = [
    "CONTAINER_TOOLS",
    "VM_TOOLS",
    "ProxmoxPlatform",
    "is_tool",
    "missing_tools",
    "run_checked_command",
    "run_command",
    "run_succeeds",
]
