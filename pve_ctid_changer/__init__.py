"""Change the numeric ID of a Proxmox VE container or VM via backup and restore."""

from .__version__ import __version__

__all__ = ["__version__"]
