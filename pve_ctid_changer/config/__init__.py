"""Configuration loading for pve-ctid-changer."""
