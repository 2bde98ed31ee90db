"""Operator menus: whiptail dialogs with a plain-text fallback.

Both menu types expose the same two calls:

    - choose(title, prompt, items) -> key of the selected item
    - ask(title, prompt) -> entered text

and raise ``SelectionCancelledError`` when the operator cancels (Esc, Cancel
or end of input).
"""
from __future__ import annotations

import subprocess
import sys
from typing import Callable, Optional, Sequence, TextIO

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import ManagedEntity, StorageBackend
from pve_ctid_changer.exceptions import (
    SelectionCancelledError,
    ValidationError,
)
from pve_ctid_changer.logging import LoggerFactory
from pve_ctid_changer.platform import is_tool, run_command

log = LoggerFactory.for_inventory()

MenuItem = tuple[str, str]

WHIPTAIL_HEIGHT = 20
WHIPTAIL_WIDTH = 70
WHIPTAIL_LIST_HEIGHT = 10


class WhiptailMenu:
    """Dialog menus drawn by whiptail.

    whiptail draws on the terminal and writes the selection to stderr, so
    stdout is left attached to the terminal and stderr is captured.
    """

    def __init__(self, runner: Callable = subprocess.run):
        self._run = runner

    def _dialog(self, args: Sequence[str], what: str) -> str:
        result = self._run(
            ["whiptail", *args],
            stderr=subprocess.PIPE,
            text=True,
        )
        if result.returncode != 0:
            raise SelectionCancelledError(what)
        return (result.stderr or "").strip()

    def choose(self, title: str, prompt: str, items: Sequence[MenuItem]) -> str:
        args = [
            "--title",
            title,
            "--menu",
            prompt,
            str(WHIPTAIL_HEIGHT),
            str(WHIPTAIL_WIDTH),
            str(WHIPTAIL_LIST_HEIGHT),
        ]
        for key, label in items:
            args += [key, label]
        return self._dialog(args, title)

    def ask(self, title: str, prompt: str) -> str:
        args = ["--title", title, "--inputbox", prompt, "10", str(WHIPTAIL_WIDTH)]
        return self._dialog(args, title)

    def notify(self, title: str, message: str) -> None:
        self._run(
            ["whiptail", "--title", title, "--msgbox", message, "10", str(WHIPTAIL_WIDTH)],
            stderr=subprocess.PIPE,
            text=True,
        )


class TextMenu:
    """Numbered plain-text prompts for terminals without whiptail."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output: Optional[TextIO] = None,
    ):
        self._input = input_func
        self._output = output or sys.stdout

    def _read(self, prompt: str, what: str) -> str:
        try:
            return self._input(prompt).strip()
        except EOFError:
            raise SelectionCancelledError(what) from None

    def _write(self, line: str = "") -> None:
        print(line, file=self._output)

    def choose(self, title: str, prompt: str, items: Sequence[MenuItem]) -> str:
        self._write(title)
        for index, (key, label) in enumerate(items, start=1):
            self._write(f"  {index}) {key}  {label}")
        keys = [key for key, _label in items]
        while True:
            answer = self._read(f"{prompt} ", title)
            if answer in keys:
                return answer
            if answer.isdigit() and 1 <= int(answer) <= len(items):
                return keys[int(answer) - 1]
            self._write(f"Invalid choice: {answer!r}")

    def ask(self, title: str, prompt: str) -> str:
        return self._read(f"{prompt} ", title)

    def notify(self, title: str, message: str) -> None:
        self._write(f"{title}: {message}")


def whiptail_available() -> bool:
    """True if whiptail is installed and passes a self-test."""
    if not is_tool("whiptail"):
        return False
    return run_command(["whiptail", "--version"]).returncode == 0


def try_install_whiptail() -> bool:
    log.info("whiptail not found, attempting to install it")
    result = run_command(["apt-get", "install", "-y", "whiptail"])
    if result.returncode != 0:
        log.warning("Could not install whiptail, using text prompts")
        return False
    return whiptail_available()


def _is_tty() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def build_menu(config: MigrationConfig, *, is_tty: Callable[[], bool] = _is_tty):
    """Pick the best menu for the current terminal."""
    if not config.use_dialog or not is_tty():
        return TextMenu()
    if whiptail_available():
        return WhiptailMenu()
    if config.install_dialog_tool and try_install_whiptail():
        return WhiptailMenu()
    log.debug("Falling back to text prompts")
    return TextMenu()


# ==============================================================================
# Helpers
# ==============================================================================


def choose_entity(menu, entities: Sequence[ManagedEntity]) -> int:
    items = [(str(entity.entity_id), entity.format_label()) for entity in entities]
    key = menu.choose(
        "Select Container/VM",
        "Choose the container or VM whose ID should change:",
        items,
    )
    return int(key)


def choose_storage(menu, storages: Sequence[StorageBackend]) -> StorageBackend:
    by_name = {storage.name: storage for storage in storages}
    items = [(storage.name, storage.format_label()) for storage in storages]
    key = menu.choose(
        "Select Backup Storage",
        "Several storages accept backups. Choose one:",
        items,
    )
    return by_name[key]


def ask_new_identifier(menu, current_id: int, validate: Callable[[str], int]) -> int:
    """Prompt until ``validate`` accepts the entered identifier.

    ``validate`` parses and checks the raw text, raising a ValidationError
    for anything unusable. Cancellation propagates.
    """
    while True:
        raw = menu.ask("New ID", f"Enter the new ID for {current_id}:")
        try:
            return validate(raw)
        except SelectionCancelledError:
            raise
        except ValidationError as error:
            log.warning(str(error))
            menu.notify("Invalid ID", str(error))
