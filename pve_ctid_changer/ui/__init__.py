"""Interactive selection menus."""

from .menus import (
    TextMenu,
    WhiptailMenu,
    ask_new_identifier,
    build_menu,
    choose_entity,
    choose_storage,
)

__all__ = [
    "TextMenu",
    "WhiptailMenu",
    "ask_new_identifier",
    "build_menu",
    "choose_entity",
    "choose_storage",
]
