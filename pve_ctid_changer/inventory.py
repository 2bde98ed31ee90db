"""Entity inventory and selection of the (current, new) identifier pair."""
from __future__ import annotations

import os
import re
from typing import Callable, Optional

from pve_ctid_changer.config.settings import MigrationConfig
from pve_ctid_changer.domain import EntityKind, ManagedEntity, MigrationRequest
from pve_ctid_changer.exceptions import (
    CommandError,
    EntityNotFoundError,
    IdentifierInUseError,
    InvalidIdentifierError,
    InventoryError,
    MissingToolError,
    NoEntitiesError,
    PrivilegeError,
)
from pve_ctid_changer.logging import LoggerFactory
from pve_ctid_changer.platform import CONTAINER_TOOLS, VM_TOOLS, is_tool, missing_tools
from pve_ctid_changer.ui import ask_new_identifier, choose_entity

log = LoggerFactory.for_inventory()

IDENTIFIER_RE = re.compile(r"^[0-9]+$")


def check_environment(geteuid: Callable[[], int] = os.geteuid) -> None:
    """Fail fast when not root or when the container tools are missing.

    VM tools are only required when ``qm`` is present at all, so a
    container-only host still passes.
    """
    if geteuid() != 0:
        raise PrivilegeError()
    required = list(CONTAINER_TOOLS)
    if is_tool("qm"):
        required += [tool for tool in VM_TOOLS if tool != "qm"]
    missing = missing_tools(required)
    if missing:
        raise MissingToolError(missing)


def list_entities(platform) -> list[ManagedEntity]:
    try:
        entities = platform.list_entities()
    except CommandError as error:
        raise InventoryError(str(error)) from error
    if not entities:
        raise NoEntitiesError()
    log.debug(f"Found {len(entities)} container(s)/VM(s)")
    return entities


def parse_identifier(value) -> int:
    """Parse an identifier, which must be a positive decimal integer."""
    text = str(value).strip()
    if not IDENTIFIER_RE.match(text):
        raise InvalidIdentifierError(text)
    identifier = int(text)
    if identifier <= 0:
        raise InvalidIdentifierError(text)
    return identifier


def resolve_current(platform, entity_id: int) -> ManagedEntity:
    try:
        entity = platform.get_entity(entity_id)
    except CommandError as error:
        raise InventoryError(str(error)) from error
    if entity is None:
        raise EntityNotFoundError(entity_id)
    return entity


def validate_new_identifier(platform, new_id: int, current_id: Optional[int] = None) -> int:
    """Check live that ``new_id`` is free in both the CT and VM namespaces."""
    if current_id is not None and new_id == current_id:
        raise InvalidIdentifierError(str(new_id), f"must differ from the current ID {current_id}")
    kind = platform.entity_kind(new_id)
    if kind is not None:
        status = ""
        try:
            status = platform.get_status(new_id, kind).value
        except CommandError as error:
            log.debug(f"Could not query status of {new_id}: {error}")
        raise IdentifierInUseError(new_id, status)
    return new_id


class EntitySelector:
    """Produce one validated MigrationRequest from arguments or menus.

    Positional arguments are validated once and fail fast; interactive input
    re-prompts until it is usable.
    """

    def __init__(self, platform, config: MigrationConfig, menu=None):
        self.platform = platform
        self.config = config
        self.menu = menu

    def _select_current(self, current_arg) -> ManagedEntity:
        if current_arg is not None:
            return resolve_current(self.platform, parse_identifier(current_arg))
        entities = list_entities(self.platform)
        while True:
            entity_id = choose_entity(self.menu, entities)
            entity = self.platform.get_entity(entity_id)
            if entity is not None:
                return entity
            log.warning(f"Container or VM {entity_id} no longer exists")

    def _select_new(self, current: ManagedEntity, new_arg) -> int:
        def validate(raw) -> int:
            return validate_new_identifier(
                self.platform, parse_identifier(raw), current.entity_id
            )

        if new_arg is not None:
            return validate(new_arg)
        return ask_new_identifier(self.menu, current.entity_id, validate)

    def select(self, current_arg=None, new_arg=None) -> MigrationRequest:
        current = self._select_current(current_arg)
        log.info(
            f"Selected {current.kind.label} {current.entity_id} "
            f"({current.name or 'unnamed'}, {current.status.value})"
        )
        new_id = self._select_new(current, new_arg)
        if current.kind is EntityKind.VIRTUAL_MACHINE:
            missing = missing_tools(VM_TOOLS)
            if missing:
                raise MissingToolError(missing)
        request = MigrationRequest(current=current, new_id=new_id)
        try:
            request.validate()
        except ValueError as error:
            raise InvalidIdentifierError(str(new_id), str(error)) from error
        log.info(f"Changing ID {current.entity_id} -> {new_id}")
        return request
