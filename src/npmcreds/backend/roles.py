"""Role definitions controlling how credentials are minted."""

from __future__ import annotations

import re
from ipaddress import ip_network
from typing import Optional

import structlog

from ..common.errors import MissingField, ValidationError
from ..common.schemas import RoleEntry, RoleWriteRequest
from .storage import Storage, read_model, write_model

LOGGER = structlog.get_logger("npmcreds.roles")

ROLE_PREFIX = "role/"
NAME_PATTERN = r"\w(([\w.-]+)?\w)?"
_NAME_RE = re.compile(NAME_PATTERN)


def validate_role_name(name: str) -> str:
    if not name:
        raise MissingField("name")
    if not _NAME_RE.fullmatch(name):
        raise ValidationError(f"invalid role name: {name!r}")
    return name


def parse_cidr_whitelist(value: Optional[str]) -> list[str]:
    """Split a comma separated CIDR list, rejecting malformed entries."""

    if not value:
        return []
    blocks: list[str] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            blocks.append(str(ip_network(item, strict=False)))
        except ValueError as exc:
            raise ValidationError(f"invalid cidr_whitelist entry: {item!r}") from exc
    return blocks


def _role_key(name: str) -> str:
    return f"{ROLE_PREFIX}{name}"


async def get_role(storage: Storage, name: str) -> Optional[RoleEntry]:
    return await read_model(storage, _role_key(name), RoleEntry)


async def list_roles(storage: Storage) -> list[str]:
    return await storage.list(ROLE_PREFIX)


async def upsert_role(storage: Storage, name: str, request: RoleWriteRequest) -> RoleEntry:
    validate_role_name(name)
    if not request.password:
        raise ValidationError("missing password")
    cidrs = parse_cidr_whitelist(request.cidr_whitelist)
    entry = RoleEntry(
        password=request.password,
        readonly=request.readonly,
        cidr_whitelist=",".join(cidrs) or None,
    )
    await write_model(storage, _role_key(name), entry)
    LOGGER.info("Role written", role=name, readonly=entry.readonly, cidr_whitelist=entry.cidr_whitelist)
    return entry


async def delete_role(storage: Storage, name: str) -> None:
    validate_role_name(name)
    await storage.delete(_role_key(name))
    LOGGER.info("Role deleted", role=name)
