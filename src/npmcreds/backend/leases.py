"""Lease policy configuration and the ledger of secrets handed out over HTTP."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from ..common.errors import UnknownLease
from ..common.schemas import IssuedSecret, LeaseConfig, LeaseRecord
from .storage import Storage, read_model, write_model

LOGGER = structlog.get_logger("npmcreds.leases")

LEASE_CONFIG_KEY = "config/lease"
LEASE_PREFIX = "lease/"


async def read_lease_config(storage: Storage) -> Optional[LeaseConfig]:
    return await read_model(storage, LEASE_CONFIG_KEY, LeaseConfig)


async def write_lease_config(storage: Storage, config: LeaseConfig) -> None:
    await write_model(storage, LEASE_CONFIG_KEY, config)
    LOGGER.info("Lease policy updated", ttl=config.ttl, max_ttl=config.max_ttl)


def new_lease_id(secret_type: str, role: str) -> str:
    return f"{secret_type}/{role}/{uuid4().hex}"


def _lease_key(lease_id: str) -> str:
    return f"{LEASE_PREFIX}{lease_id}"


async def record_lease(storage: Storage, issued: IssuedSecret) -> LeaseRecord:
    lease = issued.lease or LeaseConfig()
    record = LeaseRecord(
        lease_id=new_lease_id(issued.secret_type, issued.role),
        secret_type=issued.secret_type,
        role=issued.role,
        internal_data=issued.internal_data(),
        ttl=lease.ttl,
        max_ttl=lease.max_ttl,
    )
    await write_model(storage, _lease_key(record.lease_id), record)
    return record


async def get_lease(storage: Storage, lease_id: str) -> LeaseRecord:
    record = await read_model(storage, _lease_key(lease_id), LeaseRecord)
    if record is None:
        raise UnknownLease(lease_id)
    return record


async def mark_renewed(storage: Storage, record: LeaseRecord, lease: Optional[LeaseConfig]) -> LeaseRecord:
    updates = {"last_renewed_at": datetime.now(timezone.utc)}
    if lease is not None:
        updates.update(ttl=lease.ttl, max_ttl=lease.max_ttl)
    renewed = record.model_copy(update=updates)
    await write_model(storage, _lease_key(record.lease_id), renewed)
    return renewed


async def delete_lease(storage: Storage, lease_id: str) -> None:
    await storage.delete(_lease_key(lease_id))
