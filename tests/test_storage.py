from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import insert

from npmcreds.backend.storage import _child_names, read_model, storage_entries_table, write_model
from npmcreds.common.errors import StorageError
from npmcreds.common.schemas import RoleEntry


@pytest.mark.asyncio
async def test_put_get_delete(storage):
    assert await storage.get("config/connection") is None

    await storage.put("config/connection", {"connection_uri": "https://a", "username": "u", "password": "p"})
    assert (await storage.get("config/connection"))["username"] == "u"

    await storage.put("config/connection", {"connection_uri": "https://b", "username": "v", "password": "q"})
    assert await storage.get("config/connection") == {"connection_uri": "https://b", "username": "v", "password": "q"}

    await storage.delete("config/connection")
    assert await storage.get("config/connection") is None


@pytest.mark.asyncio
async def test_delete_missing_key_is_noop(storage):
    await storage.delete("role/ghost")
    assert await storage.get("role/ghost") is None


@pytest.mark.asyncio
async def test_list_returns_children_only(storage):
    await storage.put("role/npm", {"password": "a"})
    await storage.put("role/ci", {"password": "b"})
    await storage.put("lease/creds/npm/1", {"x": 1})
    await storage.put("lease/creds/npm/2", {"x": 2})

    assert await storage.list("role/") == ["ci", "npm"]
    assert await storage.list("lease/") == ["creds/"]
    assert await storage.list("lease/creds/npm/") == ["1", "2"]
    assert await storage.list("missing/") == []


@pytest.mark.asyncio
async def test_list_prefix_is_literal(storage):
    await storage.put("a_1", {"v": 1})
    await storage.put("ab1", {"v": 2})
    await storage.put("a%2", {"v": 3})

    assert await storage.list("a_") == ["1"]
    assert await storage.list("a%") == ["2"]


@pytest.mark.asyncio
async def test_read_model_round_trips_role(storage):
    await write_model(storage, "role/npm", RoleEntry(password="guest", readonly=True))
    role = await read_model(storage, "role/npm", RoleEntry)
    assert role == RoleEntry(password="guest", readonly=True, cidr_whitelist=None)


@pytest.mark.asyncio
async def test_corrupt_entries_raise_storage_error(storage):
    async with storage._sessions() as session:
        await session.execute(
            insert(storage_entries_table).values(key="role/bad", value="{not json", updated_at=datetime.now(timezone.utc))
        )
        await session.commit()
    with pytest.raises(StorageError):
        await storage.get("role/bad")

    await storage.put("role/wrong-shape", {"readonly": "yes please"})
    with pytest.raises(StorageError):
        await read_model(storage, "role/wrong-shape", RoleEntry)


def test_child_names_collapses_nested_keys():
    keys = ["p/a", "p/b/c", "p/b/d", "p/"]
    assert _child_names("p/", keys) == ["a", "b/"]
