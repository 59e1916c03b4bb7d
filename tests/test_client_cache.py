from __future__ import annotations

import asyncio

import pytest

from npmcreds.backend.client_cache import ClientCache
from npmcreds.backend.connection import CONNECTION_KEY
from npmcreds.backend.registry import NpmRegistryClient, client_factory
from npmcreds.common.errors import NotConfigured
from npmcreds.common.schemas import ConnectionConfig
from tests.utils.registry import REGISTRY_URI


class CountingFactory:
    def __init__(self, http_client) -> None:
        self._build = client_factory(http_client)
        self.configs: list[ConnectionConfig] = []

    def __call__(self, config: ConnectionConfig) -> NpmRegistryClient:
        self.configs.append(config)
        return self._build(config)


async def _store_connection(storage, username: str = "admin", password: str = "s3cret") -> None:
    await storage.put(
        CONNECTION_KEY,
        {"connection_uri": REGISTRY_URI, "username": username, "password": password},
    )


@pytest.mark.asyncio
async def test_get_client_without_connection_raises(storage, http_client):
    cache = ClientCache(client_factory(http_client))
    with pytest.raises(NotConfigured):
        await cache.get_client(storage)


@pytest.mark.asyncio
async def test_client_is_reused_until_invalidated(storage, http_client):
    factory = CountingFactory(http_client)
    cache = ClientCache(factory)
    await _store_connection(storage)

    first = await cache.get_client(storage)
    second = await cache.get_client(storage)
    assert first is second
    assert len(factory.configs) == 1


@pytest.mark.asyncio
async def test_invalidate_rebuilds_from_new_connection(storage, http_client):
    factory = CountingFactory(http_client)
    cache = ClientCache(factory)
    await _store_connection(storage)
    old = await cache.get_client(storage)

    await _store_connection(storage, username="other", password="changed")
    assert await cache.get_client(storage) is old

    generation = cache.generation
    await cache.invalidate()
    assert cache.generation == generation + 1

    fresh = await cache.get_client(storage)
    assert fresh is not old
    assert (fresh.username, fresh.password) == ("other", "changed")


@pytest.mark.asyncio
async def test_concurrent_first_use_builds_once(storage, http_client):
    factory = CountingFactory(http_client)
    cache = ClientCache(factory)
    await _store_connection(storage)

    clients = await asyncio.gather(*(cache.get_client(storage) for _ in range(10)))

    assert len(factory.configs) == 1
    assert all(client is clients[0] for client in clients)
