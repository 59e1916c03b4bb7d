from __future__ import annotations

import pytest
import pytest_asyncio

from npmcreds.backend.registry import client_factory, create_registry_http_client
from npmcreds.backend.service import CredentialBackend
from npmcreds.common.schemas import ConnectionUpdateRequest, RoleWriteRequest
from tests.utils.database import temp_storage
from tests.utils.registry import REGISTRY_URI, FakeRegistry


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest_asyncio.fixture
async def storage():
    async with temp_storage() as store:
        yield store


@pytest_asyncio.fixture
async def http_client(registry: FakeRegistry):
    client = create_registry_http_client(timeout=5.0, transport=registry.transport())
    try:
        yield client
    finally:
        await client.aclose()


@pytest_asyncio.fixture
async def backend(storage, http_client) -> CredentialBackend:
    return CredentialBackend(storage, client_factory(http_client))


@pytest.fixture
def connection_request(registry: FakeRegistry):
    def build(**overrides) -> ConnectionUpdateRequest:
        values = {
            "connection_uri": REGISTRY_URI,
            "username": registry.username,
            "password": registry.password,
            "verify_connection": False,
        }
        values.update(overrides)
        return ConnectionUpdateRequest(**values)

    return build


@pytest_asyncio.fixture
async def configured_backend(backend: CredentialBackend, connection_request) -> CredentialBackend:
    await backend.update_connection(connection_request())
    await backend.upsert_role("npm", RoleWriteRequest(password="guest", readonly=False))
    return backend
