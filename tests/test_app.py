from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from npmcreds.backend import app as backend_app
from npmcreds.backend import leases
from npmcreds.backend.app import AppState, create_app
from npmcreds.common.errors import StorageError
from npmcreds.common.settings import BackendSettings
from tests.utils.registry import REGISTRY_URI


class RecordingLogger:
    def __init__(self, events: list) -> None:
        self._events = events

    def __getattr__(self, level: str):
        def record(event, **fields):
            self._events.append((level, event, fields))

        return record


@pytest_asyncio.fixture
async def api(backend, http_client, monkeypatch):
    monkeypatch.delenv("NPMCREDS_METRICS_TOKEN", raising=False)
    state = AppState(settings=BackendSettings(), backend=backend, http_client=http_client)
    app = create_app(state)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def _configure(api, registry, **overrides) -> httpx.Response:
    payload = {
        "connection_uri": REGISTRY_URI,
        "username": registry.username,
        "password": registry.password,
        "verify_connection": True,
    }
    payload.update(overrides)
    return await api.post("/v1/config/connection", json=payload)


@pytest.mark.asyncio
async def test_full_credential_lifecycle(api, registry):
    assert (await _configure(api, registry)).status_code == 204
    assert (await api.post("/v1/config/lease", json={"ttl": 600, "max_ttl": 3600})).status_code == 204
    assert (await api.post("/v1/roles/npm", json={"password": "guest", "readonly": True})).status_code == 204

    issued = await api.get("/v1/creds/npm")
    assert issued.status_code == 200
    body = issued.json()
    assert body["lease_duration"] == 600
    assert set(body["data"]) == {"token"}
    assert body["lease_id"].startswith("creds/npm/")
    assert len(registry.tokens) == 1
    token_id = next(iter(registry.tokens))
    assert token_id not in issued.text

    renewed = await api.put("/v1/sys/leases/renew", json={"lease_id": body["lease_id"]})
    assert renewed.status_code == 200
    assert renewed.json()["lease_duration"] == 600

    revoked = await api.put("/v1/sys/leases/revoke", json={"lease_id": body["lease_id"]})
    assert revoked.status_code == 204
    assert registry.tokens == {}

    again = await api.put("/v1/sys/leases/revoke", json={"lease_id": body["lease_id"]})
    assert again.status_code == 404
    assert again.json() == {"errors": [f"unknown lease: {body['lease_id']}"]}


@pytest.mark.asyncio
async def test_connection_errors_are_reported(api, registry):
    missing = await _configure(api, registry, username="")
    assert missing.status_code == 400
    assert missing.json() == {"errors": ["missing username"]}

    rejected = await _configure(api, registry, password="wrong")
    assert rejected.status_code == 502

    registry.unreachable = True
    unreachable = await _configure(api, registry)
    assert unreachable.status_code == 502


@pytest.mark.asyncio
async def test_creds_errors(api, registry):
    await _configure(api, registry, verify_connection=False)
    unknown = await api.get("/v1/creds/npm")
    assert unknown.status_code == 400
    assert unknown.json() == {"errors": ["unknown role: npm"]}
    assert registry.upstream_calls() == 0

    await api.post("/v1/roles/npm", json={"password": "guest"})
    registry.create_status = 500
    failed = await api.get("/v1/creds/npm")
    assert failed.status_code == 502
    assert failed.json()["errors"][0].startswith("failed to create a new token")


@pytest.mark.asyncio
async def test_role_endpoints(api):
    assert (await api.get("/v1/roles")).json() == {"keys": []}
    assert (await api.get("/v1/roles/npm")).status_code == 404

    written = await api.post("/v1/roles/npm", json={"password": "guest", "cidr_whitelist": "10.0.0.1/8"})
    assert written.status_code == 204
    role = (await api.get("/v1/roles/npm")).json()
    assert role == {"password": "guest", "readonly": False, "cidr_whitelist": "10.0.0.0/8"}
    assert (await api.get("/v1/roles")).json() == {"keys": ["npm"]}

    missing_password = await api.post("/v1/roles/other", json={"readonly": True})
    assert missing_password.status_code == 400
    assert missing_password.json() == {"errors": ["missing password"]}

    assert (await api.get("/v1/roles/-bad")).status_code == 422

    assert (await api.delete("/v1/roles/npm")).status_code == 204
    assert (await api.delete("/v1/roles/npm")).status_code == 204
    assert (await api.get("/v1/roles")).json() == {"keys": []}


@pytest.mark.asyncio
async def test_lease_config_endpoints(api):
    assert (await api.get("/v1/config/lease")).status_code == 404
    assert (await api.post("/v1/config/lease", json={"ttl": 10, "max_ttl": 5})).status_code == 422
    assert (await api.post("/v1/config/lease", json={"ttl": 10})).status_code == 204
    assert (await api.get("/v1/config/lease")).json() == {"ttl": 10, "max_ttl": 0}


@pytest.mark.asyncio
async def test_revoke_secret_endpoint(api, registry, configured_backend):
    issued = await configured_backend.issue_credential("npm")

    malformed = await api.put("/v1/sys/revoke-secret", json={"secret_type": "creds", "internal_data": {}})
    assert malformed.status_code == 500

    unknown = await api.put("/v1/sys/revoke-secret", json={"secret_type": "ssh", "internal_data": {"id": "x"}})
    assert unknown.status_code == 400

    ok = await api.put("/v1/sys/revoke-secret", json={"internal_data": issued.internal_data()})
    assert ok.status_code == 204
    assert issued.internal_id not in registry.tokens


@pytest.mark.asyncio
async def test_unrecorded_lease_revokes_token(api, registry, configured_backend, monkeypatch):
    async def broken_record(storage, issued):
        raise StorageError("disk full")

    monkeypatch.setattr(leases, "record_lease", broken_record)

    response = await api.get("/v1/creds/npm")
    assert response.status_code == 500
    assert registry.create_bodies
    assert registry.tokens == {}
    assert response.json() == {"errors": ["disk full"]}


@pytest.mark.asyncio
async def test_unrecorded_lease_with_failed_cleanup_keeps_storage_error(
    api, registry, configured_backend, monkeypatch
):
    async def broken_record(storage, issued):
        raise StorageError("disk full")

    monkeypatch.setattr(leases, "record_lease", broken_record)
    registry.delete_status = 500
    logged = []
    monkeypatch.setattr(backend_app, "LOGGER", RecordingLogger(logged))

    response = await api.get("/v1/creds/npm")

    assert response.status_code == 500
    assert response.json() == {"errors": ["disk full"]}
    assert len(registry.tokens) == 1
    assert ("DELETE", f"/-/npm/v1/tokens/token/{next(iter(registry.tokens))}") in registry.calls
    orphaned = [fields for level, event, fields in logged if level == "error" and "orphaned" in event]
    assert orphaned[0]["token_id"] == next(iter(registry.tokens))


@pytest.mark.asyncio
async def test_help_endpoint(api):
    connection = await api.get("/v1/help/config/connection")
    assert connection.status_code == 200
    assert "connection URI" in connection.json()["synopsis"]
    assert (await api.get("/v1/help/creds/npm")).json()["path"] == "creds"
    assert (await api.get("/v1/help/nothing")).status_code == 404


@pytest.mark.asyncio
async def test_metrics_requires_token_when_configured(backend, http_client, monkeypatch):
    monkeypatch.setenv("NPMCREDS_METRICS_TOKEN", "scrape")
    app = create_app(AppState(settings=BackendSettings(), backend=backend, http_client=http_client))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        assert (await client.get("/metrics")).status_code == 401
        response = await client.get("/metrics", headers={"Authorization": "Bearer scrape"})
    assert response.status_code == 200
    assert "npmcreds_requests_total" in response.text


@pytest.mark.asyncio
async def test_metrics_allows_loopback_without_token(api):
    response = await api.get("/metrics")
    assert response.status_code == 200
    assert "npmcreds_request_latency_seconds_count" in response.text


@pytest.mark.asyncio
async def test_lifespan_bootstraps_from_environment(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("NPMCREDS_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'npmcreds.db'}")
    monkeypatch.setenv("NPMCREDS_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("NPMCREDS_OTEL_EXPORTER_ENDPOINT", raising=False)

    app = backend_app.create_app()
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            health = await client.get("/healthz")
        assert health.status_code == 200
        assert health.json()["checks"] == {"database": "ok", "connection": "unconfigured"}
        assert isinstance(app.state.container, AppState)


@pytest.mark.asyncio
async def test_creds_without_connection(api, registry):
    await api.post("/v1/roles/npm", json={"password": "guest"})
    response = await api.get("/v1/creds/npm")
    assert response.status_code == 400
    assert response.json() == {"errors": ["connection is not configured"]}
    assert registry.upstream_calls() == 0
