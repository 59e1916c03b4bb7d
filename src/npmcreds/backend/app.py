"""FastAPI application exposing the npm credential backend."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Path, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..common.errors import BackendError
from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, REQUEST_COUNTER, REQUEST_LATENCY
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import (
    ConnectionUpdateRequest,
    CredsResponse,
    LeaseConfig,
    LeaseRequest,
    LeaseResponse,
    RevokeSecretRequest,
    RoleEntry,
    RoleListResponse,
    RoleWriteRequest,
    Secret,
)
from ..common.settings import BackendSettings
from . import leases
from .connection import CONNECTION_KEY
from .registry import client_factory, create_registry_http_client
from .roles import NAME_PATTERN
from .service import PATH_HELP, CredentialBackend
from .storage import SqlStorage, create_engine, ensure_schema, session_factory

LOGGER = structlog.get_logger("npmcreds.backend")

RoleName = Annotated[str, Path(pattern=f"^{NAME_PATTERN}$", description="Name of the role.")]


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: BackendSettings,
        backend: CredentialBackend,
        http_client: httpx.AsyncClient,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.http_client = http_client
        self.engine = engine


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_backend(state: AppState = Depends(_get_state)) -> CredentialBackend:
    return state.backend


def get_settings(state: AppState = Depends(_get_state)) -> BackendSettings:
    return state.settings


def _lease_duration(ttl: int) -> int:
    return max(0, ttl)


async def build_state(settings: BackendSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> AppState:
    ca_bundle = settings.ca_bundle_path.as_posix() if settings.ca_bundle_path else None
    http_client = create_registry_http_client(
        timeout=settings.registry_timeout_seconds,
        ca_bundle=ca_bundle,
        transport=transport,
    )
    engine = create_engine(settings.database_url)
    await ensure_schema(engine)
    storage = SqlStorage(session_factory(engine))
    backend = CredentialBackend(storage, client_factory(http_client))
    return AppState(settings=settings, backend=backend, http_client=http_client, engine=engine)


async def close_state(state: AppState) -> None:
    await state.http_client.aclose()
    if state.engine is not None:
        await state.engine.dispose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: Optional[AppState] = getattr(app.state, "container", None)
    owns_state = container is None
    if container is None:
        settings = BackendSettings()
        configure_logging("npmcreds.backend", settings.log_level)
        configure_tracing(
            service_name="npmcreds.backend",
            endpoint=settings.otel_exporter_endpoint,
            headers=settings.otel_exporter_headers,
            sampler_ratio=settings.otel_sampler_ratio,
        )
        container = await build_state(settings)
        app.state.container = container
    try:
        yield
    finally:
        if owns_state:
            await close_state(container)


def create_app(state: Optional[AppState] = None) -> FastAPI:
    """Build the API; a prepared ``state`` skips settings and database bootstrap."""

    app = FastAPI(title="npmcreds", lifespan=lifespan)
    if state is not None:
        app.state.container = state
    else:
        instrument_fastapi_app(app)

    @app.exception_handler(BackendError)
    async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
        log = LOGGER.error if exc.status_code >= 500 else LOGGER.info
        log("request_failed", path=request.url.path, error=exc.message, kind=type(exc).__name__)
        return JSONResponse(status_code=exc.status_code, content={"errors": [exc.message]})

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.post("/v1/config/connection", status_code=status.HTTP_204_NO_CONTENT)
    async def update_connection_endpoint(
        payload: ConnectionUpdateRequest,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="config_connection_update")
        await backend.update_connection(payload)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/config/lease", response_model=LeaseConfig)
    async def read_lease_endpoint(backend: CredentialBackend = Depends(get_backend)) -> LeaseConfig:
        REQUEST_COUNTER.inc(operation="config_lease_read")
        config = await backend.read_lease_config()
        if config is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lease policy not configured")
        return config

    @app.post("/v1/config/lease", status_code=status.HTTP_204_NO_CONTENT)
    async def update_lease_endpoint(
        payload: LeaseConfig,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="config_lease_update")
        await backend.write_lease_config(payload)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/roles", response_model=RoleListResponse)
    async def list_roles_endpoint(backend: CredentialBackend = Depends(get_backend)) -> RoleListResponse:
        REQUEST_COUNTER.inc(operation="roles_list")
        return RoleListResponse(keys=await backend.list_roles())

    @app.get("/v1/roles/{name}", response_model=RoleEntry)
    async def read_role_endpoint(
        name: RoleName,
        backend: CredentialBackend = Depends(get_backend),
    ) -> RoleEntry:
        REQUEST_COUNTER.inc(operation="roles_read")
        role = await backend.get_role(name)
        if role is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"role {name} not found")
        return role

    @app.post("/v1/roles/{name}", status_code=status.HTTP_204_NO_CONTENT)
    async def write_role_endpoint(
        payload: RoleWriteRequest,
        name: RoleName,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="roles_write")
        await backend.upsert_role(name, payload)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/v1/roles/{name}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_role_endpoint(
        name: RoleName,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="roles_delete")
        await backend.delete_role(name)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/creds/{name}", response_model=CredsResponse)
    async def issue_creds_endpoint(
        name: RoleName,
        backend: CredentialBackend = Depends(get_backend),
    ) -> CredsResponse:
        REQUEST_COUNTER.inc(operation="creds_read")
        issued = await backend.issue_credential(name)
        try:
            record = await leases.record_lease(backend.storage, issued)
        except BackendError as exc:
            LOGGER.error(
                "Lease could not be recorded; revoking issued token",
                role=name,
                token_id=issued.internal_id,
                error=exc.message,
            )
            try:
                await backend.revoke(issued.to_secret())
            except BackendError as cleanup_exc:
                LOGGER.error(
                    "Issued token is orphaned; revoke it manually",
                    role=name,
                    token_id=issued.internal_id,
                    error=cleanup_exc.message,
                )
            raise exc
        return CredsResponse(
            lease_id=record.lease_id,
            lease_duration=_lease_duration(record.ttl),
            data=issued.public_data(),
        )

    @app.put("/v1/sys/leases/renew", response_model=LeaseResponse)
    async def renew_lease_endpoint(
        payload: LeaseRequest,
        backend: CredentialBackend = Depends(get_backend),
    ) -> LeaseResponse:
        REQUEST_COUNTER.inc(operation="lease_renew")
        record = await leases.get_lease(backend.storage, payload.lease_id)
        renewed = await backend.renew(record.to_secret())
        record = await leases.mark_renewed(backend.storage, record, renewed.lease)
        LOGGER.info("Lease renewed", lease_id=record.lease_id, ttl=record.ttl)
        return LeaseResponse(lease_id=record.lease_id, lease_duration=_lease_duration(record.ttl))

    @app.put("/v1/sys/leases/revoke", status_code=status.HTTP_204_NO_CONTENT)
    async def revoke_lease_endpoint(
        payload: LeaseRequest,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="lease_revoke")
        record = await leases.get_lease(backend.storage, payload.lease_id)
        await backend.revoke(record.to_secret())
        await leases.delete_lease(backend.storage, record.lease_id)
        LOGGER.info("Lease revoked", lease_id=record.lease_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.put("/v1/sys/revoke-secret", status_code=status.HTTP_204_NO_CONTENT)
    async def revoke_secret_endpoint(
        payload: RevokeSecretRequest,
        backend: CredentialBackend = Depends(get_backend),
    ) -> Response:
        REQUEST_COUNTER.inc(operation="secret_revoke")
        await backend.revoke(Secret(secret_type=payload.secret_type, internal_data=payload.internal_data))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/help/{path:path}")
    async def help_endpoint(path: str) -> dict:
        topic = path.strip("/").split("/", 1)[0]
        if topic == "config":
            topic = path.strip("/")
        if topic not in PATH_HELP:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"no help for {path}")
        synopsis, description = PATH_HELP[topic]
        return {"path": topic, "synopsis": synopsis, "description": description}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        settings: BackendSettings = Depends(get_settings),
    ) -> PlainTextResponse:
        require_metrics_access(request, settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: AppState = Depends(_get_state)) -> dict:
        """Readiness probe: storage must answer and the connection state is reported."""
        health: dict = {"status": "healthy", "checks": {}}
        if state.engine is not None:
            try:
                async with state.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                health["checks"]["database"] = "ok"
            except Exception as exc:
                health["checks"]["database"] = f"error: {exc}"
                health["status"] = "unhealthy"
        try:
            configured = await state.backend.storage.get(CONNECTION_KEY) is not None
            health["checks"]["connection"] = "configured" if configured else "unconfigured"
        except BackendError as exc:
            health["checks"]["connection"] = f"error: {exc.message}"
            health["status"] = "unhealthy"
        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
