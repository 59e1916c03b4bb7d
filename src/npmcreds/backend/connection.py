"""Connection configuration for the upstream npm registry."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import structlog

from ..common.errors import UpstreamAuthFailed, UpstreamError, UpstreamUnreachable, ValidationError
from ..common.schemas import ConnectionConfig, ConnectionUpdateRequest
from .storage import Storage, read_model, write_model

if TYPE_CHECKING:
    from .client_cache import ClientCache

LOGGER = structlog.get_logger("npmcreds.connection")

CONNECTION_KEY = "config/connection"


def validate_connection(request: ConnectionUpdateRequest) -> ConnectionConfig:
    for field in ("connection_uri", "username", "password"):
        if not getattr(request, field):
            raise ValidationError(f"missing {field}")
    return ConnectionConfig(
        connection_uri=request.connection_uri,
        username=request.username,
        password=request.password,
    )


async def read_connection(storage: Storage) -> Optional[ConnectionConfig]:
    return await read_model(storage, CONNECTION_KEY, ConnectionConfig)


async def update_connection(
    storage: Storage,
    cache: "ClientCache",
    request: ConnectionUpdateRequest,
) -> ConnectionConfig:
    """Replace the stored connection, verifying it first when asked to.

    A failed verification leaves the previous connection untouched.
    """

    config = validate_connection(request)

    if request.verify_connection:
        client = cache.factory(config)
        try:
            await client.list_tokens()
        except (UpstreamUnreachable, UpstreamAuthFailed):
            LOGGER.warning("Connection verification failed", uri=config.connection_uri)
            raise
        except UpstreamError as exc:
            raise UpstreamUnreachable(f"failed to validate the connection: {exc.message}") from exc

    await write_model(storage, CONNECTION_KEY, config)
    await cache.invalidate()
    LOGGER.info(
        "Connection updated",
        uri=config.connection_uri,
        username=config.username,
        verified=request.verify_connection,
    )
    return config
