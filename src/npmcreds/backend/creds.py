"""On-demand issuance of npm tokens for a role."""

from __future__ import annotations

import structlog
from opentelemetry import trace

from ..common.errors import MissingField, UnknownRole, UpstreamError, UpstreamTokenCreationFailed
from ..common.metrics import CREDENTIALS_ISSUED
from ..common.schemas import IssuedSecret
from .client_cache import ClientCache
from .leases import read_lease_config
from .roles import get_role, parse_cidr_whitelist
from .storage import Storage

LOGGER = structlog.get_logger("npmcreds.creds")
TRACER = trace.get_tracer("npmcreds.creds")


async def issue_credential(storage: Storage, cache: ClientCache, role_name: str) -> IssuedSecret:
    """Mint a fresh registry token for ``role_name``.

    The token is created with the administrator password from the stored
    connection. The role contributes only its ``readonly`` flag and CIDR
    whitelist. Every call creates a new upstream token.
    """

    if not role_name:
        raise MissingField("name")

    role = await get_role(storage, role_name)
    if role is None:
        raise UnknownRole(role_name)

    client = await cache.get_client(storage)
    lease = await read_lease_config(storage)

    with TRACER.start_as_current_span("npmcreds.create_token") as span:
        span.set_attribute("npmcreds.role", role_name)
        try:
            created = await client.create_token(
                password=client.password,
                readonly=role.readonly,
                cidr_whitelist=parse_cidr_whitelist(role.cidr_whitelist),
            )
        except UpstreamError as exc:
            LOGGER.warning("Token creation failed", role=role_name, error=exc.message)
            raise UpstreamTokenCreationFailed(f"failed to create a new token: {exc.message}") from exc

    try:
        issued = IssuedSecret(role=role_name, token=created.token, internal_id=created.key, lease=lease)
    except Exception:
        LOGGER.error("Issued token could not be packaged; revoke it manually", role=role_name, token_id=created.key)
        raise

    CREDENTIALS_ISSUED.inc(role=role_name)
    LOGGER.info("Credential issued", role=role_name, token_id=created.key, readonly=role.readonly)
    return issued
