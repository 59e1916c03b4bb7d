"""Renew and revoke handlers for issued secrets."""

from __future__ import annotations

from typing import Protocol

import structlog

from ..common.errors import MalformedSecret, TokenNotFound, UnknownSecretType, UpstreamError, UpstreamRevokeFailed
from ..common.metrics import CREDENTIALS_REVOKED
from ..common.schemas import SECRET_CREDS_TYPE, RenewedLease, Secret
from .client_cache import ClientCache
from .leases import read_lease_config
from .storage import Storage

LOGGER = structlog.get_logger("npmcreds.secrets")


class SecretKind(Protocol):
    secret_type: str

    async def renew(self, storage: Storage, secret: Secret) -> RenewedLease: ...

    async def revoke(self, storage: Storage, secret: Secret) -> None: ...


class CredsSecret:
    """Lifecycle of tokens minted by ``creds/<name>``."""

    secret_type = SECRET_CREDS_TYPE

    def __init__(self, cache: ClientCache) -> None:
        self._cache = cache

    async def renew(self, storage: Storage, secret: Secret) -> RenewedLease:
        # Local bookkeeping only; the registry is not consulted.
        lease = await read_lease_config(storage)
        return RenewedLease(secret=secret, lease=lease)

    async def revoke(self, storage: Storage, secret: Secret) -> None:
        token_id = secret.internal_data.get("id")
        if not isinstance(token_id, str) or not token_id:
            raise MalformedSecret("secret is missing id internal data")

        client = await self._cache.get_client(storage)
        try:
            await client.delete_token(token_id)
        except TokenNotFound:
            CREDENTIALS_REVOKED.inc(outcome="absent")
            LOGGER.warning(
                "Token already absent upstream; check connection_uri if this repeats",
                token_id=token_id,
                url=f"{client.connection_uri}{client.token_path(token_id)}",
            )
            return
        except UpstreamError as exc:
            CREDENTIALS_REVOKED.inc(outcome="failed")
            LOGGER.warning("Token revocation failed", token_id=token_id, error=exc.message)
            raise UpstreamRevokeFailed(f"could not delete token: {exc.message}") from exc

        CREDENTIALS_REVOKED.inc(outcome="deleted")
        LOGGER.info("Token revoked", token_id=token_id)


class SecretKinds:
    """Registry of lifecycle handlers keyed by secret type."""

    def __init__(self, *kinds: SecretKind) -> None:
        self._kinds = {kind.secret_type: kind for kind in kinds}

    def get(self, secret_type: str) -> SecretKind:
        try:
            return self._kinds[secret_type]
        except KeyError:
            raise UnknownSecretType(secret_type) from None

    def __contains__(self, secret_type: object) -> bool:
        return secret_type in self._kinds
