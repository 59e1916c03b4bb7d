"""Credential backend: the operations exposed at each logical path."""

from __future__ import annotations

from typing import Optional

from ..common.schemas import (
    ConnectionConfig,
    ConnectionUpdateRequest,
    IssuedSecret,
    LeaseConfig,
    RenewedLease,
    RoleEntry,
    RoleWriteRequest,
    Secret,
)
from . import connection, creds, leases, roles
from .client_cache import ClientCache
from .registry import ClientFactory, NpmRegistryClient
from .secrets import CredsSecret, SecretKinds
from .storage import Storage

PATH_HELP: dict[str, tuple[str, str]] = {
    "config/connection": (
        "Configure the connection URI, username, and password to talk to the npm registry.",
        "The connection_uri is the registry base URL, for example https://registry.npmjs.org. "
        "username and password belong to an account allowed to manage tokens. When "
        "verify_connection is true (the default) the credentials are checked by listing tokens "
        "before anything is stored.",
    ),
    "config/lease": (
        "Configure the lease policy for issued credentials.",
        "ttl and max_ttl are in seconds. They are attached to issued and renewed credentials; "
        "a max_ttl of zero leaves the maximum to the lease tracker.",
    ),
    "roles": (
        "Manage the roles that credentials can be issued against.",
        "password is required and describes the account credential consumers use. readonly "
        "makes issued tokens read-only. cidr_whitelist is a comma separated list of CIDR blocks "
        "the registry will restrict the token to.",
    ),
    "creds": (
        "Request an npm token for a role.",
        "A new registry token is created on every read and revoked automatically when its lease ends.",
    ),
}


class CredentialBackend:
    """Binds storage, the client cache and the secret handlers together."""

    def __init__(self, storage: Storage, factory: ClientFactory) -> None:
        self.storage = storage
        self.cache = ClientCache(factory)
        self.secret_kinds = SecretKinds(CredsSecret(self.cache))

    async def update_connection(self, request: ConnectionUpdateRequest) -> ConnectionConfig:
        return await connection.update_connection(self.storage, self.cache, request)

    async def get_client(self) -> NpmRegistryClient:
        return await self.cache.get_client(self.storage)

    async def invalidate(self) -> None:
        await self.cache.invalidate()

    async def read_lease_config(self) -> Optional[LeaseConfig]:
        return await leases.read_lease_config(self.storage)

    async def write_lease_config(self, config: LeaseConfig) -> None:
        await leases.write_lease_config(self.storage, config)

    async def get_role(self, name: str) -> Optional[RoleEntry]:
        roles.validate_role_name(name)
        return await roles.get_role(self.storage, name)

    async def list_roles(self) -> list[str]:
        return await roles.list_roles(self.storage)

    async def upsert_role(self, name: str, request: RoleWriteRequest) -> RoleEntry:
        return await roles.upsert_role(self.storage, name, request)

    async def delete_role(self, name: str) -> None:
        await roles.delete_role(self.storage, name)

    async def issue_credential(self, role_name: str) -> IssuedSecret:
        return await creds.issue_credential(self.storage, self.cache, role_name)

    async def renew(self, secret: Secret) -> RenewedLease:
        return await self.secret_kinds.get(secret.secret_type).renew(self.storage, secret)

    async def revoke(self, secret: Secret) -> None:
        await self.secret_kinds.get(secret.secret_type).revoke(self.storage, secret)
