"""Shared data models for the npm credential backend."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

SECRET_CREDS_TYPE = "creds"


class ConnectionConfig(BaseModel):
    """Stored connection to the npm registry's token API."""

    connection_uri: str
    username: str
    password: str


class ConnectionUpdateRequest(BaseModel):
    """Payload accepted by ``config/connection``."""

    connection_uri: str = ""
    username: str = ""
    password: str = ""
    verify_connection: bool = True


class RoleEntry(BaseModel):
    """Role that defines the capabilities of the credentials issued against it."""

    password: str
    readonly: bool = False
    cidr_whitelist: Optional[str] = None


class RoleWriteRequest(BaseModel):
    password: str = ""
    readonly: bool = False
    cidr_whitelist: Optional[str] = None


class RoleListResponse(BaseModel):
    keys: list[str] = Field(default_factory=list)


class LeaseConfig(BaseModel):
    """Lease policy attached to issued and renewed credentials.

    ``max_ttl`` of zero means the host's own maximum applies.
    """

    ttl: int = Field(default=0, ge=0)
    max_ttl: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _ttl_within_max(self) -> "LeaseConfig":
        if self.max_ttl and self.ttl > self.max_ttl:
            raise ValueError("ttl must not exceed max_ttl")
        return self


class RegistryToken(BaseModel):
    """Token returned by the registry's create call."""

    token: str
    key: str
    readonly: bool = False
    cidr_whitelist: list[str] = Field(default_factory=list)
    created: Optional[datetime] = None


class Secret(BaseModel):
    """Host-tracked record of an issued credential."""

    secret_type: str = SECRET_CREDS_TYPE
    internal_data: dict[str, Any] = Field(default_factory=dict)
    ttl: int = 0
    max_ttl: int = 0


class IssuedSecret(BaseModel):
    """Credential minted for a role.

    ``token`` is handed to the caller; ``internal_id`` only ever travels in
    the secret's internal data and is what revocation needs.
    """

    secret_type: Literal["creds"] = SECRET_CREDS_TYPE
    role: str
    token: str
    internal_id: str
    lease: Optional[LeaseConfig] = None

    def public_data(self) -> dict[str, Any]:
        return {"token": self.token}

    def internal_data(self) -> dict[str, Any]:
        return {"secret_type": self.secret_type, "id": self.internal_id}

    def to_secret(self) -> Secret:
        lease = self.lease or LeaseConfig()
        return Secret(
            secret_type=self.secret_type,
            internal_data=self.internal_data(),
            ttl=lease.ttl,
            max_ttl=lease.max_ttl,
        )


class RenewedLease(BaseModel):
    secret: Secret
    lease: Optional[LeaseConfig] = None


class LeaseRecord(BaseModel):
    """Ledger entry persisted for each secret handed out over HTTP."""

    lease_id: str
    secret_type: str
    role: str
    internal_data: dict[str, Any]
    ttl: int = 0
    max_ttl: int = 0
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_renewed_at: Optional[datetime] = None

    def to_secret(self) -> Secret:
        return Secret(
            secret_type=self.secret_type,
            internal_data=self.internal_data,
            ttl=self.ttl,
            max_ttl=self.max_ttl,
        )


class CredsResponse(BaseModel):
    """Response body for ``creds/<name>``; never carries the token id."""

    lease_id: str
    lease_duration: int
    renewable: bool = True
    data: dict[str, str]


class LeaseRequest(BaseModel):
    lease_id: str


class LeaseResponse(BaseModel):
    lease_id: str
    lease_duration: int
    renewable: bool = True


class RevokeSecretRequest(BaseModel):
    """Direct revocation from a host that keeps its own lease records."""

    secret_type: str = SECRET_CREDS_TYPE
    internal_data: dict[str, Any] = Field(default_factory=dict)
