"""Client for the npm registry's token management API."""

from __future__ import annotations

import ssl
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from ..common.errors import TokenNotFound, UpstreamAuthFailed, UpstreamError, UpstreamUnreachable
from ..common.metrics import UPSTREAM_FAILURES
from ..common.schemas import ConnectionConfig, RegistryToken

LOGGER = structlog.get_logger("npmcreds.registry")

TOKENS_PATH = "/-/npm/v1/tokens"
WHOAMI_PATH = "/-/whoami"


def create_registry_http_client(
    *,
    timeout: float = 20.0,
    ca_bundle: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Shared connection pool used by every registry client instance."""

    limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
    verify: ssl.SSLContext | bool = True
    if ca_bundle:
        verify = ssl.create_default_context(cafile=ca_bundle)
    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        verify=verify,
        transport=transport,
        headers={"Accept": "application/json"},
    )


class NpmRegistryClient:
    """Authenticated handle to one registry, built from a stored connection."""

    def __init__(
        self,
        connection_uri: str,
        username: str,
        password: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.connection_uri = connection_uri.rstrip("/")
        self.username = username
        self.password = password
        self._http = http_client
        self._auth = httpx.BasicAuth(username, password)

    @classmethod
    def from_config(cls, config: ConnectionConfig, http_client: httpx.AsyncClient) -> "NpmRegistryClient":
        return cls(config.connection_uri, config.username, config.password, http_client)

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        code = response.status_code
        UPSTREAM_FAILURES.inc(operation=operation)
        if code in (401, 403):
            raise UpstreamAuthFailed(f"registry rejected credentials during {operation} (HTTP {code})")
        if code == 404:
            raise TokenNotFound(f"registry returned not found during {operation}")
        raise UpstreamError(f"registry {operation} failed with HTTP {code}: {response.text[:200]}")

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.connection_uri}{path}"
        try:
            response = await self._http.request(method, url, auth=self._auth, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            UPSTREAM_FAILURES.inc(operation=operation)
            LOGGER.warning("Registry unreachable", operation=operation, uri=self.connection_uri, error=str(exc))
            raise UpstreamUnreachable(f"registry {operation} failed: {exc}") from exc
        self._raise_for_status(response, operation)
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"registry {operation} returned invalid JSON") from exc

    @classmethod
    def _json_object(cls, response: httpx.Response, operation: str) -> dict[str, Any]:
        payload = cls._json(response, operation)
        if not isinstance(payload, dict):
            raise UpstreamError(f"registry {operation} returned an unexpected payload")
        return payload

    async def list_tokens(self) -> list[dict[str, Any]]:
        response = await self._request("GET", TOKENS_PATH, "list_tokens")
        payload = self._json(response, "list_tokens")
        if isinstance(payload, dict):
            payload = payload.get("objects", [])
        if not isinstance(payload, list):
            raise UpstreamError("registry list_tokens returned an unexpected payload")
        return payload

    async def create_token(
        self,
        password: str,
        readonly: bool = False,
        cidr_whitelist: Optional[list[str]] = None,
    ) -> RegistryToken:
        body: dict[str, Any] = {"password": password, "readonly": readonly}
        if cidr_whitelist:
            body["cidr_whitelist"] = cidr_whitelist
        response = await self._request("POST", TOKENS_PATH, "create_token", json=body)
        payload = self._json_object(response, "create_token")
        key = payload.get("key") or payload.get("id")
        if not payload.get("token") or not key:
            raise UpstreamError("registry create_token response is missing token or key")
        try:
            return RegistryToken(
                token=payload["token"],
                key=key,
                readonly=bool(payload.get("readonly", readonly)),
                cidr_whitelist=payload.get("cidr_whitelist") or [],
                created=payload.get("created"),
            )
        except PydanticValidationError as exc:
            raise UpstreamError("registry create_token returned an unexpected payload") from exc

    @staticmethod
    def token_path(token_id: str) -> str:
        return f"{TOKENS_PATH}/token/{quote(token_id, safe='')}"

    async def delete_token(self, token_id: str) -> None:
        """Raises ``TokenNotFound`` when the registry no longer knows the token."""

        await self._request("DELETE", self.token_path(token_id), "delete_token")

    async def whoami(self) -> str:
        response = await self._request("GET", WHOAMI_PATH, "whoami")
        return str(self._json_object(response, "whoami").get("username", ""))


ClientFactory = Callable[[ConnectionConfig], NpmRegistryClient]


def client_factory(http_client: httpx.AsyncClient) -> ClientFactory:
    def build(config: ConnectionConfig) -> NpmRegistryClient:
        return NpmRegistryClient.from_config(config, http_client)

    return build
