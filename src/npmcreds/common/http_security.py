"""Access control for operational endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import SecretStr


def require_metrics_access(request: Request, token: Optional[SecretStr]) -> None:
    """Allow ``/metrics`` with the configured bearer token, or from loopback when none is set."""

    if token is not None:
        expected = f"Bearer {token.get_secret_value()}"
        provided = request.headers.get("authorization") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    host = request.client.host if request.client else None
    try:
        loopback = host is not None and ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
