"""Access control for the operational endpoints of the edge and origin."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional, Union

import structlog
from fastapi import HTTPException, Request, status
from pydantic import SecretStr


LOGGER = structlog.get_logger("springcache.http_security")

LOCAL_CLIENT_HOSTS = {"localhost", "testclient"}


def _is_local(host: str) -> bool:
    try:
        return ip_address(host).is_loopback
    except ValueError:
        # Test clients and unix sockets report non-IP hosts.
        return host in LOCAL_CLIENT_HOSTS


def require_metrics_access(request: Request, token: Union[SecretStr, str, None]) -> None:
    """Guard /metrics with the configured bearer token, or loopback-only when no token is set."""
    expected: Optional[str] = token.get_secret_value() if isinstance(token, SecretStr) else token
    client_host = request.client.host if request.client else None
    if expected:
        auth_header = request.headers.get("authorization") or ""
        if not hmac.compare_digest(auth_header.encode(), f"Bearer {expected}".encode()):
            LOGGER.warning("metrics_access_denied", client=client_host, reason="token")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not client_host or not _is_local(client_host):
        LOGGER.warning("metrics_access_denied", client=client_host, reason="not_local")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
