"""Request authorization for the broker's HTTP surface."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status
from pydantic import SecretStr

from .security import decode_admin_token
from .settings import BrokerSettings

LOGGER = structlog.get_logger("grafana_broker.http_security")


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def _from_loopback(request: Request) -> bool:
    host = request.client.host if request.client else None
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def require_metrics_access(request: Request, token: Optional[SecretStr]) -> None:
    """Allow scrapes bearing ``token``; without a configured token only loopback clients may scrape."""

    if token is None:
        if not _from_loopback(request):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
        return

    presented = bearer_token(request) or ""
    if not hmac.compare_digest(presented.encode("utf-8"), token.get_secret_value().encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")


def authorize_admin(request: Request, settings: BrokerSettings) -> str:
    """Return the subject of a valid admin bearer token or reject the request."""

    token = bearer_token(request)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    subject = decode_admin_token(settings.admin_jwt_secrets, token)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")
    if settings.admin_allowed_subjects and subject not in settings.admin_allowed_subjects:
        LOGGER.warning("Admin subject not allowed", subject=subject, path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin subject not allowed")
    return subject
