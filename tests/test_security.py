from __future__ import annotations

import time

import jwt
import pytest
from fastapi import HTTPException
from pydantic import SecretStr
from starlette.requests import Request

from grafana_broker.common.http_security import authorize_admin, bearer_token, require_metrics_access
from grafana_broker.common.security import decode_admin_token, key_id_from_secret, mint_admin_token


def _make_request(headers: dict[str, str], client_ip: str = "127.0.0.1") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/metrics",
        "scheme": "http",
        "client": (client_ip, 12345),
        "headers": [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in headers.items()],
    }

    async def receive() -> dict:  # pragma: no cover - protocol shim
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


def test_admin_token_round_trip() -> None:
    token = mint_admin_token(subject="ops", secret="primary")
    assert decode_admin_token("primary", token) == "ops"
    assert decode_admin_token("other", token) is None


def test_admin_token_fallback_secret() -> None:
    token = mint_admin_token(subject="ops", secret="old-secret")
    assert jwt.get_unverified_header(token)["kid"] == key_id_from_secret("old-secret")
    assert decode_admin_token(["new-secret", "old-secret"], token) == "ops"
    assert decode_admin_token([], token) is None


def test_admin_token_rejects_wrong_scope_and_expiry() -> None:
    now = int(time.time())
    wrong_scope = jwt.encode({"sub": "ops", "scope": "read", "exp": now + 60}, "s", algorithm="HS256")
    assert decode_admin_token("s", wrong_scope) is None
    expired = mint_admin_token(subject="ops", secret="s", ttl_seconds=-10)
    assert decode_admin_token("s", expired) is None
    assert decode_admin_token("s", "not-a-jwt") is None


def test_bearer_token_parsing() -> None:
    assert bearer_token(_make_request({"Authorization": "Bearer abc"})) == "abc"
    assert bearer_token(_make_request({"Authorization": "Basic abc"})) is None
    assert bearer_token(_make_request({})) is None


def test_metrics_token_required_when_configured() -> None:
    require_metrics_access(_make_request({"Authorization": "Bearer m"}), SecretStr("m"))
    with pytest.raises(HTTPException) as exc_info:
        require_metrics_access(_make_request({"Authorization": "Bearer x"}), SecretStr("m"))
    assert exc_info.value.status_code == 401


def test_metrics_without_token_is_localhost_only() -> None:
    require_metrics_access(_make_request({}, client_ip="127.0.0.1"), None)
    with pytest.raises(HTTPException) as exc_info:
        require_metrics_access(_make_request({}, client_ip="203.0.113.5"), None)
    assert exc_info.value.status_code == 403


def test_authorize_admin(settings) -> None:
    secret = settings.admin_jwt_secret.get_secret_value()
    token = mint_admin_token(subject="ops", secret=secret)
    assert authorize_admin(_make_request({"Authorization": f"Bearer {token}"}), settings) == "ops"

    with pytest.raises(HTTPException) as missing:
        authorize_admin(_make_request({}), settings)
    assert missing.value.status_code == 401

    restricted = settings.model_copy(update={"admin_allowed_subjects": ["ci"]})
    with pytest.raises(HTTPException) as denied:
        authorize_admin(_make_request({"Authorization": f"Bearer {token}"}), restricted)
    assert denied.value.status_code == 403
