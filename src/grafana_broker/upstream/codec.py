"""Decoding of Grafana Cloud access policy tokens.

A token is ``glc_`` followed by standard base64 of a JSON object::

    {"o": "<org id>", "n": "<token name>", "k": "<key material>", "m": {"r": "<region>"}}

The older API-key format (``{"k", "n", "id"}`` scoped by an organization slug
and role) predates access policies and is rejected rather than half supported.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Optional

from ..common.errors import DecodeError

TOKEN_PREFIX = "glc_"


@dataclass(frozen=True, slots=True)
class RootTokenIdentity:
    """Identity fields embedded in a root token."""

    name: str
    key: str
    org_id: Optional[str] = None
    region: Optional[str] = None


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("token is not valid base64") from exc


def decode_root_token(token: str) -> RootTokenIdentity:
    if not isinstance(token, str) or not token.strip():
        raise DecodeError("token is empty")
    raw = token.strip()
    if raw.startswith(TOKEN_PREFIX):
        raw = raw[len(TOKEN_PREFIX):]

    decoded = _b64decode(raw)
    try:
        payload = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError("token does not contain a JSON payload") from exc
    if not isinstance(payload, dict):
        raise DecodeError("token payload is not a JSON object")

    if "id" in payload and "o" not in payload and "m" not in payload:
        raise DecodeError("legacy API key tokens are not supported; create an access policy token")

    name = payload.get("n")
    key = payload.get("k")
    if not isinstance(name, str) or not name:
        raise DecodeError("token payload is missing the token name")
    if not isinstance(key, str) or not key:
        raise DecodeError("token payload is missing key material")

    metadata = payload.get("m") or {}
    if not isinstance(metadata, dict):
        raise DecodeError("token metadata is not a JSON object")
    region = metadata.get("r")
    org_id = payload.get("o")

    return RootTokenIdentity(
        name=name,
        key=key,
        org_id=str(org_id) if org_id is not None else None,
        region=str(region) if region else None,
    )


def encode_root_token(identity: RootTokenIdentity, *, prefix: bool = True) -> str:
    payload: dict[str, object] = {"o": identity.org_id, "n": identity.name, "k": identity.key}
    if identity.region:
        payload["m"] = {"r": identity.region}
    encoded = base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")
    return f"{TOKEN_PREFIX}{encoded}" if prefix else encoded
