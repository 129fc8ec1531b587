"""Admin token helpers for the broker HTTP surface."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Sequence
from typing import Optional

import jwt


def key_id_from_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def mint_admin_token(*, subject: str, secret: str, ttl_seconds: int = 3600, key_id: Optional[str] = None) -> str:
    now = int(time.time())
    payload = {
        "sub": subject,
        "iat": now,
        "exp": now + ttl_seconds,
        "scope": "admin",
    }
    headers = {"kid": key_id or key_id_from_secret(secret)}
    return jwt.encode(payload, secret, algorithm="HS256", headers=headers)


def _decode_with_secret(secret: str, token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError:
        return None
    subject = payload.get("sub")
    if not isinstance(subject, str) or payload.get("scope") != "admin":
        return None
    return subject


def decode_admin_token(secrets: str | Sequence[str], token: str) -> Optional[str]:
    """Return the token subject if any of ``secrets`` validates it.

    The secret whose key id matches the token's ``kid`` header is tried first so
    rotated fallbacks only cost extra work for tokens minted with them.
    """

    secret_list = [secrets] if isinstance(secrets, str) else list(secrets)
    if not secret_list:
        return None

    preferred = secret_list
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.PyJWTError:
        kid = None

    if kid:
        keyed = [secret for secret in secret_list if key_id_from_secret(secret) == kid]
        if keyed:
            preferred = keyed + [secret for secret in secret_list if secret not in keyed]

    for secret in preferred:
        subject = _decode_with_secret(secret, token)
        if subject is not None:
            return subject
    return None
