"""Renew and revoke handlers for leased derived tokens."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import structlog

from ..common.errors import InvalidRequestError
from ..common.metrics import TOKENS_RENEWED_COUNTER, TOKENS_REVOKED_COUNTER
from ..common.schemas import RenewResult
from .context import BackendContext

LOGGER = structlog.get_logger("grafana_broker.tokens")

SECRET_TOKEN_TYPE = "token"


def _required(internal_data: Mapping[str, Any], key: str) -> str:
    value = internal_data.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidRequestError(f"{key} is missing on the lease")
    return value


async def renew_token(ctx: BackendContext, internal_data: Mapping[str, Any], issue_time: datetime) -> RenewResult:
    """Push the upstream expiry of a leased token forward.

    The new TTL is bounded by the lease's original issue time plus max TTL, so
    repeated renewals converge on a final expiry.
    """

    token_id = _required(internal_data, "id")
    lease_policy = await ctx.lease_policy()
    now = datetime.now(timezone.utc)
    ttl = lease_policy.effective_ttl(issued_at=issue_time, now=now)
    expires_at = now + ttl

    _, client = await ctx.configured_client()
    async with client:
        await client.update_token_expiry(token_id, expires_at)

    TOKENS_RENEWED_COUNTER.inc()
    LOGGER.info("Renewed grafana cloud token", token_id=token_id, ttl=int(ttl.total_seconds()))
    return RenewResult(
        ttl_seconds=int(ttl.total_seconds()),
        max_ttl_seconds=int(lease_policy.max_ttl.total_seconds()),
        renewable=lease_policy.renewable_after(ttl, issued_at=issue_time, now=now),
        expires_at=expires_at,
    )


async def revoke_token(ctx: BackendContext, internal_data: Mapping[str, Any]) -> None:
    """Delete a leased token upstream. A token that is already gone is treated as revoked."""

    token_id = _required(internal_data, "id")
    name = _required(internal_data, "name")
    _, client = await ctx.configured_client()

    LOGGER.info("Revoking grafana cloud token", token_name=name, token_id=token_id)
    async with client:
        await client.delete_token(token_id)
    TOKENS_REVOKED_COUNTER.inc()
