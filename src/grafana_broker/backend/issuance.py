"""Minting derived tokens for an access policy."""

from __future__ import annotations

import time
from datetime import datetime, timezone

import structlog

from ..common.errors import AccessPolicyNotFoundError, TransportError, UpstreamAPIError
from ..common.metrics import TOKENS_ISSUED_COUNTER
from ..common.schemas import CreateTokenRequest, IssuedCredential, TokenLeaseData
from .context import BackendContext
from .policies import read_access_policy

LOGGER = structlog.get_logger("grafana_broker.issuance")


def create_token_name(policy_name: str) -> str:
    """Unique upstream token name for ``policy_name``."""

    return f"vault-{policy_name.lower()}-{time.time_ns()}"


async def issue_credential(ctx: BackendContext, policy_name: str) -> IssuedCredential:
    config = await ctx.config_store.require()

    policy = await read_access_policy(ctx, policy_name)
    if policy is None or not policy.id:
        raise AccessPolicyNotFoundError(policy_name)

    lease_policy = await ctx.lease_policy()
    now = datetime.now(timezone.utc)
    ttl = lease_policy.effective_ttl(now=now)
    max_ttl = lease_policy.max_ttl

    token_name = create_token_name(policy_name)
    request = CreateTokenRequest(
        access_policy_id=policy.id,
        name=token_name,
        display_name=token_name,
        expires_at=now + ttl,
    )

    LOGGER.info("Creating grafana cloud token", policy=policy_name, token_name=token_name, ttl=int(ttl.total_seconds()))
    async with ctx.client_for(config.token) as client:
        try:
            token = await client.create_token(request)
        except UpstreamAPIError as exc:
            raise UpstreamAPIError(
                exc.code,
                exc.message,
                status_code=exc.status_code,
                url=exc.url,
                context=f"failed to create token for access policy '{policy_name}'",
            ) from exc
        except TransportError as exc:
            raise TransportError(f"failed to create token for access policy '{policy_name}': {exc}") from exc

    TOKENS_ISSUED_COUNTER.inc()
    return IssuedCredential(
        token=token,
        ttl_seconds=int(ttl.total_seconds()),
        max_ttl_seconds=int(max_ttl.total_seconds()),
        renewable=lease_policy.renewable_after(ttl, issued_at=now, now=now),
        internal_data=TokenLeaseData(id=token.id, name=token.name, access_policy_id=token.access_policy_id),
    )
