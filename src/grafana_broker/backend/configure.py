"""Configuring the mount's root credential."""

from __future__ import annotations

import structlog

from ..common.errors import ConfigError
from ..common.schemas import ConfigTokenWriteRequest, RootCredentialConfig
from ..upstream.codec import decode_root_token
from .context import BackendContext

LOGGER = structlog.get_logger("grafana_broker.configure")

# Scopes an access policy needs before its tokens can mint and delete other tokens.
ADMIN_SCOPES = ("accesspolicies:read", "accesspolicies:write", "accesspolicies:delete")


async def configure_root_credential(ctx: BackendContext, request: ConfigTokenWriteRequest) -> RootCredentialConfig:
    """Validate ``request.token`` against Grafana Cloud and make it the root credential.

    The token is written first and removed again if any validation step fails
    or the call is cancelled, so a rejected write always leaves the slot empty.
    """

    identity = decode_root_token(request.token)
    store = ctx.config_store
    await store.write(
        RootCredentialConfig(
            token=request.token,
            name=identity.name,
            org_id=identity.org_id,
            region=identity.region,
        )
    )

    try:
        async with ctx.client_for(request.token) as client:
            record = await client.whoami()
            policy = await client.get_access_policy(record.access_policy_id)
        missing = [scope for scope in ADMIN_SCOPES if scope not in policy.scopes]
        if missing:
            raise ConfigError(
                f"token '{identity.name}' cannot manage tokens: access policy '{policy.name}' "
                f"is missing scopes {', '.join(missing)}"
            )
        config = RootCredentialConfig(
            token=request.token,
            token_id=record.id,
            access_policy_id=record.access_policy_id,
            name=record.name,
            org_id=identity.org_id or policy.org_id,
            region=identity.region,
            display_name=record.display_name or None,
        )
        await store.write(config)
    except BaseException as exc:
        LOGGER.warning("Root credential rejected", token_name=identity.name, error=str(exc))
        await store.delete()
        raise

    LOGGER.info(
        "Root credential configured",
        token_name=config.name,
        token_id=config.token_id,
        access_policy_id=config.access_policy_id,
        region=config.region,
    )
    return config
