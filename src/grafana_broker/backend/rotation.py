"""Rotation of the mount's root credential.

Ordering matters more than anything else here. The replacement is minted and
persisted before the old credential is deleted, so a crash at any point leaves
the mount holding a credential that still works upstream:

1. authenticate with the current credential and look up its own record;
2. refuse to rotate an incomplete configuration;
3. mint the replacement on the same access policy;
4. persist the replacement;
5. delete the old credential using the replacement.

A failure before step 4 leaves the stored configuration untouched. A replacement
that was minted but cannot be used or persisted is deleted again. A failure in
step 5 keeps the new configuration and raises :class:`OrphanedCredentialError`.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import structlog

from ..common.errors import (
    BrokerError,
    DecodeError,
    IncompleteConfigurationError,
    OrphanedCredentialError,
    UpstreamAPIError,
)
from ..common.metrics import ROOT_ROTATIONS_COUNTER
from ..common.schemas import CreateTokenRequest, RootCredentialConfig, RotationResult, TokenResponse
from ..upstream.client import UpstreamClient
from ..upstream.codec import decode_root_token
from .context import BackendContext

LOGGER = structlog.get_logger("grafana_broker.rotation")


def create_root_token_name() -> str:
    return f"vault-root-{time.time_ns()}"


async def rotate_root_credential(ctx: BackendContext) -> RotationResult:
    config, client = await ctx.configured_client()
    async with client:
        current = await client.whoami()

        if not config.token or not config.access_policy_id:
            raise IncompleteConfigurationError(
                "cannot rotate root credential: configuration is missing the token or its access policy id"
            )
        if config.token_id and config.token_id != current.id:
            LOGGER.warning(
                "Stored root token id differs from upstream record",
                stored_token_id=config.token_id,
                upstream_token_id=current.id,
            )

        name = create_root_token_name()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ctx.settings.root_token_ttl_seconds)
        replacement = await client.create_token(
            CreateTokenRequest(
                access_policy_id=config.access_policy_id,
                name=name,
                display_name=name,
                expires_at=expires_at,
            )
        )
        new_config = await _replacement_config(client, config, replacement)

        try:
            await ctx.config_store.write(new_config)
        except BaseException as exc:
            LOGGER.error("Replacement root credential not persisted", token_id=replacement.id, error=str(exc))
            await _discard_replacement(client, replacement.id)
            raise

    ROOT_ROTATIONS_COUNTER.inc()
    LOGGER.info(
        "Root credential rotated",
        token_name=new_config.name,
        token_id=new_config.token_id,
        previous_token_id=current.id,
    )

    result = RotationResult(
        name=replacement.name,
        token_id=replacement.id,
        access_policy_id=replacement.access_policy_id,
    )
    try:
        async with ctx.client_for(new_config.token) as new_client:
            await new_client.delete_token(current.id)
    except BrokerError as exc:
        LOGGER.error(
            "Previous root credential could not be deleted",
            token_name=current.name,
            token_id=current.id,
            error=str(exc),
        )
        raise OrphanedCredentialError(result, orphan_id=current.id, orphan_name=current.name, cause=exc) from exc

    LOGGER.info("Previous root credential deleted", token_name=current.name, token_id=current.id)
    return result


async def _replacement_config(
    client: UpstreamClient,
    config: RootCredentialConfig,
    replacement: TokenResponse,
) -> RootCredentialConfig:
    """Build the new configuration, deleting the replacement again if it is unusable."""

    try:
        if not replacement.token:
            raise UpstreamAPIError("InvalidResponse", "created token did not include its secret value")
        identity = decode_root_token(replacement.token)
    except (UpstreamAPIError, DecodeError) as exc:
        LOGGER.error("Replacement root credential unusable", token_id=replacement.id, error=str(exc))
        await _discard_replacement(client, replacement.id)
        raise

    return RootCredentialConfig(
        token=replacement.token,
        token_id=replacement.id,
        access_policy_id=replacement.access_policy_id,
        name=replacement.name,
        org_id=identity.org_id or config.org_id,
        region=identity.region or config.region,
        display_name=replacement.display_name or None,
    )


async def _discard_replacement(client: UpstreamClient, token_id: str) -> None:
    try:
        await client.delete_token(token_id)
    except BrokerError as exc:
        LOGGER.error("Failed to delete replacement root credential", token_id=token_id, error=str(exc))
