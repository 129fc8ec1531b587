"""Access policies that derived tokens are bound to."""

from __future__ import annotations

import re
from typing import Any, Optional

import structlog

from ..common.errors import AccessPolicyNotFoundError, InvalidRequestError
from ..common.schemas import AccessPolicy, AccessPolicyWriteRequest
from .context import BackendContext
from .storage import get_json, put_json

LOGGER = structlog.get_logger("grafana_broker.policies")

ACCESS_POLICY_PREFIX = "access_policies/"

_NAME_PATTERN = re.compile(r"\w(([\w.@-]+)?\w)?")


def _validate_name(name: str) -> str:
    if not name:
        raise InvalidRequestError("missing access policy name")
    if not _NAME_PATTERN.fullmatch(name):
        raise InvalidRequestError(f"invalid access policy name '{name}'")
    return name


def _key(name: str) -> str:
    return ACCESS_POLICY_PREFIX + name


async def read_access_policy(ctx: BackendContext, name: str) -> Optional[AccessPolicy]:
    return await get_json(ctx.storage, _key(_validate_name(name)), AccessPolicy)


async def list_access_policies(ctx: BackendContext) -> list[str]:
    return await ctx.storage.list(ACCESS_POLICY_PREFIX)


async def write_access_policy(ctx: BackendContext, name: str, request: AccessPolicyWriteRequest) -> AccessPolicy:
    """Create the policy in Grafana Cloud and remember it under ``name``.

    The upstream id becomes the join key used when issuing tokens. Writing a
    name that is already stored updates that upstream policy in place; it is
    only recreated when it has disappeared upstream.
    """

    existing = await read_access_policy(ctx, name)
    body: dict[str, Any] = dict(request.policy)
    body["name"] = name
    body.setdefault("displayName", name)

    _, client = await ctx.configured_client()
    async with client:
        policy = None
        if existing is not None and existing.id:
            update = {key: value for key, value in body.items() if key != "name"}
            try:
                policy = await client.update_access_policy(existing.id, update)
            except AccessPolicyNotFoundError:
                LOGGER.warning("Stored access policy missing upstream", name=name, access_policy_id=existing.id)
        if policy is None:
            policy = await client.create_access_policy(body)

    await put_json(ctx.storage, _key(name), policy)
    LOGGER.info("Access policy stored", name=name, access_policy_id=policy.id, scopes=policy.scopes)
    return policy


async def delete_access_policy(ctx: BackendContext, name: str) -> Optional[AccessPolicy]:
    """Delete the policy upstream, then locally. Returns ``None`` when ``name`` is unknown.

    Tokens still bound to the policy are not revoked here.
    """

    entry = await read_access_policy(ctx, name)
    if entry is None:
        return None

    if entry.id:
        _, client = await ctx.configured_client()
        async with client:
            await client.delete_access_policy(entry.id)

    await ctx.storage.delete(_key(name))
    LOGGER.info("Access policy deleted", name=name, access_policy_id=entry.id)
    return entry
