from __future__ import annotations

import pytest

from grafana_broker.common.errors import InvalidRequestError, NotConfiguredError, UpstreamAPIError
from grafana_broker.common.schemas import AccessPolicyWriteRequest


@pytest.mark.asyncio
async def test_write_access_policy_creates_upstream(configured_backend, grafana_cloud):
    policy = await configured_backend.write_access_policy(
        "stack-readers",
        AccessPolicyWriteRequest(policy='{"scopes": ["metrics:read"], "displayName": "Stack readers"}'),
    )

    assert policy.id in grafana_cloud.policies
    assert policy.name == "stack-readers"
    assert policy.display_name == "Stack readers"
    assert policy.scopes == ["metrics:read"]
    stored = await configured_backend.read_access_policy("stack-readers")
    assert stored.id == policy.id


@pytest.mark.asyncio
async def test_policy_name_overrides_body(configured_backend, grafana_cloud):
    policy = await configured_backend.write_access_policy(
        "writers", AccessPolicyWriteRequest(policy={"name": "sneaky", "scopes": []})
    )
    assert policy.name == "writers"
    assert grafana_cloud.policies[policy.id]["displayName"] == "writers"


@pytest.mark.asyncio
async def test_list_and_delete_access_policies(stack_readers, grafana_cloud):
    await stack_readers.write_access_policy("alerts", AccessPolicyWriteRequest(policy={"scopes": []}))
    assert await stack_readers.list_access_policies() == ["alerts", "stack-readers"]

    deleted = await stack_readers.delete_access_policy("alerts")
    assert deleted is not None
    assert deleted.id not in grafana_cloud.policies
    assert await stack_readers.list_access_policies() == ["stack-readers"]
    assert await stack_readers.delete_access_policy("alerts") is None


@pytest.mark.asyncio
async def test_failed_upstream_write_stores_nothing(configured_backend, grafana_cloud):
    grafana_cloud.fail_next("create_access_policy", 409, "AlreadyExists", "policy exists")
    with pytest.raises(UpstreamAPIError):
        await configured_backend.write_access_policy("dupe", AccessPolicyWriteRequest())
    assert await configured_backend.read_access_policy("dupe") is None


@pytest.mark.asyncio
async def test_failed_upstream_delete_keeps_entry(stack_readers, grafana_cloud):
    grafana_cloud.fail_next("delete_access_policy", 500, "Internal", "try again")
    with pytest.raises(UpstreamAPIError):
        await stack_readers.delete_access_policy("stack-readers")
    assert await stack_readers.read_access_policy("stack-readers") is not None


@pytest.mark.parametrize("name", ["", "-leading", "has space", "slash/name", "trailing-", "readers\n"])
@pytest.mark.asyncio
async def test_invalid_policy_names(configured_backend, name):
    with pytest.raises(InvalidRequestError):
        await configured_backend.write_access_policy(name, AccessPolicyWriteRequest())


@pytest.mark.asyncio
async def test_write_access_policy_requires_config(backend):
    with pytest.raises(NotConfiguredError):
        await backend.write_access_policy("stack-readers", AccessPolicyWriteRequest())


def test_policy_request_rejects_bad_json() -> None:
    with pytest.raises(ValueError, match="cannot parse policy"):
        AccessPolicyWriteRequest(policy="{not json")
    with pytest.raises(ValueError, match="JSON object"):
        AccessPolicyWriteRequest(policy="[1, 2]")


@pytest.mark.asyncio
async def test_rewrite_updates_existing_policy(stack_readers, grafana_cloud):
    original = await stack_readers.read_access_policy("stack-readers")
    policies_before = set(grafana_cloud.policies)

    updated = await stack_readers.write_access_policy(
        "stack-readers", AccessPolicyWriteRequest(policy={"scopes": ["traces:read"]})
    )

    assert updated.id == original.id
    assert updated.scopes == ["traces:read"]
    assert set(grafana_cloud.policies) == policies_before
    assert (await stack_readers.read_access_policy("stack-readers")).scopes == ["traces:read"]


@pytest.mark.asyncio
async def test_rewrite_recreates_policy_missing_upstream(stack_readers, grafana_cloud):
    original = await stack_readers.read_access_policy("stack-readers")
    del grafana_cloud.policies[original.id]

    recreated = await stack_readers.write_access_policy(
        "stack-readers", AccessPolicyWriteRequest(policy={"scopes": ["logs:read"]})
    )

    assert recreated.id != original.id
    assert recreated.id in grafana_cloud.policies
    assert (await stack_readers.read_access_policy("stack-readers")).id == recreated.id
