from __future__ import annotations

import asyncio

import httpx
import pytest

from grafana_broker.backend import GrafanaCloudBackend
from grafana_broker.backend.config_store import CONFIG_TOKEN_KEY
from grafana_broker.common.errors import (
    AmbiguousLookupError,
    ConfigError,
    DecodeError,
    InvalidRequestError,
    NotConfiguredError,
    UpstreamAPIError,
)
from grafana_broker.common.schemas import ConfigTokenWriteRequest, LeaseConfigWriteRequest


@pytest.mark.asyncio
async def test_write_config_enriches_from_upstream(backend, grafana_cloud, storage):
    root = grafana_cloud.seed_root("broker-root")
    record = grafana_cloud.token_by_name("broker-root")

    config = await backend.write_config(ConfigTokenWriteRequest(token=root))

    assert config.token == root
    assert config.token_id == record["id"]
    assert config.access_policy_id == record["accessPolicyId"]
    assert config.region == "us"
    assert config.org_id == "1234"
    stored = await backend.read_config()
    assert stored is not None and stored.token_id == record["id"]
    assert "token" not in stored.public_view()


@pytest.mark.asyncio
async def test_write_config_bad_base64_leaves_nothing(backend, grafana_cloud, storage):
    with pytest.raises(DecodeError):
        await backend.write_config(ConfigTokenWriteRequest(token="glc_%%%"))
    assert await storage.get(CONFIG_TOKEN_KEY) is None
    assert grafana_cloud.calls == []


@pytest.mark.asyncio
async def test_write_config_upstream_rejection_removes_entry(backend, grafana_cloud, storage):
    root = grafana_cloud.seed_root()
    grafana_cloud.fail_next("list_tokens", 401, "Unauthorized", "token expired")
    with pytest.raises(UpstreamAPIError, match="token expired"):
        await backend.write_config(ConfigTokenWriteRequest(token=root))
    assert await storage.get(CONFIG_TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_write_config_requires_admin_scopes(backend, grafana_cloud, storage):
    root = grafana_cloud.seed_root(scopes=["metrics:read"])
    with pytest.raises(ConfigError, match="accesspolicies:write"):
        await backend.write_config(ConfigTokenWriteRequest(token=root))
    assert await backend.read_config() is None


@pytest.mark.asyncio
async def test_write_config_ambiguous_name_removes_entry(backend, grafana_cloud):
    root = grafana_cloud.seed_root("twin")
    grafana_cloud.add_token("twin", grafana_cloud.token_by_name("twin")["accessPolicyId"])
    with pytest.raises(AmbiguousLookupError):
        await backend.write_config(ConfigTokenWriteRequest(token=root))
    assert await backend.read_config() is None


@pytest.mark.asyncio
async def test_rewrite_replaces_previous_config(configured_backend, grafana_cloud):
    other = grafana_cloud.seed_root("second-root")
    config = await configured_backend.write_config(ConfigTokenWriteRequest(token=other))
    assert config.name == "second-root"
    assert (await configured_backend.read_config()).name == "second-root"


@pytest.mark.asyncio
async def test_delete_config(configured_backend):
    await configured_backend.delete_config()
    assert await configured_backend.read_config() is None
    await configured_backend.delete_config()


@pytest.mark.asyncio
async def test_operations_require_configuration(backend, grafana_cloud):
    with pytest.raises(NotConfiguredError):
        await backend.rotate_root()
    with pytest.raises(NotConfiguredError):
        await backend.issue_credential("anything")
    assert grafana_cloud.calls == []


@pytest.mark.asyncio
async def test_lease_config_round_trip(backend):
    assert await backend.read_lease_config() is None
    config = await backend.write_lease_config(LeaseConfigWriteRequest(ttl=600, max_ttl=1200))
    assert config.ttl == 600
    assert (await backend.read_lease_config()).max_ttl == 1200
    await backend.delete_lease_config()
    assert await backend.read_lease_config() is None


@pytest.mark.parametrize(
    "ttl,max_ttl,message",
    [
        (0, None, "ttl must be a positive"),
        (None, -5, "max_ttl must be a positive"),
        (600, 300, "ttl cannot be greater than max_ttl"),
        (None, 10**9, "system max ttl"),
    ],
)
@pytest.mark.asyncio
async def test_lease_config_rejects_invalid_bounds(backend, ttl, max_ttl, message):
    with pytest.raises(InvalidRequestError, match=message):
        await backend.write_lease_config(LeaseConfigWriteRequest(ttl=ttl, max_ttl=max_ttl))
    assert await backend.read_lease_config() is None


class _HeldTransport(httpx.AsyncBaseTransport):
    """Parks every request until ``release`` is set."""

    def __init__(self, inner: httpx.AsyncBaseTransport) -> None:
        self._inner = inner
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.entered.set()
        await self.release.wait()
        return await self._inner.handle_async_request(request)


@pytest.mark.asyncio
async def test_cancelled_write_config_removes_entry(storage, settings, grafana_cloud):
    root = grafana_cloud.seed_root()
    transport = _HeldTransport(grafana_cloud.transport)
    backend = GrafanaCloudBackend(storage, settings, transport=transport)

    task = asyncio.create_task(backend.write_config(ConfigTokenWriteRequest(token=root)))
    await transport.entered.wait()
    assert await storage.get(CONFIG_TOKEN_KEY) is not None

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await backend.read_config() is None
