from __future__ import annotations

import pytest
import pytest_asyncio

from grafana_broker.backend import GrafanaCloudBackend, InMemoryStorage
from grafana_broker.common.schemas import AccessPolicyWriteRequest, ConfigTokenWriteRequest
from grafana_broker.common.settings import BrokerSettings
from tests.utils.grafana_cloud import FakeGrafanaCloud

ADMIN_SECRET = "test-admin-secret"


@pytest.fixture
def settings(monkeypatch) -> BrokerSettings:
    monkeypatch.setenv("GRAFANA_BROKER_ADMIN_JWT_SECRET", ADMIN_SECRET)
    monkeypatch.setenv("GRAFANA_BROKER_DEFAULT_LEASE_TTL", "3600")
    monkeypatch.setenv("GRAFANA_BROKER_MAX_LEASE_TTL", "86400")
    monkeypatch.setenv("GRAFANA_BROKER_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    return BrokerSettings()


@pytest.fixture
def grafana_cloud() -> FakeGrafanaCloud:
    return FakeGrafanaCloud()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def backend(storage, settings, grafana_cloud) -> GrafanaCloudBackend:
    return GrafanaCloudBackend(storage, settings, transport=grafana_cloud.transport)


@pytest_asyncio.fixture
async def configured_backend(backend, grafana_cloud) -> GrafanaCloudBackend:
    root = grafana_cloud.seed_root()
    await backend.write_config(ConfigTokenWriteRequest(token=root))
    return backend


@pytest_asyncio.fixture
async def stack_readers(configured_backend):
    """Backend with a ``stack-readers`` access policy already written."""

    await configured_backend.write_access_policy(
        "stack-readers",
        AccessPolicyWriteRequest(policy={"scopes": ["metrics:read", "logs:read"]}),
    )
    return configured_backend
