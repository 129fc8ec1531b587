from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from grafana_broker.common.security import mint_admin_token
from grafana_broker.service.app import create_app


@pytest_asyncio.fixture
async def api(settings, storage, grafana_cloud):
    app = create_app(settings, storage=storage, transport=grafana_cloud.transport)
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    token = mint_admin_token(subject="ops", secret=settings.admin_jwt_secret.get_secret_value())
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers={"Authorization": f"Bearer {token}"},
    )
    try:
        yield client
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)


async def _configure(api, grafana_cloud) -> dict:
    root = grafana_cloud.seed_root()
    response = await api.post("/v1/config/token", json={"token": root})
    assert response.status_code == 200
    return response.json()["data"]


@pytest.mark.asyncio
async def test_requires_admin_token(api):
    response = await api.get("/v1/config/token", headers={"Authorization": ""})
    assert response.status_code == 401
    forged = mint_admin_token(subject="ops", secret="wrong-secret")
    response = await api.get("/v1/config/token", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_config_token_lifecycle(api, grafana_cloud):
    response = await api.get("/v1/config/token")
    assert response.status_code == 400
    assert "did you configure" in response.json()["errors"][0]

    data = await _configure(api, grafana_cloud)
    assert "token" not in data
    assert data["token_id"]

    response = await api.get("/v1/config/token")
    assert response.json()["data"]["token_id"] == data["token_id"]

    assert (await api.delete("/v1/config/token")).status_code == 204
    assert (await api.get("/v1/config/token")).status_code == 400


@pytest.mark.asyncio
async def test_bad_root_token_is_client_error(api, grafana_cloud):
    response = await api.post("/v1/config/token", json={"token": "glc_???"})
    assert response.status_code == 400
    assert grafana_cloud.calls == []


@pytest.mark.asyncio
async def test_issue_renew_revoke_flow(api, grafana_cloud):
    await _configure(api, grafana_cloud)
    response = await api.post(
        "/v1/access_policies/stack-readers",
        json={"policy": {"scopes": ["metrics:read"]}},
    )
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "stack-readers"

    response = await api.get("/v1/creds/stack-readers")
    assert response.status_code == 200
    body = response.json()
    lease_id = body["lease_id"]
    assert body["lease_duration"] == 3600
    assert body["renewable"] is True
    assert body["data"]["token"].startswith("glc_")
    token_id = body["data"]["id"]
    assert token_id in grafana_cloud.tokens

    assert (await api.get("/v1/sys/leases")).json()["data"]["keys"] == [lease_id]

    response = await api.post("/v1/sys/leases/renew", json={"lease_id": lease_id})
    assert response.status_code == 200
    assert response.json()["lease_duration"] == 3600

    response = await api.post("/v1/sys/leases/revoke", json={"lease_id": lease_id})
    assert response.status_code == 204
    assert token_id not in grafana_cloud.tokens
    assert (await api.post("/v1/sys/leases/revoke", json={"lease_id": lease_id})).status_code == 204


@pytest.mark.asyncio
async def test_error_mapping(api, grafana_cloud):
    await _configure(api, grafana_cloud)

    response = await api.get("/v1/creds/unknown")
    assert response.status_code == 404

    response = await api.post("/v1/sys/leases/renew", json={"lease_id": "nope"})
    assert response.status_code == 404

    grafana_cloud.fail_next("create_access_policy", 403, "Forbidden", "missing scope")
    response = await api.post("/v1/access_policies/writers", json={"policy": {}})
    assert response.status_code == 502
    assert response.json()["upstream"] == {"code": "Forbidden", "message": "missing scope"}

    response = await api.post("/v1/config/lease", json={"ttl": 10, "max_ttl": 5})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_access_policy_endpoints(api, grafana_cloud):
    await _configure(api, grafana_cloud)
    await api.post("/v1/access_policies/alpha", json={"policy": '{"scopes": []}'})

    assert (await api.get("/v1/access_policies")).json()["data"]["keys"] == ["alpha"]
    assert (await api.get("/v1/access_policies/alpha")).json()["data"]["name"] == "alpha"
    assert (await api.delete("/v1/access_policies/alpha")).status_code == 204
    assert (await api.get("/v1/access_policies/alpha")).status_code == 404


@pytest.mark.asyncio
async def test_lease_config_endpoints(api):
    assert (await api.get("/v1/config/lease")).status_code == 404
    response = await api.post("/v1/config/lease", json={"ttl": 120, "max_ttl": 600})
    assert response.json()["data"] == {"ttl": 120, "max_ttl": 600}
    assert (await api.get("/v1/config/lease")).json()["data"]["ttl"] == 120
    assert (await api.delete("/v1/config/lease")).status_code == 204


@pytest.mark.asyncio
async def test_rotate_root_reports_orphan(api, grafana_cloud):
    config = await _configure(api, grafana_cloud)
    grafana_cloud.fail_next("delete_token", 500, "Internal", "boom")

    response = await api.post("/v1/config/rotate-root")

    assert response.status_code == 502
    body = response.json()
    assert body["rotated"] is True
    assert body["orphaned_token"]["id"] == config["token_id"]
    current = (await api.get("/v1/config/token")).json()["data"]
    assert current["token_id"] == body["data"]["token_id"]


@pytest.mark.asyncio
async def test_rotate_root_success(api, grafana_cloud):
    config = await _configure(api, grafana_cloud)
    response = await api.post("/v1/config/rotate-root")
    assert response.status_code == 200
    assert response.json()["data"]["token_id"] != config["token_id"]


@pytest.mark.asyncio
async def test_tidy_endpoint(api, grafana_cloud):
    await _configure(api, grafana_cloud)
    response = await api.post("/v1/sys/leases/tidy")
    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": [], "failed": {}}


@pytest.mark.asyncio
async def test_health_and_metrics(api):
    response = await api.get("/healthz")
    assert response.json()["status"] == "healthy"

    response = await api.get("/metrics")
    assert response.status_code == 200
    assert "grafana_broker_http_requests_total" in response.text
