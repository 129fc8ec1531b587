"""FastAPI host exposing the Grafana Cloud secrets backend."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace
from structlog.contextvars import bound_contextvars

from ..backend import BACKEND_HELP, GrafanaCloudBackend, SQLStorage, Storage
from ..backend.config_store import CONFIG_TOKEN_KEY
from ..common.errors import (
    AmbiguousLookupError,
    BrokerError,
    LookupFailure,
    NotConfiguredError,
    OrphanedCredentialError,
    StorageFault,
    TransportError,
    UpstreamAPIError,
)
from ..common.http_security import authorize_admin, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import (
    AccessPolicyWriteRequest,
    ConfigTokenWriteRequest,
    LeaseConfigWriteRequest,
    LeaseRenewRequest,
    LeaseRevokeRequest,
)
from ..common.settings import BrokerSettings
from .leases import LeaseManager

HTTP_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("grafana_broker_http_requests_total", "Total HTTP requests to the broker")
)
HTTP_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "grafana_broker_http_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Latency of broker HTTP requests",
    )
)

LOGGER = structlog.get_logger("grafana_broker.service")
TRACER = trace.get_tracer("grafana_broker.service")

SERVICE_NAME = "grafana_broker"


def _log_level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class AppState:
    def __init__(self, settings: BrokerSettings, storage: Storage, backend: GrafanaCloudBackend) -> None:
        self.settings = settings
        self.storage = storage
        self.backend = backend
        self.leases = LeaseManager(storage, backend)


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errors": [message], **extra})


def _status_for(exc: BrokerError) -> int:
    if isinstance(exc, AmbiguousLookupError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, LookupFailure):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, UpstreamAPIError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, TransportError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_400_BAD_REQUEST


def get_state(request: Request) -> AppState:
    return request.app.state.container  # type: ignore[attr-defined]


def require_admin(request: Request, state: AppState = Depends(get_state)) -> str:
    return authorize_admin(request, state.settings)


def create_app(
    settings: Optional[BrokerSettings] = None,
    *,
    storage: Optional[Storage] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the app. ``storage`` and ``transport`` override the SQL store and real upstream."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or BrokerSettings()
        configure_logging(SERVICE_NAME, app_settings.log_level)
        configure_tracing(app_settings, SERVICE_NAME)
        sql_storage: Optional[SQLStorage] = None
        backing: Storage
        if storage is not None:
            backing = storage
        else:
            sql_storage = SQLStorage(app_settings.database_url)
            await sql_storage.open()
            backing = sql_storage
        backend = GrafanaCloudBackend(backing, app_settings, transport=transport)
        app.state.container = AppState(app_settings, backing, backend)
        LOGGER.info("Broker started", upstream=app_settings.upstream_url)
        try:
            yield
        finally:
            if sql_storage is not None:
                await sql_storage.close()

    app = FastAPI(title="grafana-broker", description=BACKEND_HELP, lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001
        request_id = request.headers.get("x-request-id") or uuid4().hex
        HTTP_REQUEST_COUNTER.inc()
        started = time.perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        with bound_contextvars(request_id=request_id, method=request.method, path=request.url.path):
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers["x-request-id"] = request_id
                return response
            finally:
                elapsed = time.perf_counter() - started
                HTTP_LATENCY_HISTOGRAM.observe(elapsed)
                LOGGER.log(
                    _log_level_for(status_code),
                    "request handled",
                    status=status_code,
                    elapsed_ms=round(elapsed * 1000, 1),
                )

    @app.exception_handler(OrphanedCredentialError)
    async def orphaned_credential_handler(request: Request, exc: OrphanedCredentialError) -> JSONResponse:
        return _error_response(
            status.HTTP_502_BAD_GATEWAY,
            str(exc),
            rotated=True,
            data=exc.result.model_dump(),
            orphaned_token={"id": exc.orphan_id, "name": exc.orphan_name},
        )

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        extra = {}
        if isinstance(exc, UpstreamAPIError):
            extra["upstream"] = {"code": exc.code, "message": exc.message}
        return _error_response(_status_for(exc), str(exc), **extra)

    @app.exception_handler(StorageFault)
    async def storage_fault_handler(request: Request, exc: StorageFault) -> JSONResponse:
        LOGGER.error("Storage fault", path=request.url.path, error=str(exc))
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal storage error")

    @app.post("/v1/config/token")
    async def write_config_token(
        body: ConfigTokenWriteRequest,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        config = await state.backend.write_config(body)
        return {"data": config.public_view()}

    @app.get("/v1/config/token")
    async def read_config_token(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        config = await state.backend.read_config()
        if config is None:
            raise NotConfiguredError("configuration does not exist. did you configure 'config/token'?")
        return {"data": config.public_view()}

    @app.delete("/v1/config/token", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_config_token(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> Response:
        await state.backend.delete_config()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/config/rotate-root")
    async def rotate_root(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        with TRACER.start_as_current_span("broker.rotate_root"):
            result = await state.backend.rotate_root()
        return {"data": result.model_dump()}

    @app.post("/v1/config/lease")
    async def write_config_lease(
        body: LeaseConfigWriteRequest,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        config = await state.backend.write_lease_config(body)
        return {"data": config.model_dump()}

    @app.get("/v1/config/lease")
    async def read_config_lease(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        config = await state.backend.read_lease_config()
        if config is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lease configuration not set")
        return {"data": config.model_dump()}

    @app.delete("/v1/config/lease", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_config_lease(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> Response:
        await state.backend.delete_lease_config()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/access_policies")
    async def list_access_policies(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        return {"data": {"keys": await state.backend.list_access_policies()}}

    @app.post("/v1/access_policies/{name}")
    async def write_access_policy(
        name: str,
        body: AccessPolicyWriteRequest,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        policy = await state.backend.write_access_policy(name, body)
        return {"data": policy.to_wire()}

    @app.get("/v1/access_policies/{name}")
    async def read_access_policy(
        name: str,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        policy = await state.backend.read_access_policy(name)
        if policy is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"access policy '{name}' not found")
        return {"data": policy.to_wire()}

    @app.delete("/v1/access_policies/{name}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_access_policy(
        name: str,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> Response:
        await state.backend.delete_access_policy(name)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/v1/creds/{name}")
    async def issue_credential(
        name: str,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        with TRACER.start_as_current_span("broker.issue_credential") as span:
            span.set_attribute("grafana_broker.policy", name)
            issued = await state.backend.issue_credential(name)
            lease = await state.leases.create(name, issued)
        return {
            "lease_id": lease.lease_id,
            "lease_duration": lease.ttl_seconds,
            "renewable": lease.renewable,
            "data": issued.response_data(),
        }

    @app.get("/v1/sys/leases")
    async def list_leases(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        return {"data": {"keys": await state.leases.list_ids()}}

    @app.post("/v1/sys/leases/renew")
    async def renew_lease(
        body: LeaseRenewRequest,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> dict:
        lease = await state.leases.renew(body.lease_id)
        return {
            "lease_id": lease.lease_id,
            "lease_duration": lease.ttl_seconds,
            "renewable": lease.renewable,
        }

    @app.post("/v1/sys/leases/revoke", status_code=status.HTTP_204_NO_CONTENT)
    async def revoke_lease(
        body: LeaseRevokeRequest,
        _: str = Depends(require_admin),
        state: AppState = Depends(get_state),
    ) -> Response:
        await state.leases.revoke(body.lease_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/sys/leases/tidy")
    async def tidy_leases(_: str = Depends(require_admin), state: AppState = Depends(get_state)) -> dict:
        report = await state.leases.revoke_expired()
        return {"data": {"revoked": report.revoked, "failed": report.failed}}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: AppState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: AppState = Depends(get_state)) -> dict:
        try:
            await state.storage.get(CONFIG_TOKEN_KEY)
        except StorageFault as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"status": "unhealthy", "checks": {"storage": f"error: {exc}"}},
            ) from exc
        return {"status": "healthy", "checks": {"storage": "ok"}}

    return app
