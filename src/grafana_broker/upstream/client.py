"""Async client for the Grafana Cloud token and access policy API."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from opentelemetry import trace
from pydantic import ValidationError

from ..common.errors import (
    AccessPolicyNotFoundError,
    AmbiguousLookupError,
    TokenNotFoundError,
    TransportError,
    UpstreamAPIError,
)
from ..common.metrics import UPSTREAM_ERRORS_COUNTER, UPSTREAM_LATENCY_HISTOGRAM
from ..common.schemas import (
    AccessPolicy,
    APIErrorPayload,
    CreateTokenRequest,
    TokenListResponse,
    TokenResponse,
)
from ..common.settings import GRAFANA_CLOUD_API_BASE
from .codec import RootTokenIdentity, decode_root_token

LOGGER = structlog.get_logger("grafana_broker.upstream")
TRACER = trace.get_tracer("grafana_broker.upstream")

DEFAULT_TIMEOUT_SECONDS = 10.0
USER_AGENT = "grafana-broker/0.1"


class UpstreamClient:
    """Wraps Grafana Cloud API calls made with a single root credential.

    Instances own one ``httpx.AsyncClient`` and are meant to live for one
    request: use them as an async context manager.
    """

    def __init__(
        self,
        token: str,
        identity: RootTokenIdentity,
        *,
        base_url: str = GRAFANA_CLOUD_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.identity = identity
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {token}", "User-Agent": USER_AGENT},
            transport=transport,
        )

    @classmethod
    def authenticate(
        cls,
        root_token: str,
        *,
        base_url: str = GRAFANA_CLOUD_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "UpstreamClient":
        """Build a client bound to ``root_token`` and the region embedded in it.

        Raises :class:`DecodeError` when the token cannot be decoded; no network
        call is made.
        """

        identity = decode_root_token(root_token)
        return cls(root_token, identity, base_url=base_url, timeout=timeout, transport=transport)

    @property
    def region(self) -> Optional[str]:
        return self.identity.region

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Optional[httpx.Response]:
        """Perform one call. Returns ``None`` on 404 and raises on other failures."""

        query = dict(params or {})
        if self.region:
            query["region"] = self.region

        with TRACER.start_as_current_span(f"grafana_cloud.{operation}") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("grafana_cloud.path", path)
            start = time.perf_counter()
            try:
                response = await self._http.request(method, path, params=query, json=json)
            except httpx.TimeoutException as exc:
                UPSTREAM_ERRORS_COUNTER.inc()
                LOGGER.warning("Grafana Cloud request timed out", operation=operation, path=path)
                raise TransportError(f"timed out calling grafana cloud ({operation}): {exc}") from exc
            except httpx.TransportError as exc:
                UPSTREAM_ERRORS_COUNTER.inc()
                LOGGER.warning("Grafana Cloud unreachable", operation=operation, path=path, error=str(exc))
                raise TransportError(f"error attempting request to grafana cloud ({operation}): {exc}") from exc
            finally:
                UPSTREAM_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code == httpx.codes.NOT_FOUND:
                LOGGER.debug("Grafana Cloud returned not found", operation=operation, path=path)
                return None
            if not response.is_success:
                UPSTREAM_ERRORS_COUNTER.inc()
                raise _api_error(response)
            LOGGER.debug("Grafana Cloud call succeeded", operation=operation, status=response.status_code)
            return response

    async def whoami(self) -> TokenResponse:
        """Look up the upstream record of the credential this client uses."""

        return await self.get_token_by_name(self.identity.name)

    async def create_token(self, request: CreateTokenRequest) -> TokenResponse:
        response = await self._request("POST", "/tokens", operation="create_token", json=request.to_wire())
        if response is None:
            raise UpstreamAPIError("NotFound", f"access policy '{request.access_policy_id}' not found", status_code=404)
        return _parse(TokenResponse, response)

    async def get_token(self, token_id: str) -> TokenResponse:
        response = await self._request("GET", f"/tokens/{token_id}", operation="get_token")
        if response is None:
            raise TokenNotFoundError(token_id)
        return _parse(TokenResponse, response)

    async def get_token_by_name(self, name: str) -> TokenResponse:
        response = await self._request("GET", "/tokens", operation="list_tokens", params={"name": name})
        if response is None:
            raise TokenNotFoundError(name)
        items = _parse(TokenListResponse, response).items
        if len(items) != 1:
            raise AmbiguousLookupError(name, len(items))
        return items[0]

    async def update_token_expiry(self, token_id: str, expires_at: datetime) -> None:
        payload = {"expiresAt": expires_at.isoformat().replace("+00:00", "Z")}
        response = await self._request("POST", f"/tokens/{token_id}", operation="update_token", json=payload)
        if response is None:
            raise TokenNotFoundError(token_id)

    async def delete_token(self, token_id: str) -> None:
        """Delete a token. A token that is already gone counts as deleted."""

        response = await self._request("DELETE", f"/tokens/{token_id}", operation="delete_token")
        if response is None:
            LOGGER.info("Token already absent upstream", token_id=token_id)

    async def create_access_policy(self, policy: dict[str, Any]) -> AccessPolicy:
        response = await self._request("POST", "/accesspolicies", operation="create_access_policy", json=policy)
        if response is None:
            raise UpstreamAPIError("NotFound", "access policy endpoint not found", status_code=404)
        return _parse(AccessPolicy, response)

    async def get_access_policy(self, policy_id: str) -> AccessPolicy:
        response = await self._request("GET", f"/accesspolicies/{policy_id}", operation="get_access_policy")
        if response is None:
            raise AccessPolicyNotFoundError(policy_id)
        return _parse(AccessPolicy, response)

    async def update_access_policy(self, policy_id: str, policy: dict[str, Any]) -> AccessPolicy:
        response = await self._request(
            "POST", f"/accesspolicies/{policy_id}", operation="update_access_policy", json=policy
        )
        if response is None:
            raise AccessPolicyNotFoundError(policy_id)
        return _parse(AccessPolicy, response)

    async def delete_access_policy(self, policy_id: str) -> None:
        response = await self._request("DELETE", f"/accesspolicies/{policy_id}", operation="delete_access_policy")
        if response is None:
            LOGGER.info("Access policy already absent upstream", access_policy_id=policy_id)


def _api_error(response: httpx.Response) -> UpstreamAPIError:
    url = str(response.request.url) if response.request is not None else None
    try:
        payload = APIErrorPayload.model_validate(response.json())
    except (ValueError, ValidationError):
        return UpstreamAPIError(
            str(response.status_code),
            response.text[:500] or response.reason_phrase,
            status_code=response.status_code,
            url=url,
        )
    LOGGER.warning(
        "Grafana Cloud API error",
        status=response.status_code,
        code=payload.code,
        error=payload.message,
    )
    return UpstreamAPIError(
        payload.code or str(response.status_code),
        payload.message,
        status_code=response.status_code,
        url=url,
    )


def _parse(model, response: httpx.Response):
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        UPSTREAM_ERRORS_COUNTER.inc()
        raise UpstreamAPIError(
            "InvalidResponse",
            f"could not decode grafana cloud response: {exc}",
            status_code=response.status_code,
        ) from exc
