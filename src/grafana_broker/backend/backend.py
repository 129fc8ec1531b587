"""Grafana Cloud secrets backend: one coroutine per administrative operation."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

import httpx
from pydantic import ValidationError

from ..common.errors import InvalidRequestError
from ..common.schemas import (
    AccessPolicy,
    AccessPolicyWriteRequest,
    ConfigTokenWriteRequest,
    IssuedCredential,
    LeaseConfig,
    LeaseConfigWriteRequest,
    RenewResult,
    RootCredentialConfig,
    RotationResult,
)
from ..common.settings import BrokerSettings
from . import lease, policies
from .configure import configure_root_credential
from .context import BackendContext
from .issuance import issue_credential
from .rotation import rotate_root_credential
from .storage import Storage
from .tokens import SECRET_TOKEN_TYPE, renew_token, revoke_token

BACKEND_HELP = "Generates Grafana Cloud access tokens using access policies."


class GrafanaCloudBackend:
    """Entry point the host dispatches validated requests to.

    Every call reads configuration fresh from storage and builds its own
    upstream client, so the backend holds no per-request state.
    """

    secret_type = SECRET_TOKEN_TYPE

    def __init__(
        self,
        storage: Storage,
        settings: BrokerSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self._ctx = BackendContext(storage=storage, settings=settings, transport=transport)

    async def write_config(self, request: ConfigTokenWriteRequest) -> RootCredentialConfig:
        return await configure_root_credential(self._ctx, request)

    async def read_config(self) -> Optional[RootCredentialConfig]:
        return await self._ctx.config_store.read()

    async def delete_config(self) -> None:
        await self._ctx.config_store.delete()

    async def write_lease_config(self, request: LeaseConfigWriteRequest) -> LeaseConfig:
        try:
            config = LeaseConfig(ttl=request.ttl, max_ttl=request.max_ttl)
        except ValidationError as exc:
            raise InvalidRequestError(_first_error(exc)) from exc
        if config.max_ttl is not None and config.max_ttl > self.settings.system_max_ttl_seconds:
            raise InvalidRequestError(
                f"max_ttl cannot exceed the system max ttl of {self.settings.system_max_ttl_seconds}s"
            )
        await lease.write_lease_config(self.storage, config)
        return config

    async def read_lease_config(self) -> Optional[LeaseConfig]:
        return await lease.read_lease_config(self.storage)

    async def delete_lease_config(self) -> None:
        await lease.delete_lease_config(self.storage)

    async def write_access_policy(self, name: str, request: AccessPolicyWriteRequest) -> AccessPolicy:
        return await policies.write_access_policy(self._ctx, name, request)

    async def read_access_policy(self, name: str) -> Optional[AccessPolicy]:
        return await policies.read_access_policy(self._ctx, name)

    async def delete_access_policy(self, name: str) -> Optional[AccessPolicy]:
        return await policies.delete_access_policy(self._ctx, name)

    async def list_access_policies(self) -> list[str]:
        return await policies.list_access_policies(self._ctx)

    async def issue_credential(self, policy_name: str) -> IssuedCredential:
        return await issue_credential(self._ctx, policy_name)

    async def renew_secret(self, internal_data: Mapping[str, Any], issue_time: datetime) -> RenewResult:
        return await renew_token(self._ctx, internal_data, issue_time)

    async def revoke_secret(self, internal_data: Mapping[str, Any]) -> None:
        await revoke_token(self._ctx, internal_data)

    async def rotate_root(self) -> RotationResult:
        return await rotate_root_credential(self._ctx)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    message = str(errors[0].get("msg", exc))
    return message.removeprefix("Value error, ")
