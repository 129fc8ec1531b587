"""Per-mount collaborators shared by the backend operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx

from ..common.schemas import RootCredentialConfig
from ..common.settings import BrokerSettings
from ..upstream.client import UpstreamClient
from .config_store import ConfigStore
from .lease import LeasePolicy, load_lease_policy
from .storage import Storage


@dataclass
class BackendContext:
    storage: Storage
    settings: BrokerSettings
    transport: Optional[httpx.AsyncBaseTransport] = None
    config_store: ConfigStore = field(init=False)

    def __post_init__(self) -> None:
        self.config_store = ConfigStore(self.storage)

    def client_for(self, token: str) -> UpstreamClient:
        """Build a fresh upstream client for ``token``; handles are never reused across requests."""

        return UpstreamClient.authenticate(
            token,
            base_url=self.settings.upstream_url,
            timeout=self.settings.upstream_timeout_seconds,
            transport=self.transport,
        )

    async def configured_client(self) -> tuple[RootCredentialConfig, UpstreamClient]:
        config = await self.config_store.require()
        return config, self.client_for(config.token)

    async def lease_policy(self) -> LeasePolicy:
        return await load_lease_policy(self.storage, self.settings)
