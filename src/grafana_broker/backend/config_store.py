"""Single-slot store for the mount's root credential."""

from __future__ import annotations

from typing import Optional

from ..common.errors import NotConfiguredError
from ..common.schemas import RootCredentialConfig
from .storage import Storage, get_json, put_json

CONFIG_TOKEN_KEY = "config/token"


class ConfigStore:
    """Reads and writes ``config/token``. Nothing is cached between calls."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def read(self) -> Optional[RootCredentialConfig]:
        return await get_json(self._storage, CONFIG_TOKEN_KEY, RootCredentialConfig)

    async def require(self) -> RootCredentialConfig:
        config = await self.read()
        if config is None:
            raise NotConfiguredError()
        return config

    async def write(self, config: RootCredentialConfig) -> None:
        await put_json(self._storage, CONFIG_TOKEN_KEY, config)

    async def delete(self) -> None:
        await self._storage.delete(CONFIG_TOKEN_KEY)
