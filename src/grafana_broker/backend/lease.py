"""Lease TTL policy for derived tokens."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from ..common.errors import LeaseError
from ..common.schemas import LeaseConfig
from ..common.settings import BrokerSettings
from .storage import Storage, get_json, put_json

LOGGER = structlog.get_logger("grafana_broker.lease")

LEASE_CONFIG_KEY = "config/lease"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LeasePolicy:
    """Combines operator TTL overrides with the system-wide defaults and ceiling."""

    def __init__(
        self,
        config: Optional[LeaseConfig],
        *,
        system_default_ttl: timedelta,
        system_max_ttl: timedelta,
    ) -> None:
        self.config = config or LeaseConfig()
        self._system_default_ttl = system_default_ttl
        self._system_max_ttl = system_max_ttl

    @classmethod
    def from_settings(cls, config: Optional[LeaseConfig], settings: BrokerSettings) -> "LeasePolicy":
        return cls(
            config,
            system_default_ttl=timedelta(seconds=settings.system_default_ttl_seconds),
            system_max_ttl=timedelta(seconds=settings.system_max_ttl_seconds),
        )

    @property
    def max_ttl(self) -> timedelta:
        if self.config.max_ttl is None:
            return self._system_max_ttl
        return min(timedelta(seconds=self.config.max_ttl), self._system_max_ttl)

    @property
    def default_ttl(self) -> timedelta:
        if self.config.ttl is None:
            return self._system_default_ttl
        return timedelta(seconds=self.config.ttl)

    def effective_ttl(
        self,
        requested: Optional[timedelta] = None,
        *,
        issued_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> timedelta:
        """Return the TTL to grant now.

        ``issued_at`` is the original issuance time of a lease being renewed; the
        result then never extends past ``issued_at + max_ttl``.
        """

        ttl = requested if requested is not None else self.default_ttl
        if ttl <= timedelta(0):
            raise LeaseError("requested ttl must be positive")

        max_ttl = self.max_ttl
        if ttl > max_ttl:
            LOGGER.debug("Clamping ttl to max ttl", ttl=ttl.total_seconds(), max_ttl=max_ttl.total_seconds())
            ttl = max_ttl

        if issued_at is not None:
            now = now or _utc_now()
            remaining = issued_at + max_ttl - now
            ttl = min(ttl, remaining)

        if ttl <= timedelta(0):
            raise LeaseError("lease has reached its max ttl and cannot be extended")
        return ttl

    def renewable_after(self, ttl: timedelta, *, issued_at: datetime, now: Optional[datetime] = None) -> bool:
        """Whether a lease granted ``ttl`` at ``now`` can still be extended later."""

        now = now or _utc_now()
        return now + ttl < issued_at + self.max_ttl


async def read_lease_config(storage: Storage) -> Optional[LeaseConfig]:
    return await get_json(storage, LEASE_CONFIG_KEY, LeaseConfig)


async def write_lease_config(storage: Storage, config: LeaseConfig) -> None:
    await put_json(storage, LEASE_CONFIG_KEY, config)


async def delete_lease_config(storage: Storage) -> None:
    await storage.delete(LEASE_CONFIG_KEY)


async def load_lease_policy(storage: Storage, settings: BrokerSettings) -> LeasePolicy:
    return LeasePolicy.from_settings(await read_lease_config(storage), settings)
