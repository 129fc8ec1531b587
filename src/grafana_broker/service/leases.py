"""Host-side lease bookkeeping for issued tokens."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import structlog

from ..backend import GrafanaCloudBackend, Storage
from ..backend.storage import get_json, put_json
from ..common.errors import BrokerError, LeaseError, LeaseNotFoundError
from ..common.schemas import IssuedCredential, LeaseRecord

LOGGER = structlog.get_logger("grafana_broker.service.leases")

LEASE_PREFIX = "sys/leases/"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TidyReport:
    revoked: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class LeaseManager:
    """Tracks leases and drives the backend's renew and revoke handlers.

    ``internal_data`` recorded at issuance is handed back to the backend
    untouched. A lease record is only removed after a successful revoke.
    """

    def __init__(self, storage: Storage, backend: GrafanaCloudBackend) -> None:
        self._storage = storage
        self._backend = backend

    async def create(self, policy_name: str, issued: IssuedCredential, *, now: Optional[datetime] = None) -> LeaseRecord:
        now = now or _utc_now()
        record = LeaseRecord(
            lease_id=f"{policy_name}-{uuid4().hex}",
            secret_type=self._backend.secret_type,
            policy_name=policy_name,
            internal_data=issued.internal_data.model_dump(),
            issue_time=now,
            expire_time=now + timedelta(seconds=issued.ttl_seconds),
            ttl_seconds=issued.ttl_seconds,
            max_ttl_seconds=issued.max_ttl_seconds,
            renewable=issued.renewable,
        )
        try:
            await put_json(self._storage, LEASE_PREFIX + record.lease_id, record)
        except BaseException as exc:
            LOGGER.error("Lease not recorded, revoking token", lease_id=record.lease_id, error=str(exc))
            try:
                await self._backend.revoke_secret(record.internal_data)
            except BrokerError as revoke_exc:
                LOGGER.error(
                    "Unrecorded token could not be revoked", lease_id=record.lease_id, error=str(revoke_exc)
                )
            raise
        LOGGER.info("Lease created", lease_id=record.lease_id, ttl=record.ttl_seconds, renewable=record.renewable)
        return record

    async def get(self, lease_id: str) -> Optional[LeaseRecord]:
        return await get_json(self._storage, LEASE_PREFIX + lease_id, LeaseRecord)

    async def list_ids(self) -> list[str]:
        return await self._storage.list(LEASE_PREFIX)

    async def renew(self, lease_id: str) -> LeaseRecord:
        record = await self.get(lease_id)
        if record is None:
            raise LeaseNotFoundError(lease_id)
        if not record.renewable:
            raise LeaseError(f"lease '{lease_id}' is not renewable")

        result = await self._backend.renew_secret(record.internal_data, record.issue_time)
        updated = record.model_copy(
            update={
                "ttl_seconds": result.ttl_seconds,
                "max_ttl_seconds": result.max_ttl_seconds,
                "renewable": result.renewable,
                "expire_time": result.expires_at,
                "last_renewal_time": _utc_now(),
            }
        )
        await put_json(self._storage, LEASE_PREFIX + lease_id, updated)
        LOGGER.info("Lease renewed", lease_id=lease_id, ttl=updated.ttl_seconds, renewable=updated.renewable)
        return updated

    async def revoke(self, lease_id: str) -> bool:
        """Revoke a lease. Returns ``False`` when no such lease is tracked."""

        record = await self.get(lease_id)
        if record is None:
            return False
        await self._backend.revoke_secret(record.internal_data)
        await self._storage.delete(LEASE_PREFIX + lease_id)
        LOGGER.info("Lease revoked", lease_id=lease_id)
        return True

    async def revoke_expired(self, *, now: Optional[datetime] = None) -> TidyReport:
        """Revoke every lease past its expiry. Failed revocations stay tracked."""

        now = now or _utc_now()
        report = TidyReport()
        for lease_id in await self.list_ids():
            record = await self.get(lease_id)
            if record is None or record.expire_time > now:
                continue
            try:
                await self.revoke(lease_id)
            except BrokerError as exc:
                LOGGER.warning("Expired lease revoke failed", lease_id=lease_id, error=str(exc))
                report.failed[lease_id] = str(exc)
                continue
            report.revoked.append(lease_id)
        return report
