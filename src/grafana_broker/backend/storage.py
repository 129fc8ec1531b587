"""Key/value storage used by the backend for configuration and lease bookkeeping."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, TypeVar

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import Column, DateTime, LargeBinary, MetaData, String, Table, delete, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.errors import StorageFault

LOGGER = structlog.get_logger("grafana_broker.storage")

ModelT = TypeVar("ModelT", bound=BaseModel)


class Storage(Protocol):
    async def get(self, key: str) -> Optional[bytes]: ...

    async def put(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str) -> list[str]: ...


class InMemoryStorage:
    """Dict-backed storage, suitable for tests and single-process dev servers."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str) -> list[str]:
        return sorted(_children(self._data.keys(), prefix))


def _children(keys, prefix: str) -> set[str]:
    """Return the immediate children of ``prefix``; nested paths collapse to ``name/``."""

    entries: set[str] = set()
    for key in keys:
        if not key.startswith(prefix):
            continue
        remainder = key[len(prefix):]
        head, sep, _ = remainder.partition("/")
        entries.add(head + sep)
    return entries


metadata = MetaData()


kv_entries_table = Table(
    "kv_entries",
    metadata,
    Column("key", String(length=512), primary_key=True),
    Column("value", LargeBinary, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


class SQLStorage:
    """SQL-backed storage: one row per key."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        async with self._lock:
            if self._engine is not None:
                return

            url = make_url(self._database_url)
            if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
                sqlite_path = Path(url.database).expanduser()
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)

            self._engine = create_async_engine(self._database_url, future=True, echo=False)
            self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            LOGGER.debug("Storage initialised", url=url.render_as_string(hide_password=True))

    async def close(self) -> None:
        async with self._lock:
            if self._engine is None:
                return
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise StorageFault("SQLStorage not opened")
        return self._session_factory

    async def get(self, key: str) -> Optional[bytes]:
        try:
            async with self._sessions()() as session:
                result = await session.execute(
                    select(kv_entries_table.c.value).where(kv_entries_table.c.key == key)
                )
                row = result.first()
        except SQLAlchemyError as exc:
            raise StorageFault(f"failed to read '{key}': {exc}") from exc
        return bytes(row.value) if row else None

    async def put(self, key: str, value: bytes) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self._sessions()() as session:
                result = await session.execute(
                    update(kv_entries_table)
                    .where(kv_entries_table.c.key == key)
                    .values(value=value, updated_at=now)
                )
                if result.rowcount == 0:
                    await session.execute(
                        insert(kv_entries_table).values(key=key, value=value, created_at=now, updated_at=now)
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFault(f"failed to write '{key}': {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self._sessions()() as session:
                await session.execute(delete(kv_entries_table).where(kv_entries_table.c.key == key))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFault(f"failed to delete '{key}': {exc}") from exc

    async def list(self, prefix: str) -> list[str]:
        try:
            async with self._sessions()() as session:
                result = await session.execute(
                    select(kv_entries_table.c.key).where(kv_entries_table.c.key.startswith(prefix, autoescape=True))
                )
                keys = [row.key for row in result]
        except SQLAlchemyError as exc:
            raise StorageFault(f"failed to list '{prefix}': {exc}") from exc
        return sorted(_children(keys, prefix))


async def get_json(storage: Storage, key: str, model: type[ModelT]) -> Optional[ModelT]:
    raw = await storage.get(key)
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise StorageFault(f"stored entry '{key}' is not a valid {model.__name__}: {exc}") from exc


async def put_json(storage: Storage, key: str, value: BaseModel | dict[str, Any]) -> None:
    if isinstance(value, BaseModel):
        payload = value.model_dump_json().encode("utf-8")
    else:
        payload = json.dumps(value, separators=(",", ":")).encode("utf-8")
    await storage.put(key, payload)
