"""Key/value storage for backend state, persisted through async SQLAlchemy."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.errors import StorageError

LOGGER = structlog.get_logger("npmcreds.storage")

ModelT = TypeVar("ModelT", bound=BaseModel)

metadata = MetaData()


storage_entries_table = Table(
    "storage_entries",
    metadata,
    Column("key", String(length=512), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


class Storage(Protocol):
    """Storage collaborator: per-key consistency, no cross-key transactions."""

    async def get(self, key: str) -> Optional[dict[str, Any]]: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str) -> list[str]: ...


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
            }
        )
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _child_names(prefix: str, keys: list[str]) -> list[str]:
    """Collapse full keys into the immediate children of ``prefix``.

    Nested keys show up once as ``<segment>/``.
    """

    names: list[str] = []
    seen: set[str] = set()
    for key in keys:
        remainder = key[len(prefix) :]
        if not remainder:
            continue
        head, sep, _ = remainder.partition("/")
        name = head + sep
        if name not in seen:
            seen.add(name)
            names.append(name)
    return names


class SqlStorage:
    """``Storage`` backed by a single key/value table."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    select(storage_entries_table.c.value).where(storage_entries_table.c.key == key)
                )
                raw = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read {key!r}: {exc}") from exc
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"corrupt entry at {key!r}") from exc
        if not isinstance(decoded, dict):
            raise StorageError(f"corrupt entry at {key!r}")
        return decoded

    async def put(self, key: str, value: dict[str, Any]) -> None:
        payload = json.dumps(value, sort_keys=True, default=str)
        now = datetime.now(timezone.utc)
        try:
            async with self._sessions() as session:
                async with session.begin():
                    await session.execute(self._upsert(session, key, payload, now))
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to write {key!r}: {exc}") from exc

    def _upsert(self, session: AsyncSession, key: str, payload: str, now: datetime):
        dialect = session.bind.dialect.name if session.bind is not None else ""
        if dialect == "sqlite":
            stmt = sqlite.insert(storage_entries_table)
        elif dialect == "postgresql":
            stmt = postgresql.insert(storage_entries_table)
        else:
            raise StorageError(f"unsupported storage dialect: {dialect or 'unknown'}")
        stmt = stmt.values(key=key, value=payload, updated_at=now)
        return stmt.on_conflict_do_update(
            index_elements=[storage_entries_table.c.key],
            set_={"value": payload, "updated_at": now},
        )

    async def delete(self, key: str) -> None:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    await session.execute(delete(storage_entries_table).where(storage_entries_table.c.key == key))
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to delete {key!r}: {exc}") from exc

    async def list(self, prefix: str) -> list[str]:
        stmt = (
            select(storage_entries_table.c.key)
            .where(storage_entries_table.c.key.startswith(prefix, autoescape=True))
            .order_by(storage_entries_table.c.key)
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                keys = [row.key for row in result]
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to list {prefix!r}: {exc}") from exc
        return _child_names(prefix, keys)


async def read_model(storage: Storage, key: str, model: type[ModelT]) -> Optional[ModelT]:
    raw = await storage.get(key)
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        LOGGER.error("Stored entry failed validation", key=key, error=str(exc))
        raise StorageError(f"corrupt entry at {key!r}") from exc


async def write_model(storage: Storage, key: str, value: BaseModel) -> None:
    await storage.put(key, value.model_dump(mode="json"))
