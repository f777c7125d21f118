from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
import json
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from visibility_jobs.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the backing store is unavailable or not configured."""


@dataclass(slots=True)
class FreshnessRecord:
    subject_key: str
    subject_id: str
    last_refreshed_at: datetime | None


@dataclass(slots=True)
class DataTtlConfig:
    data_type: str
    ttl_seconds: float


@dataclass(slots=True)
class AuditEvent:
    subject_id: str
    event_type: str
    actor: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FreshnessRepository(Protocol):
    async def get_by_key(self, subject_key: str) -> FreshnessRecord | None: ...

    async def get_by_subject_id(self, subject_id: str) -> FreshnessRecord | None: ...

    async def upsert(self, subject_key: str, subject_id: str, refreshed_at: datetime | None) -> FreshnessRecord: ...

    async def set_refreshed_at(self, subject_id: str, refreshed_at: datetime) -> int: ...

    async def list_records(self) -> list[FreshnessRecord]: ...

    async def get_ttl_config(self, data_type: str) -> DataTtlConfig | None: ...

    async def create_subject(self, subject_key: str, attrs: dict[str, Any]) -> str: ...

    async def record_audit_event(self, event: AuditEvent) -> None: ...

    async def close(self) -> None: ...


class InMemoryFreshnessRepository:
    """Process-local registry for development and tests."""

    def __init__(self, ttl_configs: dict[str, float] | None = None) -> None:
        self.records: dict[str, FreshnessRecord] = {}
        self.keys_by_subject: dict[str, str] = {}
        self.ttl_configs: dict[str, DataTtlConfig] = {
            data_type: DataTtlConfig(data_type=data_type, ttl_seconds=seconds)
            for data_type, seconds in (ttl_configs or {}).items()
        }
        self.subjects: dict[str, dict[str, Any]] = {}
        self.audit_events: list[AuditEvent] = []

    async def get_by_key(self, subject_key: str) -> FreshnessRecord | None:
        record = self.records.get(subject_key)
        return replace(record) if record is not None else None

    async def get_by_subject_id(self, subject_id: str) -> FreshnessRecord | None:
        subject_key = self.keys_by_subject.get(subject_id)
        if subject_key is None:
            return None
        return await self.get_by_key(subject_key)

    async def upsert(self, subject_key: str, subject_id: str, refreshed_at: datetime | None) -> FreshnessRecord:
        previous = self.records.get(subject_key)
        if previous is not None and previous.subject_id != subject_id:
            self.keys_by_subject.pop(previous.subject_id, None)
        record = FreshnessRecord(subject_key=subject_key, subject_id=subject_id, last_refreshed_at=refreshed_at)
        self.records[subject_key] = record
        self.keys_by_subject[subject_id] = subject_key
        return replace(record)

    async def set_refreshed_at(self, subject_id: str, refreshed_at: datetime) -> int:
        subject_key = self.keys_by_subject.get(subject_id)
        if subject_key is None:
            return 0
        self.records[subject_key].last_refreshed_at = refreshed_at
        return 1

    async def list_records(self) -> list[FreshnessRecord]:
        return [replace(record) for record in self.records.values()]

    async def get_ttl_config(self, data_type: str) -> DataTtlConfig | None:
        return self.ttl_configs.get(data_type)

    async def create_subject(self, subject_key: str, attrs: dict[str, Any]) -> str:
        subject_id = str(uuid4())
        self.subjects[subject_id] = {"subject_key": subject_key, **attrs}
        return subject_id

    async def record_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(event)

    async def close(self) -> None:
        return None


SCHEMA_SQL = """
create table if not exists subjects (
  id uuid primary key,
  subject_key text not null,
  attrs jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now()
);

create table if not exists subject_registry (
  subject_key text primary key,
  subject_id text not null,
  last_refreshed_at timestamptz,
  updated_at timestamptz not null default now()
);

create index if not exists subject_registry_subject_id_idx on subject_registry (subject_id);

create table if not exists data_ttl_config (
  data_type text primary key,
  ttl_seconds double precision not null
);

create table if not exists audit_events (
  id bigserial primary key,
  subject_id text not null,
  event_type text not null,
  actor text not null,
  metadata jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now()
);
"""


class PostgresFreshnessRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await pool.execute(SCHEMA_SQL)

    async def get_by_key(self, subject_key: str) -> FreshnessRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select subject_key, subject_id, last_refreshed_at
            from subject_registry
            where subject_key = $1
            """,
            subject_key,
        )
        return self._record_row_to_record(row) if row is not None else None

    async def get_by_subject_id(self, subject_id: str) -> FreshnessRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select subject_key, subject_id, last_refreshed_at
            from subject_registry
            where subject_id = $1
            order by updated_at desc
            limit 1
            """,
            subject_id,
        )
        return self._record_row_to_record(row) if row is not None else None

    async def upsert(self, subject_key: str, subject_id: str, refreshed_at: datetime | None) -> FreshnessRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into subject_registry (subject_key, subject_id, last_refreshed_at, updated_at)
            values ($1, $2, $3, now())
            on conflict (subject_key) do update
            set
              subject_id = excluded.subject_id,
              last_refreshed_at = excluded.last_refreshed_at,
              updated_at = now()
            returning subject_key, subject_id, last_refreshed_at
            """,
            subject_key,
            subject_id,
            refreshed_at,
        )
        if row is None:  # pragma: no cover - upsert always returns a row
            raise RepositoryError("subject registry upsert returned no row")
        return self._record_row_to_record(row)

    async def set_refreshed_at(self, subject_id: str, refreshed_at: datetime) -> int:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update subject_registry
            set last_refreshed_at = $2, updated_at = now()
            where subject_id = $1
            """,
            subject_id,
            refreshed_at,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1".
        return int(status.rsplit(" ", 1)[-1])

    async def list_records(self) -> list[FreshnessRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select subject_key, subject_id, last_refreshed_at
            from subject_registry
            order by subject_key asc
            """
        )
        return [self._record_row_to_record(row) for row in rows]

    async def get_ttl_config(self, data_type: str) -> DataTtlConfig | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select data_type, ttl_seconds from data_ttl_config where data_type = $1",
            data_type,
        )
        if row is None:
            return None
        return DataTtlConfig(data_type=row["data_type"], ttl_seconds=float(row["ttl_seconds"]))

    async def create_subject(self, subject_key: str, attrs: dict[str, Any]) -> str:
        pool = await self._get_pool()
        subject_id = str(uuid4())
        await pool.execute(
            """
            insert into subjects (id, subject_key, attrs)
            values ($1::uuid, $2, $3::jsonb)
            """,
            subject_id,
            subject_key,
            json.dumps(attrs, default=str),
        )
        return subject_id

    async def record_audit_event(self, event: AuditEvent) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into audit_events (subject_id, event_type, actor, metadata, created_at)
            values ($1, $2, $3, $4::jsonb, $5)
            """,
            event.subject_id,
            event.event_type,
            event.actor,
            json.dumps(event.metadata, default=str),
            event.created_at,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("VJ_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _record_row_to_record(row: asyncpg.Record) -> FreshnessRecord:
        return FreshnessRecord(
            subject_key=row["subject_key"],
            subject_id=row["subject_id"],
            last_refreshed_at=row["last_refreshed_at"],
        )


@lru_cache
def get_repository() -> FreshnessRepository:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryFreshnessRepository()
    return PostgresFreshnessRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
