from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any

from visibility_jobs.freshness.repository import AuditEvent, FreshnessRecord, FreshnessRepository, RepositoryError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DataType(str, Enum):
    BRAND_ENRICHMENT = "brand_enrichment"
    LLM_SAMPLING = "llm_sampling"
    SERP_DATA = "serp_data"
    VISIBILITY_SCORING = "visibility_scoring"


DEFAULT_TTLS: Mapping[str, timedelta] = {
    DataType.BRAND_ENRICHMENT.value: timedelta(days=7),
    DataType.LLM_SAMPLING.value: timedelta(days=1),
    DataType.SERP_DATA.value: timedelta(hours=12),
    DataType.VISIBILITY_SCORING.value: timedelta(hours=6),
}
FALLBACK_DATA_TYPE = DataType.BRAND_ENRICHMENT.value


class FreshnessLookupError(RepositoryError):
    """Raised when a registry lookup fails; callers treat it as "work is needed"."""


@dataclass(slots=True)
class FreshnessCheck:
    exists: bool
    is_fresh: bool
    subject_id: str | None = None
    last_refreshed: datetime | None = None


@dataclass(slots=True)
class WorkDecision:
    needs: bool
    reason: str
    last_refreshed: datetime | None = None
    subject_key: str | None = None


@dataclass(slots=True)
class SubjectResolution:
    subject_id: str
    is_new: bool
    can_reuse: bool


@dataclass(slots=True)
class FreshnessStats:
    total: int = 0
    fresh: int = 0
    stale: int = 0
    never_refreshed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _data_type_name(data_type: DataType | str) -> str:
    return data_type.value if isinstance(data_type, DataType) else str(data_type)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FreshnessRegistry:
    """TTL gate in front of every costly external-provider call.

    Lookups fail open: if the registry or its TTL configuration cannot be read,
    the answer is "do the work" rather than treating missing data as fresh.
    """

    def __init__(
        self,
        repository: FreshnessRepository,
        *,
        ttl_overrides: Mapping[str, float] | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.ttl_overrides = dict(ttl_overrides or {})
        self.now = now

    async def get_ttl(self, data_type: DataType | str) -> timedelta:
        name = _data_type_name(data_type)
        try:
            config = await self.repository.get_ttl_config(name)
        except Exception as exc:
            logger.warning("ttl config lookup failed data_type=%s; using default: %s", name, exc)
            config = None

        if config is not None and config.ttl_seconds > 0:
            return timedelta(seconds=config.ttl_seconds)

        override = self.ttl_overrides.get(name)
        if override is not None and override > 0:
            return timedelta(seconds=override)

        return DEFAULT_TTLS.get(name, DEFAULT_TTLS[FALLBACK_DATA_TYPE])

    def is_fresh(self, last_refreshed: datetime | None, ttl: timedelta) -> bool:
        if last_refreshed is None:
            return False
        return self.now() - _as_utc(last_refreshed) < ttl

    async def check_freshness(
        self,
        subject_key: str,
        data_type: DataType | str = DataType.BRAND_ENRICHMENT,
    ) -> FreshnessCheck:
        try:
            record = await self._lookup(self.repository.get_by_key, subject_key)
        except FreshnessLookupError:
            logger.exception("freshness check failed subject_key=%s", subject_key)
            return FreshnessCheck(exists=False, is_fresh=False)

        if record is None:
            return FreshnessCheck(exists=False, is_fresh=False)

        ttl = await self.get_ttl(data_type)
        return FreshnessCheck(
            exists=True,
            is_fresh=self.is_fresh(record.last_refreshed_at, ttl),
            subject_id=record.subject_id,
            last_refreshed=record.last_refreshed_at,
        )

    async def needs_work(
        self,
        subject_id: str,
        data_type: DataType | str = DataType.BRAND_ENRICHMENT,
    ) -> WorkDecision:
        try:
            record = await self._lookup(self.repository.get_by_subject_id, subject_id)
        except FreshnessLookupError:
            logger.exception("needs-work lookup failed subject_id=%s; defaulting to work", subject_id)
            return WorkDecision(needs=True, reason="lookup_failed")

        if record is None:
            return WorkDecision(needs=True, reason="no_record")
        if record.last_refreshed_at is None:
            return WorkDecision(needs=True, reason="never_refreshed", subject_key=record.subject_key)

        ttl = await self.get_ttl(data_type)
        fresh = self.is_fresh(record.last_refreshed_at, ttl)
        return WorkDecision(
            needs=not fresh,
            reason="fresh" if fresh else "stale",
            last_refreshed=record.last_refreshed_at,
            subject_key=record.subject_key,
        )

    async def register_work(self, subject_key: str, subject_id: str) -> FreshnessRecord:
        record = await self.repository.upsert(subject_key, subject_id, self.now())
        logger.info("registered work subject_key=%s subject_id=%s", subject_key, subject_id)
        return record

    async def get_or_create_subject(
        self,
        subject_key: str,
        attrs: dict[str, Any] | None = None,
        *,
        force_new: bool = False,
    ) -> SubjectResolution:
        check = FreshnessCheck(exists=False, is_fresh=False)
        if not force_new:
            check = await self.check_freshness(subject_key)

        if check.exists and check.subject_id:
            if check.is_fresh:
                logger.info("reusing fresh subject subject_key=%s subject_id=%s", subject_key, check.subject_id)
                return SubjectResolution(subject_id=check.subject_id, is_new=False, can_reuse=True)
            logger.info("subject not fresh; returning for refresh subject_key=%s subject_id=%s", subject_key, check.subject_id)
            return SubjectResolution(subject_id=check.subject_id, is_new=False, can_reuse=False)

        subject_id = await self.repository.create_subject(subject_key, dict(attrs or {}))
        # Registered as never refreshed; only a completed enrichment stamps the time.
        await self.repository.upsert(subject_key, subject_id, None)
        logger.info("created subject subject_key=%s subject_id=%s", subject_key, subject_id)
        return SubjectResolution(subject_id=subject_id, is_new=True, can_reuse=False)

    async def force_refresh(self, subject_id: str, reason: str, *, actor: str = "admin") -> bool:
        updated = await self.repository.set_refreshed_at(subject_id, EPOCH)
        await self.repository.record_audit_event(
            AuditEvent(
                subject_id=subject_id,
                event_type="admin_force_refresh",
                actor=actor,
                metadata={"reason": reason, "records_invalidated": updated},
                created_at=self.now(),
            )
        )
        logger.warning(
            "forced refresh subject_id=%s actor=%s reason=%s records_invalidated=%s",
            subject_id,
            actor,
            reason,
            updated,
        )
        return updated > 0

    async def get_stats(self, data_type: DataType | str = DataType.BRAND_ENRICHMENT) -> FreshnessStats:
        try:
            records = await self.repository.list_records()
        except Exception:
            logger.exception("freshness stats lookup failed")
            return FreshnessStats()

        ttl = await self.get_ttl(data_type)
        stats = FreshnessStats(total=len(records))
        for record in records:
            if record.last_refreshed_at is None:
                stats.never_refreshed += 1
            elif self.is_fresh(record.last_refreshed_at, ttl):
                stats.fresh += 1
            else:
                stats.stale += 1
        return stats

    @staticmethod
    async def _lookup(
        fetch: Callable[[str], Any],
        value: str,
    ) -> FreshnessRecord | None:
        try:
            return await fetch(value)
        except Exception as exc:
            raise FreshnessLookupError(f"freshness lookup failed for {value}") from exc
