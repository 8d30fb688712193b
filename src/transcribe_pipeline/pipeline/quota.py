"""Per-owner quota ledger: admission-time estimate checks and completion-time commits."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from transcribe_pipeline.config import TierSettings
from transcribe_pipeline.pipeline.errors import QuotaStoreError
from transcribe_pipeline.pipeline.formats import normalize_format
from transcribe_pipeline.pipeline.models import KIND_UNITS, JobKind, QuotaUnit, QuotaUsage, TierLimits
from transcribe_pipeline.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from transcribe_pipeline.storage.sqlmodel_models import QuotaCommit, QuotaLedgerEntry

if TYPE_CHECKING:
    from transcribe_pipeline.pipeline.repository import JobRepository

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
MAX_ESTIMATED_MINUTES = 480

# Approximate MB of payload per minute of audio.
_COMPRESSION_MB_PER_MINUTE: dict[str, float] = {
    "audio/mpeg": 1.0,
    "audio/mp3": 1.0,
    "mp3": 1.0,
    "mpeg": 1.0,
    "mpga": 1.0,
    "audio/mp4": 0.8,
    "audio/m4a": 0.8,
    "audio/x-m4a": 0.8,
    "m4a": 0.8,
    "audio/wav": 10.0,
    "audio/wave": 10.0,
    "audio/x-wav": 10.0,
    "wav": 10.0,
    "audio/flac": 6.0,
    "flac": 6.0,
    "audio/ogg": 0.7,
    "ogg": 0.7,
    "audio/webm": 0.7,
    "video/mp4": 2.0,
    "mp4": 2.0,
    "video/webm": 1.5,
    "webm": 1.5,
}
_DEFAULT_MB_PER_MINUTE = 1.0


def estimate_duration_seconds(size_bytes: int, payload_format: str) -> float:
    """Estimate media duration from size when the caller did not provide one."""

    rate = _COMPRESSION_MB_PER_MINUTE.get(normalize_format(payload_format), _DEFAULT_MB_PER_MINUTE)
    minutes = math.ceil((size_bytes / _MB) / rate)
    return float(min(minutes, MAX_ESTIMATED_MINUTES) * 60)


def period_for(moment: datetime) -> str:
    """Quota period key: calendar month in UTC."""

    return to_utc_aware_datetime(moment).strftime("%Y-%m")


class TierSource(Protocol):
    """Read-only view of the billing system's tier assignments."""

    def tier_for(self, owner_id: str) -> TierLimits: ...


class StaticTierSource:
    """Tier assignments loaded from configuration."""

    def __init__(self, settings: TierSettings) -> None:
        self._settings = settings

    def tier_for(self, owner_id: str) -> TierLimits:
        name = self._settings.owner_tiers.get(owner_id, self._settings.default_tier)
        spec = self._settings.tiers[name]
        return TierLimits(
            name=name,
            max_hours_per_period=spec.max_hours_per_period,
            max_jobs_per_period=spec.max_jobs_per_period,
            max_payload_bytes=spec.max_payload_bytes,
            max_payload_seconds=spec.max_payload_seconds,
            priority=spec.priority,
            max_concurrent_jobs=spec.max_concurrent_jobs,
        )


@dataclass(slots=True)
class _PendingCommit:
    owner_id: str
    unit: QuotaUnit
    units: float


class QuotaLedger:
    """Consumed units per (owner, period, unit).

    Admission reads the ledger with an estimate; workers commit actual units once
    per job. Commits that fail to persist are parked in a pending set and replayed
    by `reconcile`, which also covers jobs completed by a process that died before
    committing.
    """

    def __init__(self, *, engine: Engine, tiers: TierSource) -> None:
        self.engine = engine
        self.tiers = tiers
        self._pending: dict[str, _PendingCommit] = {}
        self._pending_lock = threading.Lock()

    @property
    def pending_job_ids(self) -> tuple[str, ...]:
        with self._pending_lock:
            return tuple(self._pending)

    def would_exceed(self, owner_id: str, kind: JobKind, estimated_units: float) -> bool:
        """True when consumed plus the estimate would cross the owner's tier limit."""

        unit = KIND_UNITS[kind]
        limit = self.tiers.tier_for(owner_id).limit_for(unit)
        if limit is None:
            return False
        consumed = self._consumed(owner_id=owner_id, period=period_for(utc_now()), unit=unit)
        return consumed + self._pending_units(owner_id, unit) + estimated_units > limit

    def usage(self, owner_id: str, kind: JobKind) -> QuotaUsage:
        return self.usage_for_unit(owner_id, KIND_UNITS[kind])

    def usage_for_unit(self, owner_id: str, unit: QuotaUnit) -> QuotaUsage:
        """Current-period consumption, including deferred commits, in one unit."""

        period = period_for(utc_now())
        return QuotaUsage(
            owner_id=owner_id,
            period=period,
            unit=unit,
            consumed_units=self._consumed(owner_id=owner_id, period=period, unit=unit)
            + self._pending_units(owner_id, unit),
            limit_units=self.tiers.tier_for(owner_id).limit_for(unit),
        )

    def commit(
        self,
        owner_id: str,
        kind: JobKind,
        actual_units: float,
        *,
        job_id: str,
        at: datetime | None = None,
    ) -> bool:
        """Record consumption for a completed job exactly once.

        Returns False when the job was already committed. Raises `QuotaStoreError`
        when the ledger cannot be written.
        """

        unit = KIND_UNITS[kind]
        moment = at or utc_now()
        period = period_for(moment)
        limit = self.tiers.tier_for(owner_id).limit_for(unit)
        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                session.add(
                    QuotaCommit(
                        job_id=job_id,
                        owner_id=owner_id,
                        period=period,
                        unit=unit.value,
                        units=actual_units,
                        committed_at=now,
                    ),
                )
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    return False

                statement = sqlite_insert(QuotaLedgerEntry).values(
                    owner_id=owner_id,
                    period=period,
                    unit=unit.value,
                    consumed_units=actual_units,
                    limit_units=limit,
                    updated_at=now,
                )
                session.exec(
                    statement.on_conflict_do_update(
                        index_elements=["owner_id", "period", "unit"],
                        set_={
                            "consumed_units": QuotaLedgerEntry.consumed_units + actual_units,
                            "limit_units": limit,
                            "updated_at": now,
                        },
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise QuotaStoreError(f"Quota commit failed for job {job_id}: {error}") from error

        with self._pending_lock:
            self._pending.pop(job_id, None)
        return True

    def settle(self, owner_id: str, kind: JobKind, actual_units: float, *, job_id: str) -> bool:
        """Commit usage, deferring to reconciliation instead of raising on store errors."""

        try:
            return self.commit(owner_id, kind, actual_units, job_id=job_id)
        except QuotaStoreError as error:
            logger.warning("Quota commit deferred for job %s: %s", job_id, error)
            with self._pending_lock:
                self._pending[job_id] = _PendingCommit(
                    owner_id=owner_id,
                    unit=KIND_UNITS[kind],
                    units=actual_units,
                )
            return False

    def reconcile(self, repository: JobRepository, *, limit: int = 100) -> int:
        """Commit usage for completed jobs that have no commit record yet."""

        committed = 0
        for job in repository.list_completed_without_commit(limit=limit):
            units = job.actual_units if job.actual_units is not None else job.estimated_units
            try:
                recorded = self.commit(
                    job.owner_id,
                    job.kind,
                    units,
                    job_id=job.job_id,
                    at=job.finished_at,
                )
            except QuotaStoreError as error:
                logger.warning("Quota reconciliation stopped at job %s: %s", job.job_id, error)
                break
            if recorded:
                committed += 1
                repository.add_job_event(
                    job_id=job.job_id,
                    event_type="quota_reconciled",
                    details={"units": units, "unit": KIND_UNITS[job.kind].value},
                )
        return committed

    def _consumed(self, *, owner_id: str, period: str, unit: QuotaUnit) -> float:
        try:
            with Session(self.engine) as session:
                entry = session.exec(
                    select(QuotaLedgerEntry).where(
                        QuotaLedgerEntry.owner_id == owner_id,
                        QuotaLedgerEntry.period == period,
                        QuotaLedgerEntry.unit == unit.value,
                    ),
                ).one_or_none()
        except SQLAlchemyError as error:
            raise QuotaStoreError(f"Quota read failed for owner {owner_id}: {error}") from error
        return entry.consumed_units if entry is not None else 0.0

    def _pending_units(self, owner_id: str, unit: QuotaUnit) -> float:
        with self._pending_lock:
            return sum(
                item.units
                for item in self._pending.values()
                if item.owner_id == owner_id and item.unit is unit
            )
