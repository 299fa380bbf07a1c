"""
Tiered job queues and the tier selector.

Jobs live in one of four priority tiers. Workers ask the WeightedTierSelector
which tier to pull from next; the selector runs smooth weighted round-robin
(default weights urgent 8, high 4, medium 2, low 1) over the tiers that have
ready work, so higher tiers get proportionally more pulls and lower tiers are
never starved.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import QueuedJob
from learnloop.jobs.models import Job, PriorityTier
from learnloop.time_utils import utcnow


class JobQueue(Protocol):
    def push(self, job: Job, delay_seconds: float = 0) -> Job: ...

    def pop(self, tier: PriorityTier) -> Job | None: ...

    def contains(self, job_type: str, entity_type: str, entity_id: int) -> bool: ...

    def size(self, tier: PriorityTier | None = None) -> int: ...

    def ready_tiers(self) -> list[PriorityTier]: ...


def _scheduled(job: Job, delay_seconds: float, now: datetime) -> Job:
    """Stamp the job with the queue clock so readiness never mixes clocks."""
    return replace(job, available_at=now + timedelta(seconds=max(0.0, delay_seconds)))


class InMemoryJobQueue:
    """Process-local queue; jobs are lost on restart."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._tiers: dict[PriorityTier, list[Job]] = {tier: [] for tier in PriorityTier.ordered()}

    def push(self, job: Job, delay_seconds: float = 0) -> Job:
        job = _scheduled(job, delay_seconds, self._clock())
        with self._lock:
            self._tiers[PriorityTier(job.tier)].append(job)
        return job

    def pop(self, tier: PriorityTier) -> Job | None:
        now = self._clock()
        with self._lock:
            ready = [job for job in self._tiers[PriorityTier(tier)] if job.available_at <= now]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.available_at, j.enqueued_at))
            self._tiers[PriorityTier(tier)].remove(job)
            return job

    def contains(self, job_type: str, entity_type: str, entity_id: int) -> bool:
        identity = (job_type, entity_type, entity_id)
        with self._lock:
            return any(job.identity == identity for jobs in self._tiers.values() for job in jobs)

    def size(self, tier: PriorityTier | None = None) -> int:
        with self._lock:
            if tier is not None:
                return len(self._tiers[PriorityTier(tier)])
            return sum(len(jobs) for jobs in self._tiers.values())

    def ready_tiers(self) -> list[PriorityTier]:
        now = self._clock()
        with self._lock:
            return [
                tier
                for tier in PriorityTier.ordered()
                if any(job.available_at <= now for job in self._tiers[tier])
            ]


class DatabaseJobQueue:
    """Durable queue backed by the queued_jobs table."""

    def __init__(self, session_factory: sessionmaker | None = None, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock

    def push(self, job: Job, delay_seconds: float = 0) -> Job:
        job = _scheduled(job, delay_seconds, self._clock())
        with session_scope(self._session_factory) as session:
            session.add(
                QueuedJob(
                    job_id=job.id,
                    job_type=job.job_type,
                    entity_type=job.entity_type,
                    entity_id=job.entity_id,
                    payload=dict(job.payload),
                    tier=PriorityTier(job.tier).value,
                    attempt=job.attempt,
                    available_at=job.available_at,
                    enqueued_at=job.enqueued_at,
                )
            )
        return job

    def pop(self, tier: PriorityTier) -> Job | None:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            # Another worker may claim the same row between select and delete
            for _ in range(3):
                row = session.execute(
                    select(QueuedJob)
                    .where(QueuedJob.tier == PriorityTier(tier).value, QueuedJob.available_at <= now)
                    .order_by(QueuedJob.available_at, QueuedJob.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                ).scalar_one_or_none()
                if row is None:
                    return None

                claimed = session.execute(delete(QueuedJob).where(QueuedJob.id == row.id))
                if claimed.rowcount == 1:
                    return Job(
                        job_type=row.job_type,
                        entity_type=row.entity_type,
                        entity_id=row.entity_id,
                        payload=dict(row.payload or {}),
                        tier=PriorityTier(row.tier),
                        attempt=row.attempt,
                        id=row.job_id,
                        available_at=row.available_at,
                        enqueued_at=row.enqueued_at,
                    )
                session.expunge(row)
            logger.debug(f"Lost the race for a {tier} job three times")
            return None

    def contains(self, job_type: str, entity_type: str, entity_id: int) -> bool:
        with session_scope(self._session_factory) as session:
            row = session.execute(
                select(QueuedJob.id)
                .where(
                    QueuedJob.job_type == job_type,
                    QueuedJob.entity_type == entity_type,
                    QueuedJob.entity_id == entity_id,
                )
                .limit(1)
            ).first()
            return row is not None

    def size(self, tier: PriorityTier | None = None) -> int:
        with session_scope(self._session_factory) as session:
            stmt = select(func.count()).select_from(QueuedJob)
            if tier is not None:
                stmt = stmt.where(QueuedJob.tier == PriorityTier(tier).value)
            return session.execute(stmt).scalar_one()

    def ready_tiers(self) -> list[PriorityTier]:
        with session_scope(self._session_factory) as session:
            tiers = set(
                session.execute(
                    select(QueuedJob.tier).where(QueuedJob.available_at <= self._clock()).distinct()
                ).scalars()
            )
        return [tier for tier in PriorityTier.ordered() if tier.value in tiers]


class WeightedTierSelector:
    """
    Smooth weighted round-robin over priority tiers.

    Each pick adds every candidate's weight to its running credit, selects
    the candidate with the highest credit and subtracts the candidates' total
    weight from it. Over any window, picks are proportional to weights.
    """

    def __init__(self, weights: dict[PriorityTier | str, int] | None = None):
        raw = weights if weights is not None else get_settings().get_tier_weights()
        self.weights = {PriorityTier(tier): int(weight) for tier, weight in raw.items()}
        for tier in PriorityTier.ordered():
            self.weights.setdefault(tier, 1)
            if self.weights[tier] < 1:
                raise ValueError(f"Tier weight for {tier.value} must be >= 1")
        self._credit = {tier: 0 for tier in PriorityTier.ordered()}
        self._lock = threading.Lock()

    def choose(self, candidates: Iterable[PriorityTier]) -> PriorityTier | None:
        """Pick the next tier among the candidates (tiers with ready work)."""
        tiers = [PriorityTier(t) for t in candidates]
        if not tiers:
            return None
        with self._lock:
            total = 0
            for tier in tiers:
                self._credit[tier] += self.weights[tier]
                total += self.weights[tier]
            # Ties go to the higher-priority tier
            picked = max(tiers, key=lambda t: (self._credit[t], -PriorityTier.ordered().index(t)))
            self._credit[picked] -= total
            return picked

    def order(self, candidates: Iterable[PriorityTier]) -> list[PriorityTier]:
        """The chosen tier first, then the remaining candidates by priority."""
        tiers = [PriorityTier(t) for t in candidates]
        first = self.choose(tiers)
        if first is None:
            return []
        return [first] + [t for t in PriorityTier.ordered() if t in tiers and t is not first]
