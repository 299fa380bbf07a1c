"""
Dead Letter Store - jobs that exhausted their retries or failed fatally.

Records are categorized (timeout, rate_limit, auth_error, service_error,
validation_error, unknown) so an operator can pick a recovery strategy,
requeue them individually or in bulk, or archive them once they pass the
retention window.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import timedelta
from typing import Any

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import ArchivedDeadLetterRecord, DeadLetterRecord
from learnloop.errors import ErrorKind, FailureCategory, JobError, classify_exception, policy_for
from learnloop.jobs.models import Job, PriorityTier
from learnloop.jobs.queue import JobQueue
from learnloop.time_utils import utcnow

# Message heuristics for failures that carry no typed kind
_MESSAGE_PATTERNS: list[tuple[re.Pattern[str], FailureCategory]] = [
    (re.compile(r"time(d)?[\s_-]?out", re.I), FailureCategory.TIMEOUT),
    (re.compile(r"rate[\s_-]?limit|too many requests|\b429\b|quota", re.I), FailureCategory.RATE_LIMIT),
    (re.compile(r"auth|api key|unauthori[sz]ed|forbidden|\b40[13]\b", re.I), FailureCategory.AUTH_ERROR),
    (
        re.compile(r"unavailable|service|connection|\b50[0234]\b|circuit", re.I),
        FailureCategory.SERVICE_ERROR,
    ),
    (re.compile(r"invalid|validation|not found|malformed", re.I), FailureCategory.VALIDATION_ERROR),
]

RECOVERY_STRATEGIES: dict[FailureCategory, str] = {
    FailureCategory.TIMEOUT: "retry_with_longer_timeout",
    FailureCategory.RATE_LIMIT: "retry_with_backoff",
    FailureCategory.AUTH_ERROR: "manual_intervention_required",
    FailureCategory.SERVICE_ERROR: "retry_after_service_recovery",
    FailureCategory.VALIDATION_ERROR: "skip_and_log",
    FailureCategory.UNKNOWN: "manual_review",
}

DEFAULT_ALERT_THRESHOLDS: dict[str, int] = {
    "critical_count": 10,
    "warning_count": 5,
}


def categorize_message(message: str) -> FailureCategory:
    for pattern, category in _MESSAGE_PATTERNS:
        if pattern.search(message or ""):
            return category
    return FailureCategory.UNKNOWN


def categorize(error: JobError | BaseException) -> tuple[ErrorKind, FailureCategory, str]:
    """Reduce a failure to (kind, category, message)."""
    if isinstance(error, JobError):
        kind, message = error.kind, error.message
    else:
        kind, message = classify_exception(error), str(error) or type(error).__name__

    if kind is ErrorKind.UNKNOWN:
        return kind, categorize_message(message), message
    return kind, policy_for(kind).category, message


class DeadLetterStore:
    """
    Persist, inspect and recover dead-lettered jobs.

    Example:
        >>> store = DeadLetterStore(queue=queue)
        >>> record_id = store.record(job, error)
        >>> store.requeue(record_id)
        True
    """

    def __init__(self, session_factory: sessionmaker | None = None, queue: JobQueue | None = None):
        self.settings = get_settings()
        self._session_factory = session_factory
        self.queue = queue

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # ========================================
    # Recording
    # ========================================

    def record(self, job: Job, error: JobError | BaseException, attempts: int | None = None) -> int:
        """Store a failed job and return the dead-letter record id."""
        kind, category, message = categorize(error)

        with session_scope(self.session_factory) as session:
            record = DeadLetterRecord(
                job_type=job.job_type,
                entity_type=job.entity_type,
                entity_id=job.entity_id,
                payload=dict(job.payload),
                tier=PriorityTier(job.tier).value,
                exception=message[:4000],
                error_kind=kind.value,
                category=category.value,
                attempts=attempts if attempts is not None else job.attempt,
                failed_at=utcnow(),
            )
            session.add(record)
            session.flush()
            record_id = record.id

        logger.bind(
            job_type=job.job_type,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            attempt=job.attempt,
            error_type=kind.value,
        ).warning(f"Job dead-lettered as {category.value} (record {record_id}): {message}")
        return record_id

    # ========================================
    # Recovery
    # ========================================

    def requeue(self, record_id: int) -> bool:
        """Push the original job back with attempt reset to 1 and drop the record."""
        if self.queue is None:
            raise RuntimeError("DeadLetterStore has no queue to requeue into")

        with session_scope(self.session_factory) as session:
            record = session.get(DeadLetterRecord, record_id)
            if record is None:
                logger.warning(f"Dead-letter record {record_id} not found")
                return False
            job = Job(
                job_type=record.job_type,
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                payload=dict(record.payload or {}),
                tier=PriorityTier(record.tier),
                attempt=1,
            )

        self.queue.push(job)
        with session_scope(self.session_factory) as session:
            session.execute(delete(DeadLetterRecord).where(DeadLetterRecord.id == record_id))

        logger.info(f"Requeued dead-letter record {record_id} as job {job.id}")
        return True

    def requeue_bulk(self, record_ids: list[int]) -> int:
        """Requeue several records; returns how many were requeued."""
        return sum(1 for record_id in record_ids if self.requeue(record_id))

    def archive(self, older_than_days: int | None = None) -> int:
        """
        Move records older than the retention window to the archive table.

        Copy and delete happen in one transaction, so running it twice moves
        nothing the second time.
        """
        days = older_than_days if older_than_days is not None else self.settings.dead_letter_retention_days
        cutoff = utcnow() - timedelta(days=days)

        with session_scope(self.session_factory) as session:
            records = list(
                session.execute(select(DeadLetterRecord).where(DeadLetterRecord.failed_at < cutoff)).scalars()
            )
            if not records:
                return 0

            for record in records:
                session.add(
                    ArchivedDeadLetterRecord(
                        original_id=record.id,
                        job_type=record.job_type,
                        entity_type=record.entity_type,
                        entity_id=record.entity_id,
                        payload=record.payload,
                        tier=record.tier,
                        exception=record.exception,
                        error_kind=record.error_kind,
                        category=record.category,
                        attempts=record.attempts,
                        failed_at=record.failed_at,
                    )
                )
            moved = len(records)
            session.flush()
            session.execute(delete(DeadLetterRecord).where(DeadLetterRecord.id.in_([r.id for r in records])))

        logger.info(f"Archived {moved} dead-letter records older than {days} days")
        return moved

    # ========================================
    # Inspection
    # ========================================

    def list_records(self, category: str | None = None, limit: int = 50) -> list[DeadLetterRecord]:
        with session_scope(self.session_factory) as session:
            stmt = select(DeadLetterRecord).order_by(DeadLetterRecord.failed_at.desc()).limit(limit)
            if category:
                stmt = stmt.where(DeadLetterRecord.category == FailureCategory(category).value)
            return list(session.execute(stmt).scalars())

    def failure_analysis(self) -> dict[str, Any]:
        """Totals by category, job type and day, plus the most common errors."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(
                    DeadLetterRecord.category,
                    DeadLetterRecord.job_type,
                    DeadLetterRecord.exception,
                    DeadLetterRecord.failed_at,
                )
            ).all()

        errors = Counter(row.exception for row in rows)
        return {
            "total_failures": len(rows),
            "failure_by_category": dict(Counter(row.category for row in rows)),
            "failure_by_job_type": dict(Counter(row.job_type for row in rows)),
            "failures_by_day": dict(Counter(row.failed_at.date().isoformat() for row in rows)),
            "most_common_errors": [
                {"error": message, "count": count} for message, count in errors.most_common(5)
            ],
        }

    def recovery_strategy(self, category: FailureCategory | str) -> str:
        return RECOVERY_STRATEGIES[FailureCategory(category)]

    def check_alerts(
        self,
        thresholds: dict[str, int] | None = None,
        window_hours: int = 24,
    ) -> list[dict[str, Any]]:
        """
        Alerts for recent dead-letter volume.

        Returns at most one alert, critical taking precedence over warning.
        """
        limits = {**DEFAULT_ALERT_THRESHOLDS, **(thresholds or {})}
        since = utcnow() - timedelta(hours=window_hours)

        with session_scope(self.session_factory) as session:
            recent = len(
                session.execute(select(DeadLetterRecord.id).where(DeadLetterRecord.failed_at >= since)).all()
            )

        for level, key in (("critical", "critical_count"), ("warning", "warning_count")):
            if recent >= limits[key]:
                alert = {
                    "level": level,
                    "count": recent,
                    "threshold": limits[key],
                    "message": f"{recent} jobs dead-lettered in the last {window_hours}h",
                }
                logger.warning(f"Dead-letter alert ({level}): {alert['message']}")
                return [alert]
        return []
