"""Job value types shared by queues, the orchestrator and the dead-letter store."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from learnloop.errors import JobError
from learnloop.time_utils import utcnow


class PriorityTier(str, Enum):
    """Queue tiers, highest priority first."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def ordered(cls) -> list[PriorityTier]:
        return [cls.URGENT, cls.HIGH, cls.MEDIUM, cls.LOW]


@dataclass(frozen=True)
class Job:
    """A unit of asynchronous work bound to one entity."""

    job_type: str
    entity_type: str
    entity_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    tier: PriorityTier = PriorityTier.MEDIUM
    attempt: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    available_at: datetime = field(default_factory=utcnow)
    enqueued_at: datetime = field(default_factory=utcnow)

    @property
    def lease_key(self) -> str:
        return f"{self.job_type}:{self.entity_type}:{self.entity_id}"

    @property
    def identity(self) -> tuple[str, str, int]:
        return (self.job_type, self.entity_type, self.entity_id)

    def next_attempt(self) -> Job:
        return replace(self, attempt=self.attempt + 1)


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JobOutcome:
    """What execute() did with a job."""

    status: OutcomeStatus
    job: Job
    error: JobError | None = None
    retry_delay: float | None = None
    dead_letter_id: int | None = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.COMPLETED, OutcomeStatus.SKIPPED)
