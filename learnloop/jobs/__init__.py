"""
Asynchronous job execution: tiered queues, idempotent dispatch, retries and
the dead-letter store.
"""

from learnloop.jobs.dead_letter import DeadLetterStore
from learnloop.jobs.models import Job, JobOutcome, OutcomeStatus, PriorityTier
from learnloop.jobs.orchestrator import JobOrchestrator, JobRegistry, JobSpec, WorkerPool
from learnloop.jobs.queue import DatabaseJobQueue, InMemoryJobQueue, WeightedTierSelector

__all__ = [
    "Job",
    "JobOutcome",
    "OutcomeStatus",
    "PriorityTier",
    "JobSpec",
    "JobRegistry",
    "JobOrchestrator",
    "WorkerPool",
    "InMemoryJobQueue",
    "DatabaseJobQueue",
    "WeightedTierSelector",
    "DeadLetterStore",
]
