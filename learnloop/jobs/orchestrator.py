"""
Job Orchestrator - idempotent dispatch and execution of pipeline jobs.

Lifecycle of one attempt:

1. acquire the idempotency lease for (job type, entity); a held lease makes
   the attempt a no-op
2. mark the entity `processing` (for job types that own the entity status)
3. run the handler under the job type's timeout
4. on success mark `completed`; on a retryable failure with attempts left,
   re-enqueue with the scheduled delay; otherwise dead-letter the job and
   mark the entity `failed`
5. release the lease

Retry decisions only consult the ErrorKind policy table. A failed status,
queue or dead-letter write never drops the job: it is retried or parked.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING
from learnloop.errors import ErrorKind, JobError, Result
from learnloop.jobs.dead_letter import DeadLetterStore
from learnloop.jobs.models import Job, JobOutcome, OutcomeStatus, PriorityTier
from learnloop.jobs.queue import JobQueue, WeightedTierSelector
from learnloop.reliability.lease import LeaseService
from learnloop.reliability.retry_policy import RetryPolicy
from learnloop.semantic.embedding_store import EntityKind

Handler = Callable[[Job], Awaitable[Result]]


@dataclass(frozen=True)
class JobSpec:
    """Registration of one job type."""

    job_type: str
    handler: Handler
    policy: RetryPolicy
    entity_kind: EntityKind | None = None  # None accepts any kind
    default_tier: PriorityTier = PriorityTier.MEDIUM
    tracks_status: bool = False


class JobRegistry:
    """job_type -> JobSpec"""

    def __init__(self) -> None:
        self._specs: dict[str, JobSpec] = {}

    def register(self, spec: JobSpec) -> None:
        if spec.job_type in self._specs:
            raise ValueError(f"Job type already registered: {spec.job_type}")
        self._specs[spec.job_type] = spec

    def get(self, job_type: str) -> JobSpec:
        try:
            return self._specs[job_type]
        except KeyError:
            raise ValueError(f"Unknown job type: {job_type}") from None

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._specs

    def job_types(self) -> list[str]:
        return sorted(self._specs)


class JobOrchestrator:
    """
    Dispatch jobs into the tiered queue and execute them.

    Example:
        >>> orchestrator = JobOrchestrator(registry, queue, leases, dead_letters)
        >>> orchestrator.dispatch("generate_output", input_id)
        >>> outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))
    """

    def __init__(
        self,
        registry: JobRegistry,
        queue: JobQueue,
        leases: LeaseService,
        dead_letters: DeadLetterStore,
        session_factory: sessionmaker | None = None,
    ):
        self.settings = get_settings()
        self.registry = registry
        self.queue = queue
        self.leases = leases
        self.dead_letters = dead_letters
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # ========================================
    # Dispatch
    # ========================================

    def dispatch(
        self,
        job_type: str,
        entity_id: int,
        payload: dict[str, Any] | None = None,
        tier: PriorityTier | str | None = None,
        entity_type: EntityKind | str | None = None,
    ) -> Job | None:
        """
        Enqueue a job unless the same (job type, entity) is running or queued.

        Returns:
            The queued Job, or None when dispatch was a no-op.
        """
        spec = self.registry.get(job_type)
        kind = EntityKind(entity_type) if entity_type is not None else spec.entity_kind
        if kind is None:
            raise ValueError(f"Job type {job_type} needs an explicit entity_type")
        if spec.entity_kind is not None and kind is not spec.entity_kind:
            raise ValueError(f"Job type {job_type} runs on {spec.entity_kind.value}, not {kind.value}")

        job = Job(
            job_type=job_type,
            entity_type=kind.value,
            entity_id=entity_id,
            payload=dict(payload or {}),
            tier=PriorityTier(tier) if tier is not None else spec.default_tier,
        )
        log = logger.bind(job_type=job_type, entity_type=kind.value, entity_id=entity_id)

        if self.leases.is_held(job.lease_key):
            log.debug("Dispatch skipped: job already running")
            return None
        if self.queue.contains(*job.identity):
            log.debug("Dispatch skipped: job already queued")
            return None

        self.queue.push(job)
        log.info(f"Dispatched {job_type} to {job.tier.value} queue")
        return job

    # ========================================
    # Execution
    # ========================================

    async def execute(self, job: Job) -> JobOutcome:
        """Run one attempt of a job and decide what happens next."""
        spec = self.registry.get(job.job_type)
        policy = spec.policy
        log = logger.bind(
            job_type=job.job_type, entity_type=job.entity_type, entity_id=job.entity_id, attempt=job.attempt
        )

        token = self.leases.acquire(job.lease_key, policy.lease_ttl(self.settings.lease_ttl_margin_seconds))
        if token is None:
            log.warning("Job already in progress, skipping attempt")
            return JobOutcome(OutcomeStatus.SKIPPED, job)

        try:
            log.info(f"Starting attempt {job.attempt}/{policy.max_tries}")
            try:
                if spec.tracks_status:
                    self._mark_status(job, STATUS_PROCESSING)
            except Exception as e:  # Intentionally broad - classified like a handler failure
                log.exception(f"Could not mark {job.entity_type} {job.entity_id} processing")
                result = Result.from_exception(e)
            else:
                result = await self._run_handler(spec, job)

            if result.ok:
                if spec.tracks_status:
                    self._try_mark_status(job, STATUS_COMPLETED, log)
                log.info("Job completed")
                return JobOutcome(OutcomeStatus.COMPLETED, job, value=result.value)

            error = result.error
            log.bind(error_type=error.kind.value).warning(
                f"Attempt {job.attempt}/{policy.max_tries} failed: {error.message}"
            )

            if error.retryable and policy.should_retry(job.attempt):
                delay = self.retry_delay(policy, job.attempt, error)
                try:
                    retry = self.queue.push(job.next_attempt(), delay_seconds=delay)
                except Exception:  # Intentionally broad - the job still has to land somewhere
                    log.exception("Could not schedule retry, dead-lettering instead")
                else:
                    log.info(f"Retry {retry.attempt}/{policy.max_tries} scheduled in {delay:.0f}s")
                    return JobOutcome(OutcomeStatus.RETRY_SCHEDULED, job, error=error, retry_delay=delay)

            return self._dead_letter(spec, job, error, log)
        finally:
            self.leases.release(job.lease_key, token)

    def _dead_letter(self, spec: JobSpec, job: Job, error: JobError, log) -> JobOutcome:
        """
        Park a job that will not be retried.

        When the dead letter store cannot be written the same attempt goes back
        on the queue after its scheduled backoff; if that fails as well the
        error propagates to the worker.
        """
        try:
            record_id = self.dead_letters.record(job, error)
        except Exception:  # Intentionally broad - the job still has to land somewhere
            delay = float(spec.policy.delay_for_attempt(job.attempt))
            log.exception(f"Could not record dead letter, re-queueing attempt {job.attempt} in {delay:.0f}s")
            self.queue.push(job, delay_seconds=delay)
            return JobOutcome(OutcomeStatus.RETRY_SCHEDULED, job, error=error, retry_delay=delay)

        if spec.tracks_status:
            self._try_mark_status(job, STATUS_FAILED, log)
        return JobOutcome(OutcomeStatus.DEAD_LETTERED, job, error=error, dead_letter_id=record_id)

    async def _run_handler(self, spec: JobSpec, job: Job) -> Result:
        timeout = spec.policy.timeout_seconds
        try:
            result = await asyncio.wait_for(spec.handler(job), timeout=timeout)
        except asyncio.TimeoutError:
            return Result.failure(ErrorKind.TIMEOUT, f"{job.job_type} exceeded its {timeout:.0f}s timeout")
        except Exception as e:  # Intentionally broad - every handler failure is classified
            return Result.from_exception(e)
        if not isinstance(result, Result):
            return Result.success(result)
        return result

    @staticmethod
    def retry_delay(policy: RetryPolicy, attempt: int, error: JobError) -> float:
        """Scheduled backoff, stretched to the provider's Retry-After or the breaker's recovery time."""
        delay = float(policy.delay_for_attempt(attempt))
        if error.retry_after is not None:
            delay = max(delay, float(error.retry_after))
        return delay

    def _mark_status(self, job: Job, status: str) -> None:
        model = EntityKind(job.entity_type).model
        with session_scope(self.session_factory) as session:
            entity = session.get(model, job.entity_id)
            if entity is not None and hasattr(entity, "status"):
                entity.status = status

    def _try_mark_status(self, job: Job, status: str, log) -> bool:
        """Terminal status write; the outcome stands even if it fails."""
        try:
            self._mark_status(job, status)
        except Exception:  # Intentionally broad - logged, outcome already decided
            log.exception(f"Could not mark {job.entity_type} {job.entity_id} {status}")
            return False
        return True


class WorkerPool:
    """
    Concurrent workers pulling from the tiered queue.

    Example:
        >>> pool = WorkerPool(orchestrator, concurrency=4)
        >>> await pool.run(stop_event)
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        concurrency: int | None = None,
        selector: WeightedTierSelector | None = None,
        poll_interval: float | None = None,
    ):
        settings = get_settings()
        self.orchestrator = orchestrator
        self.concurrency = concurrency or settings.worker_concurrency
        self.selector = selector or WeightedTierSelector()
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.processed = 0

    @property
    def queue(self) -> JobQueue:
        return self.orchestrator.queue

    def next_job(self) -> Job | None:
        """Pop the next ready job, choosing the tier by weighted round-robin."""
        for tier in self.selector.order(self.queue.ready_tiers()):
            job = self.queue.pop(tier)
            if job is not None:
                return job
        return None

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run workers until stop_event is set."""
        stop = stop_event or asyncio.Event()
        logger.info(f"Starting worker pool with {self.concurrency} workers")
        workers = [asyncio.create_task(self._worker(i, stop)) for i in range(self.concurrency)]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()
            logger.info(f"Worker pool stopped after {self.processed} jobs")

    async def _worker(self, index: int, stop: asyncio.Event) -> None:
        while not stop.is_set():
            job = self.next_job()
            if job is None:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            try:
                await self.orchestrator.execute(job)
            except Exception as e:  # Intentionally broad - a worker must outlive a failing job
                logger.bind(job_type=job.job_type, entity_id=job.entity_id).exception(
                    f"Worker {index} failed executing job {job.id}: {e}"
                )
            self.processed += 1

    async def run_until_idle(self, max_jobs: int | None = None) -> list[JobOutcome]:
        """Execute ready jobs one at a time until none are ready."""
        outcomes: list[JobOutcome] = []
        while max_jobs is None or len(outcomes) < max_jobs:
            job = self.next_job()
            if job is None:
                break
            outcomes.append(await self.orchestrator.execute(job))
            self.processed += 1
        return outcomes
