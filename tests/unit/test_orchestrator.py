"""
Unit tests for the Job Orchestrator and worker pool.

Handlers are plain async callables so every retry, timeout and dead-letter
path can be driven directly.
"""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import rate_limit_error
from learnloop.db.database import session_scope
from learnloop.db.models import DeadLetterRecord, Input
from learnloop.errors import CircuitOpenError, ErrorKind, Result
from learnloop.jobs.dead_letter import DeadLetterStore
from learnloop.jobs.models import OutcomeStatus, PriorityTier
from learnloop.jobs.orchestrator import JobOrchestrator, JobRegistry, JobSpec, WorkerPool
from learnloop.jobs.queue import InMemoryJobQueue
from learnloop.reliability.lease import InMemoryLeaseService
from learnloop.reliability.retry_policy import RetryPolicy
from learnloop.semantic.embedding_store import EntityKind

IMMEDIATE = RetryPolicy(max_tries=3, backoff=0, timeout_seconds=5)


class ScriptedHandler:
    """Returns (or raises) the scripted results in order, then succeeds."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def __call__(self, job):
        self.calls.append(job.attempt)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step
        return Result.success("done")


@pytest.fixture
def queue(date_clock):
    return InMemoryJobQueue(date_clock)


@pytest.fixture
def leases(clock):
    return InMemoryLeaseService(clock)


@pytest.fixture
def dead_letters(session_factory, queue):
    return DeadLetterStore(session_factory, queue)


@pytest.fixture
def build(session_factory, queue, leases, dead_letters):
    def _build(handler, policy=IMMEDIATE, tracks_status=False, entity_kind=EntityKind.INPUT):
        registry = JobRegistry()
        registry.register(
            JobSpec(
                job_type="generate_output",
                handler=handler,
                policy=policy,
                entity_kind=entity_kind,
                tracks_status=tracks_status,
            )
        )
        return JobOrchestrator(registry, queue, leases, dead_letters, session_factory)

    return _build


def dead_letter_count(session_factory):
    with session_scope(session_factory) as session:
        return session.execute(select(func.count()).select_from(DeadLetterRecord)).scalar_one()


def input_status(session_factory, input_id):
    with session_scope(session_factory) as session:
        return session.get(Input, input_id).status


class TestRegistry:
    def test_duplicate_registration_rejected(self):
        registry = JobRegistry()
        spec = JobSpec("generate_output", ScriptedHandler(), IMMEDIATE)
        registry.register(spec)

        with pytest.raises(ValueError):
            registry.register(spec)

    def test_unknown_job_type(self):
        with pytest.raises(ValueError):
            JobRegistry().get("nope")


class TestDispatch:
    def test_dispatch_enqueues_on_default_tier(self, build, queue):
        orchestrator = build(ScriptedHandler())

        job = orchestrator.dispatch("generate_output", 1, {"output_kind": "summary"})

        assert job.tier is PriorityTier.MEDIUM
        assert job.entity_type == "input"
        assert queue.size() == 1

    def test_duplicate_dispatch_is_noop(self, build, queue):
        orchestrator = build(ScriptedHandler())

        orchestrator.dispatch("generate_output", 1)
        assert orchestrator.dispatch("generate_output", 1) is None
        assert queue.size() == 1

    def test_dispatch_while_running_is_noop(self, build, queue, leases):
        orchestrator = build(ScriptedHandler())
        leases.acquire("generate_output:input:1", 60)

        assert orchestrator.dispatch("generate_output", 1) is None
        assert queue.size() == 0

    def test_wrong_entity_kind_rejected(self, build):
        orchestrator = build(ScriptedHandler())

        with pytest.raises(ValueError):
            orchestrator.dispatch("generate_output", 1, entity_type=EntityKind.OUTPUT)

    def test_any_kind_job_needs_entity_type(self, build):
        orchestrator = build(ScriptedHandler(), entity_kind=None)

        with pytest.raises(ValueError):
            orchestrator.dispatch("generate_output", 1)


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_completes_and_releases_lease(self, build, queue, leases):
        handler = ScriptedHandler(Result.success(99))
        orchestrator = build(handler)
        job = orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.value == 99
        assert not leases.is_held(job.lease_key)

    @pytest.mark.asyncio
    async def test_plain_return_value_is_success(self, build, queue):
        orchestrator = build(ScriptedHandler(42))
        orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.ok
        assert outcome.value == 42

    @pytest.mark.asyncio
    async def test_held_lease_skips_without_running(self, build, queue, leases):
        handler = ScriptedHandler()
        orchestrator = build(handler)
        job = orchestrator.dispatch("generate_output", 1)
        queue.pop(PriorityTier.MEDIUM)
        leases.acquire(job.lease_key, 60)

        outcome = await orchestrator.execute(job)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_rate_limited_three_times_dead_letters_once(self, build, session_factory):
        handler = ScriptedHandler(*(Result.failure(ErrorKind.RATE_LIMIT_EXCEEDED, "429") for _ in range(5)))
        orchestrator = build(handler)
        orchestrator.dispatch("generate_output", 1)

        outcomes = await WorkerPool(orchestrator, concurrency=1).run_until_idle()

        assert [o.status for o in outcomes] == [
            OutcomeStatus.RETRY_SCHEDULED,
            OutcomeStatus.RETRY_SCHEDULED,
            OutcomeStatus.DEAD_LETTERED,
        ]
        assert handler.calls == [1, 2, 3]
        assert dead_letter_count(session_factory) == 1
        with session_scope(session_factory) as session:
            record = session.execute(select(DeadLetterRecord)).scalar_one()
            assert record.category == "rate_limit"
            assert record.attempts == 3

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self, build, queue, date_clock):
        policy = RetryPolicy(max_tries=3, backoff=(60, 180, 300), timeout_seconds=5)
        orchestrator = build(ScriptedHandler(rate_limit_error()), policy=policy)
        orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.RETRY_SCHEDULED
        assert outcome.retry_delay == 60
        assert queue.pop(PriorityTier.MEDIUM) is None
        date_clock.advance(60)
        assert queue.pop(PriorityTier.MEDIUM).attempt == 2

    @pytest.mark.asyncio
    async def test_retry_after_stretches_delay(self, build, queue):
        policy = RetryPolicy(max_tries=3, backoff=10, timeout_seconds=5)
        orchestrator = build(ScriptedHandler(CircuitOpenError("ai-provider", retry_after=45.0)), policy=policy)
        orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.error.kind is ErrorKind.CIRCUIT_OPEN
        assert outcome.retry_delay == 45.0

    @pytest.mark.asyncio
    async def test_fatal_error_dead_letters_and_marks_failed(self, build, queue, make_input, session_factory):
        record = make_input()
        handler = ScriptedHandler(Result.failure(ErrorKind.AUTHENTICATION_FAILED, "bad key"))
        orchestrator = build(handler, tracks_status=True)
        orchestrator.dispatch("generate_output", record.id)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.DEAD_LETTERED
        assert handler.calls == [1]
        assert input_status(session_factory, record.id) == "failed"
        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_success_marks_completed(self, build, queue, make_input, session_factory):
        record = make_input()
        orchestrator = build(ScriptedHandler(), tracks_status=True)
        orchestrator.dispatch("generate_output", record.id)

        await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert input_status(session_factory, record.id) == "completed"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, build, queue, leases):
        async def slow(job):
            await asyncio.sleep(1)

        orchestrator = build(slow, policy=RetryPolicy(max_tries=3, backoff=0, timeout_seconds=0.05))
        job = orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.RETRY_SCHEDULED
        assert outcome.error.kind is ErrorKind.TIMEOUT
        assert not leases.is_held(job.lease_key)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_classified_unknown(self, build, queue):
        orchestrator = build(ScriptedHandler(KeyError("boom")))
        orchestrator.dispatch("generate_output", 1)

        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.RETRY_SCHEDULED
        assert outcome.error.kind is ErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_status_write_failure_requeues_job(self, build, queue, leases, make_input, monkeypatch):
        record = make_input()
        handler = ScriptedHandler()
        orchestrator = build(handler, tracks_status=True)
        job = orchestrator.dispatch("generate_output", record.id)

        def locked(job, status):
            raise OperationalError("UPDATE inputs", {}, Exception("database is locked"))

        monkeypatch.setattr(orchestrator, "_mark_status", locked)
        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.RETRY_SCHEDULED
        assert outcome.error.kind is ErrorKind.UNKNOWN
        assert handler.calls == []
        assert queue.pop(PriorityTier.MEDIUM).attempt == 2
        assert not leases.is_held(job.lease_key)

    @pytest.mark.asyncio
    async def test_completed_status_failure_keeps_outcome(self, build, queue, make_input, monkeypatch):
        record = make_input()
        orchestrator = build(ScriptedHandler(), tracks_status=True)
        orchestrator.dispatch("generate_output", record.id)
        mark_status = orchestrator._mark_status

        def fail_on_completed(job, status):
            if status == "completed":
                raise OperationalError("UPDATE inputs", {}, Exception("disk I/O error"))
            mark_status(job, status)

        monkeypatch.setattr(orchestrator, "_mark_status", fail_on_completed)
        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_failed_retry_push_dead_letters(self, build, queue, session_factory, monkeypatch):
        orchestrator = build(ScriptedHandler(rate_limit_error()))
        orchestrator.dispatch("generate_output", 1)
        job = queue.pop(PriorityTier.MEDIUM)

        def unavailable(job, delay_seconds=0.0):
            raise ConnectionError("queue backend unavailable")

        monkeypatch.setattr(queue, "push", unavailable)
        outcome = await orchestrator.execute(job)

        assert outcome.status is OutcomeStatus.DEAD_LETTERED
        assert dead_letter_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_failed_dead_letter_write_requeues_same_attempt(self, build, queue, dead_letters, monkeypatch):
        orchestrator = build(ScriptedHandler(Result.failure(ErrorKind.AUTHENTICATION_FAILED, "bad key")))
        orchestrator.dispatch("generate_output", 1)

        def locked(job, error):
            raise OperationalError("INSERT INTO dead_letter_records", {}, Exception("database is locked"))

        monkeypatch.setattr(dead_letters, "record", locked)
        outcome = await orchestrator.execute(queue.pop(PriorityTier.MEDIUM))

        assert outcome.status is OutcomeStatus.RETRY_SCHEDULED
        assert outcome.error.kind is ErrorKind.AUTHENTICATION_FAILED
        assert queue.pop(PriorityTier.MEDIUM).attempt == 1

    def test_retry_delay_uses_larger_of_backoff_and_retry_after(self):
        policy = RetryPolicy(backoff=(60, 180, 300))
        error = Result.failure(ErrorKind.RATE_LIMIT_EXCEEDED, "429", retry_after=30).error

        assert JobOrchestrator.retry_delay(policy, 2, error) == 180


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_higher_tier_pulled_first(self, build, queue):
        handler = ScriptedHandler()
        orchestrator = build(handler)
        orchestrator.dispatch("generate_output", 1, tier="low")
        orchestrator.dispatch("generate_output", 2, tier="urgent")

        outcomes = await WorkerPool(orchestrator).run_until_idle()

        assert [o.job.entity_id for o in outcomes] == [2, 1]

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, build):
        handler = ScriptedHandler()
        orchestrator = build(handler)
        for entity_id in range(1, 4):
            orchestrator.dispatch("generate_output", entity_id)
        pool = WorkerPool(orchestrator, concurrency=2, poll_interval=0.01)
        stop = asyncio.Event()

        async def stop_when_drained():
            while pool.processed < 3:
                await asyncio.sleep(0.01)
            stop.set()

        await asyncio.wait_for(asyncio.gather(pool.run(stop), stop_when_drained()), timeout=5)

        assert sorted(handler.calls) == [1, 1, 1]
