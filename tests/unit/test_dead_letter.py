"""
Unit tests for the Dead Letter Store.

Covers failure categorization, requeue, archival and alerting.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from conftest import rate_limit_error
from learnloop.db.database import session_scope
from learnloop.db.models import ArchivedDeadLetterRecord, DeadLetterRecord
from learnloop.errors import AiGatewayError, CircuitOpenError, ErrorKind, FailureCategory, JobError
from learnloop.jobs.dead_letter import DeadLetterStore, categorize, categorize_message
from learnloop.jobs.models import Job, PriorityTier
from learnloop.jobs.queue import InMemoryJobQueue
from learnloop.time_utils import utcnow


def make_job(entity_id=1, job_type="generate_output", attempt=3, **fields):
    return Job(job_type=job_type, entity_type="input", entity_id=entity_id, attempt=attempt, **fields)


def count(session_factory, model):
    with session_scope(session_factory) as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def store(session_factory, queue):
    return DeadLetterStore(session_factory, queue)


class TestCategorize:
    @pytest.mark.parametrize(
        "error, category",
        [
            (JobError(ErrorKind.TIMEOUT, "slow"), FailureCategory.TIMEOUT),
            (JobError(ErrorKind.RATE_LIMIT_EXCEEDED, "429"), FailureCategory.RATE_LIMIT),
            (JobError(ErrorKind.QUOTA_EXCEEDED, "billing"), FailureCategory.RATE_LIMIT),
            (JobError(ErrorKind.AUTHENTICATION_FAILED, "bad key"), FailureCategory.AUTH_ERROR),
            (JobError(ErrorKind.SERVICE_UNAVAILABLE, "503"), FailureCategory.SERVICE_ERROR),
            (JobError(ErrorKind.VALIDATION_ERROR, "bad"), FailureCategory.VALIDATION_ERROR),
        ],
    )
    def test_typed_errors(self, error, category):
        assert categorize(error)[1] is category

    def test_exceptions_are_classified(self):
        assert categorize(rate_limit_error())[1] is FailureCategory.RATE_LIMIT
        assert categorize(CircuitOpenError("ai-provider"))[1] is FailureCategory.SERVICE_ERROR
        assert categorize(httpx.ReadTimeout("read timed out"))[0] is ErrorKind.TIMEOUT

    @pytest.mark.parametrize(
        "message, category",
        [
            ("Request timed out after 30s", FailureCategory.TIMEOUT),
            ("Too Many Requests", FailureCategory.RATE_LIMIT),
            ("Invalid API key", FailureCategory.AUTH_ERROR),
            ("Service Unavailable", FailureCategory.SERVICE_ERROR),
            ("malformed payload", FailureCategory.VALIDATION_ERROR),
            ("something odd", FailureCategory.UNKNOWN),
        ],
    )
    def test_message_heuristics(self, message, category):
        assert categorize_message(message) is category

    def test_plain_exception_falls_back_to_message(self):
        kind, category, message = categorize(RuntimeError("upstream connection reset"))

        assert kind is ErrorKind.UNKNOWN
        assert category is FailureCategory.SERVICE_ERROR
        assert message == "upstream connection reset"


class TestRecord:
    def test_record_persists_job_and_error(self, store, session_factory):
        job = make_job(payload={"output_kind": "summary"}, tier=PriorityTier.HIGH)

        record_id = store.record(job, JobError(ErrorKind.AUTHENTICATION_FAILED, "bad key"))

        with session_scope(session_factory) as session:
            record = session.get(DeadLetterRecord, record_id)
            assert record.job_type == "generate_output"
            assert record.payload == {"output_kind": "summary"}
            assert record.tier == "high"
            assert record.error_kind == "authentication_failed"
            assert record.category == "auth_error"
            assert record.attempts == 3

    def test_record_accepts_exceptions(self, store):
        error = AiGatewayError("Provider returned 503", "service_unavailable", "fake")

        store.record(make_job(), error)

        assert store.list_records()[0].category == "service_error"


class TestRequeue:
    def test_requeue_resets_attempt_and_removes_record(self, store, queue, session_factory):
        record_id = store.record(make_job(attempt=3, tier=PriorityTier.LOW), JobError(ErrorKind.TIMEOUT, "slow"))

        assert store.requeue(record_id) is True

        job = queue.pop(PriorityTier.LOW)
        assert job.attempt == 1
        assert job.entity_id == 1
        assert count(session_factory, DeadLetterRecord) == 0

    def test_requeue_missing_record(self, store):
        assert store.requeue(404) is False

    def test_requeue_without_queue(self, session_factory):
        with pytest.raises(RuntimeError):
            DeadLetterStore(session_factory).requeue(1)

    def test_requeue_bulk_counts_existing(self, store, queue):
        ids = [store.record(make_job(entity_id=i), JobError(ErrorKind.TIMEOUT, "slow")) for i in (1, 2)]

        assert store.requeue_bulk(ids + [999]) == 2
        assert queue.size() == 2


class TestArchive:
    def test_archive_moves_old_records_once(self, store, session_factory):
        recent_id = store.record(make_job(entity_id=1), JobError(ErrorKind.TIMEOUT, "slow"))
        with session_scope(session_factory) as session:
            session.add(
                DeadLetterRecord(
                    job_type="generate_output",
                    entity_type="input",
                    entity_id=2,
                    payload={},
                    tier="medium",
                    exception="old failure",
                    error_kind="timeout",
                    category="timeout",
                    attempts=3,
                    failed_at=utcnow() - timedelta(days=45),
                )
            )

        assert store.archive(older_than_days=30) == 1
        assert store.archive(older_than_days=30) == 0
        assert count(session_factory, ArchivedDeadLetterRecord) == 1
        assert [r.id for r in store.list_records()] == [recent_id]

    def test_archive_cycles_keep_every_record(self, store, session_factory):
        def backdate(record_id):
            with session_scope(session_factory) as session:
                session.get(DeadLetterRecord, record_id).failed_at = utcnow() - timedelta(days=100)

        first = store.record(make_job(entity_id=1), JobError(ErrorKind.TIMEOUT, "slow"))
        backdate(first)
        assert store.archive() == 1

        second = store.record(make_job(entity_id=2), JobError(ErrorKind.TIMEOUT, "slow"))
        backdate(second)

        assert second != first
        assert store.archive() == 1
        assert count(session_factory, ArchivedDeadLetterRecord) == 2
        assert count(session_factory, DeadLetterRecord) == 0


class TestInspection:
    @pytest.fixture
    def populated(self, store):
        store.record(make_job(entity_id=1), JobError(ErrorKind.TIMEOUT, "slow"))
        store.record(make_job(entity_id=2), JobError(ErrorKind.TIMEOUT, "slow"))
        store.record(make_job(entity_id=3, job_type="generate_embedding"), JobError(ErrorKind.VALIDATION_ERROR, "bad"))
        return store

    def test_list_by_category(self, populated):
        assert len(populated.list_records(category="timeout")) == 2
        assert len(populated.list_records(limit=1)) == 1

    def test_list_rejects_unknown_category(self, populated):
        with pytest.raises(ValueError):
            populated.list_records(category="cosmic_rays")

    def test_failure_analysis(self, populated):
        analysis = populated.failure_analysis()

        assert analysis["total_failures"] == 3
        assert analysis["failure_by_category"] == {"timeout": 2, "validation_error": 1}
        assert analysis["failure_by_job_type"] == {"generate_output": 2, "generate_embedding": 1}
        assert analysis["most_common_errors"][0] == {"error": "slow", "count": 2}

    def test_recovery_strategy(self, store):
        assert store.recovery_strategy("rate_limit") == "retry_with_backoff"
        assert store.recovery_strategy(FailureCategory.AUTH_ERROR) == "manual_intervention_required"

    def test_check_alerts(self, populated):
        assert populated.check_alerts() == []

        warning = populated.check_alerts({"warning_count": 3})
        critical = populated.check_alerts({"critical_count": 3, "warning_count": 1})

        assert warning[0]["level"] == "warning"
        assert critical[0]["level"] == "critical"
        assert len(critical) == 1
