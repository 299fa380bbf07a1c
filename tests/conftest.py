"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory SQLite database, a deterministic fake AI gateway and manual
clocks for breaker, lease and queue timing.
"""
import sys
import zlib
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from learnloop.db.database import init_db, session_scope  # noqa: E402
from learnloop.db.models import Feedback, Input, Output  # noqa: E402
from learnloop.errors import AiGatewayError  # noqa: E402
from learnloop.gateway.ai_gateway import EmbeddingResponse, GenerationResult  # noqa: E402
from learnloop.semantic.query_cache import retrieval_cache  # noqa: E402

EMBEDDING_MODEL = "text-embedding-3-small"
VECTOR_SIZE = 32


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (in-memory database)")
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "smoke: CLI smoke tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clear_retrieval_cache():
    """The similarity cache is process-wide; isolate tests from each other."""
    retrieval_cache.clear()
    yield
    retrieval_cache.clear()


@pytest.fixture
def make_input(session_factory):
    def _make(content="Summarize sprint notes", **fields):
        with session_scope(session_factory) as session:
            record = Input(content=content, **fields)
            session.add(record)
            session.flush()
            return record

    return _make


@pytest.fixture
def make_output(session_factory, make_input):
    def _make(input_id=None, content="- Ship billing migration\n- Fix login bug", **fields):
        if input_id is None:
            input_id = make_input().id
        with session_scope(session_factory) as session:
            record = Output(input_id=input_id, content=content, **fields)
            session.add(record)
            session.flush()
            return record

    return _make


@pytest.fixture
def make_feedback(session_factory):
    def _make(output_id, action="accept", confidence=1.0, user_id=1, meta=None, **fields):
        with session_scope(session_factory) as session:
            record = Feedback(
                output_id=output_id,
                user_id=user_id,
                action=action,
                confidence=confidence,
                meta=meta or {},
                **fields,
            )
            session.add(record)
            session.flush()
            return record

    return _make


# ============================================================================
# Fakes
# ============================================================================


def text_vector(text: str, size: int = VECTOR_SIZE) -> list[float]:
    """Deterministic bag-of-words vector; texts sharing words point the same way."""
    vector = np.zeros(size, dtype=np.float32)
    for word in text.lower().split():
        vector[zlib.crc32(word.strip(".,:;!?").encode()) % size] += 1.0
    return vector.tolist()


class FakeAiGateway:
    """
    In-process AI gateway.

    Queue exceptions in `failures` to make the next calls fail; every prompt
    and embedded text is recorded.
    """

    def __init__(self, model=EMBEDDING_MODEL, vectors=None):
        self.model = model
        self.vectors = dict(vectors or {})
        self.failures = []
        self.prompts = []
        self.embedded = []
        self.generated_content = "1. Follow up with the billing team"

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    async def generate(self, prompt, options=None):
        self._maybe_fail()
        self.prompts.append(prompt)
        return GenerationResult(content=self.generated_content, model="fake-llm", tokens_used=120, cost_usd=0.0001)

    async def embed(self, text, options=None):
        self._maybe_fail()
        self.embedded.append(text)
        vector = self.vectors.get(text) or text_vector(text)
        return EmbeddingResponse(vector=list(vector), model=self.model, tokens_used=len(text.split()))


class RecordingInvalidator:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def invalidate(self, entity_type, entity_ids):
        self.calls.append(("invalidate", entity_type, list(entity_ids)))
        if self.fail:
            raise RuntimeError("cache service down")

    def bulk_invalidate(self, tags):
        self.calls.append(("bulk_invalidate", list(tags)))
        if self.fail:
            raise RuntimeError("cache service down")


class ManualClock:
    """Monotonic-style clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualDateClock:
    """Naive-UTC datetime clock advanced by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def gateway():
    return FakeAiGateway()


@pytest.fixture
def invalidator():
    return RecordingInvalidator()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def date_clock():
    return ManualDateClock()


def rate_limit_error(retry_after=None):
    return AiGatewayError("AI provider error 429", "rate_limit_exceeded", "fake", retry_after=retry_after, error_code="429")
