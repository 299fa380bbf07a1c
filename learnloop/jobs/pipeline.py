"""
LearningPipeline - wires services, queue and orchestrator together.

This is the entry point the outer application (HTTP layer, CLI) uses:
submit an Input, record Feedback, request a regeneration, run workers.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy.orm import sessionmaker

from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Feedback, Input, Output
from learnloop.errors import EntityNotFoundError
from learnloop.gateway.ai_gateway import AiGateway, HttpAiGateway
from learnloop.gateway.cache_invalidation import CacheInvalidator, SafeInvalidator
from learnloop.gateway.guarded import GuardedAiGateway
from learnloop.jobs.dead_letter import DeadLetterStore
from learnloop.jobs.handlers import (
    GENERATE_EMBEDDING,
    GENERATE_OUTPUT,
    PROCESS_FEEDBACK_LEARNING,
    PipelineHandlers,
    register_builtin_jobs,
)
from learnloop.jobs.models import Job, PriorityTier
from learnloop.jobs.orchestrator import JobOrchestrator, JobRegistry, WorkerPool
from learnloop.jobs.queue import DatabaseJobQueue, JobQueue, WeightedTierSelector
from learnloop.learning.aggregator import LearningAggregator
from learnloop.learning.feedback_service import FeedbackService
from learnloop.learning.quality import INLINE_ACTIONS
from learnloop.reliability.circuit_breaker import CircuitBreaker
from learnloop.reliability.lease import DatabaseLeaseService, LeaseService
from learnloop.semantic.embedding_service import EmbeddingService
from learnloop.semantic.embedding_store import EntityKind
from learnloop.semantic.retrieval_service import RetrievalService


class LearningPipeline:
    """
    Facade over the feedback learning loop.

    Example:
        >>> pipeline = LearningPipeline()
        >>> input_id, job = pipeline.submit_input("Notes from sprint review ...", output_kind="task_list")
        >>> await pipeline.worker_pool().run_until_idle()
        >>> pipeline.submit_feedback(output_id, user_id=3, action="accept")
    """

    def __init__(
        self,
        gateway: AiGateway | None = None,
        session_factory: sessionmaker | None = None,
        queue: JobQueue | None = None,
        leases: LeaseService | None = None,
        invalidator: CacheInvalidator | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.invalidator = SafeInvalidator(invalidator)
        self.gateway = gateway if isinstance(gateway, GuardedAiGateway) else GuardedAiGateway(
            gateway or HttpAiGateway(), breaker
        )

        self.queue = queue or DatabaseJobQueue(self.session_factory)
        self.leases = leases or DatabaseLeaseService(self.session_factory)

        self.embeddings = EmbeddingService(self.gateway, self.session_factory, invalidator=self.invalidator)
        self.retrieval = RetrievalService(self.session_factory)
        self.feedback = FeedbackService(self.session_factory, self.invalidator)
        self.aggregator = LearningAggregator(self.session_factory, self.invalidator)
        self.dead_letters = DeadLetterStore(self.session_factory, self.queue)

        self.registry = JobRegistry()
        self.orchestrator = JobOrchestrator(
            self.registry, self.queue, self.leases, self.dead_letters, self.session_factory
        )
        self.handlers = PipelineHandlers(
            self.gateway,
            self.embeddings,
            self.retrieval,
            self.aggregator,
            self.orchestrator,
            self.session_factory,
            self.invalidator,
        )
        register_builtin_jobs(self.registry, self.handlers)

    # ========================================
    # Operations
    # ========================================

    def submit_input(
        self,
        content: str,
        content_kind: str = "note",
        source: str = "manual",
        metadata: dict[str, Any] | None = None,
        output_kind: str = "summary",
        tier: PriorityTier | str | None = None,
    ) -> tuple[int, Job | None]:
        """Store a new Input and dispatch its generation job."""
        if not content or not content.strip():
            raise ValueError("Input content must not be empty")

        with session_scope(self.session_factory) as session:
            record = Input(content=content, content_kind=content_kind, source=source, meta=metadata or {})
            session.add(record)
            session.flush()
            input_id = record.id

        self.invalidator.invalidate("inputs", [input_id])
        job = self.orchestrator.dispatch(GENERATE_OUTPUT, input_id, {"output_kind": output_kind}, tier=tier)
        logger.info(f"Submitted input {input_id} for {output_kind} generation")
        return input_id, job

    def submit_feedback(
        self,
        output_id: int,
        user_id: int,
        action: str,
        confidence: float | None = None,
        correction: str | None = None,
        metadata: dict[str, Any] | None = None,
        edit_reason: str | None = None,
    ) -> Feedback:
        """
        Record feedback and schedule learning.

        Inline actions (accept/edit/reject/copy) go through record_feedback,
        anything else is treated as a passive behavioral signal.
        """
        if action in INLINE_ACTIONS:
            feedback = self.feedback.record_feedback(
                output_id, user_id, action, confidence, correction, metadata, edit_reason
            )
        else:
            feedback = self.feedback.record_passive_signal(output_id, user_id, action, confidence, metadata)

        self.orchestrator.dispatch(PROCESS_FEEDBACK_LEARNING, output_id)
        if feedback.embeddable_text():
            self.orchestrator.dispatch(GENERATE_EMBEDDING, feedback.id, entity_type=EntityKind.FEEDBACK)
        return feedback

    def regenerate(self, output_id: int, tier: PriorityTier | str | None = None) -> Job | None:
        """Dispatch a new generation for an Output's Input, linked to the Output as parent."""
        with session_scope(self.session_factory) as session:
            output = session.get(Output, output_id)
            if output is None:
                raise EntityNotFoundError(f"Output {output_id} not found")
            input_id = output.input_id
            payload = {"output_kind": output.output_kind, "parent_output_id": output_id}

        return self.orchestrator.dispatch(GENERATE_OUTPUT, input_id, payload, tier=tier or PriorityTier.HIGH)

    def worker_pool(self, concurrency: int | None = None, selector: WeightedTierSelector | None = None) -> WorkerPool:
        return WorkerPool(self.orchestrator, concurrency=concurrency, selector=selector)
