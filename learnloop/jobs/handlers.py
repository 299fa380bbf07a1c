"""
Built-in job handlers.

- generate_output: embed the Input, retrieve similar accepted examples, build
  the few-shot prompt, generate through the AI gateway and store a new Output
  version; then dispatch the Output's embedding
- generate_embedding: embed any Input, Output or Feedback row
- process_feedback_learning: aggregate feedback on an Output into quality and
  patterns
"""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Input, Output
from learnloop.errors import ErrorKind, LearnLoopError, Result
from learnloop.gateway.ai_gateway import AiGateway
from learnloop.gateway.cache_invalidation import CacheInvalidator, SafeInvalidator
from learnloop.jobs.models import Job, PriorityTier
from learnloop.jobs.orchestrator import JobRegistry, JobSpec
from learnloop.learning.aggregator import LearningAggregator
from learnloop.reliability.retry_policy import RetryPolicy
from learnloop.semantic.embedding_service import EmbeddingService
from learnloop.semantic.embedding_store import EntityKind
from learnloop.semantic.retrieval_service import RetrievalService

GENERATE_OUTPUT = "generate_output"
GENERATE_EMBEDDING = "generate_embedding"
PROCESS_FEEDBACK_LEARNING = "process_feedback_learning"

GENERATE_OUTPUT_POLICY = RetryPolicy(max_tries=3, backoff=(60, 180, 300), timeout_seconds=600)
GENERATE_EMBEDDING_POLICY = RetryPolicy(max_tries=3, backoff=(30, 90, 180), timeout_seconds=300)
FEEDBACK_LEARNING_POLICY = RetryPolicy(max_tries=3, backoff=(60, 120, 240), timeout_seconds=240)


class Dispatcher(Protocol):
    def dispatch(
        self,
        job_type: str,
        entity_id: int,
        payload: dict[str, Any] | None = None,
        tier: PriorityTier | str | None = None,
        entity_type: EntityKind | str | None = None,
    ) -> Job | None: ...


class PipelineHandlers:
    """Handlers bound to the services they orchestrate."""

    def __init__(
        self,
        gateway: AiGateway,
        embeddings: EmbeddingService,
        retrieval: RetrievalService,
        aggregator: LearningAggregator,
        dispatcher: Dispatcher,
        session_factory: sessionmaker | None = None,
        invalidator: CacheInvalidator | None = None,
    ):
        self.settings = get_settings()
        self.gateway = gateway
        self.embeddings = embeddings
        self.retrieval = retrieval
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self._session_factory = session_factory
        self.invalidator = invalidator if isinstance(invalidator, SafeInvalidator) else SafeInvalidator(invalidator)

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def generate_output(self, job: Job) -> Result[int]:
        input_id = job.entity_id
        output_kind = job.payload.get("output_kind", "summary")

        with session_scope(self.session_factory) as session:
            source = session.get(Input, input_id)
            if source is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"Input {input_id} not found")
            content = source.content

        try:
            await self.embeddings.embed_entity(EntityKind.INPUT, input_id)
            examples = self.retrieval.find_similar(
                input_id, {"output_kind": output_kind}, limit=self.settings.rag_max_examples
            )
            prompt = self.retrieval.build_rag_prompt(content, examples)
            generated = await self.gateway.generate(prompt, {"output_kind": output_kind})
        except LearnLoopError as e:
            return Result.from_exception(e)

        with session_scope(self.session_factory) as session:
            latest = session.execute(
                select(func.max(Output.version)).where(Output.input_id == input_id)
            ).scalar_one_or_none()
            output = Output(
                input_id=input_id,
                content=generated.content,
                output_kind=output_kind,
                ai_model=generated.model,
                version=(latest or 0) + 1,
                parent_output_id=job.payload.get("parent_output_id"),
                meta={
                    "tokens_used": generated.tokens_used,
                    "cost_usd": generated.cost_usd,
                    "rag_example_output_ids": [e.output.id for e in examples],
                    "job_id": job.id,
                },
            )
            session.add(output)
            session.flush()
            output_id = output.id
            version = output.version

        logger.bind(entity_type="input", entity_id=input_id).info(
            f"Generated {output_kind} output {output_id} v{version} with {len(examples)} examples"
        )
        self.invalidator.invalidate("inputs", [input_id])
        self.invalidator.invalidate("outputs", [output_id])
        self.dispatcher.dispatch(GENERATE_EMBEDDING, output_id, entity_type=EntityKind.OUTPUT)
        return Result.success(output_id)

    async def generate_embedding(self, job: Job) -> Result[int | None]:
        try:
            row = await self.embeddings.embed_entity(
                EntityKind(job.entity_type), job.entity_id, force=bool(job.payload.get("force", False))
            )
        except LearnLoopError as e:
            return Result.from_exception(e)
        return Result.success(row.id if row is not None else None)

    async def process_feedback_learning(self, job: Job) -> Result[dict]:
        try:
            patterns = self.aggregator.process_output(job.entity_id, job_id=job.id)
        except LearnLoopError as e:
            return Result.from_exception(e)
        return Result.success(patterns)


def register_builtin_jobs(registry: JobRegistry, handlers: PipelineHandlers) -> JobRegistry:
    registry.register(
        JobSpec(
            job_type=GENERATE_OUTPUT,
            handler=handlers.generate_output,
            policy=GENERATE_OUTPUT_POLICY,
            entity_kind=EntityKind.INPUT,
            default_tier=PriorityTier.MEDIUM,
            tracks_status=True,
        )
    )
    registry.register(
        JobSpec(
            job_type=GENERATE_EMBEDDING,
            handler=handlers.generate_embedding,
            policy=GENERATE_EMBEDDING_POLICY,
            default_tier=PriorityTier.LOW,
        )
    )
    registry.register(
        JobSpec(
            job_type=PROCESS_FEEDBACK_LEARNING,
            handler=handlers.process_feedback_learning,
            policy=FEEDBACK_LEARNING_POLICY,
            entity_kind=EntityKind.OUTPUT,
            default_tier=PriorityTier.LOW,
        )
    )
    return registry
