"""
Similarity Retrieval - find prior corrected examples for few-shot prompts.

Candidates are earlier Inputs whose Outputs were scored and received an
`accept` feedback with high confidence. Similarity is computed in Python with
numpy against the stored input embeddings of the same model and
dimensionality; vectors from different models are never compared.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Feedback, Input, Output
from learnloop.errors import EntityNotFoundError
from learnloop.semantic.embedding_service import EmbeddingService
from learnloop.semantic.embedding_store import EmbeddingStore, EntityKind, vector_from_bytes
from learnloop.semantic.query_cache import QueryCache, retrieval_cache

DEFAULT_PROMPT_HEADER = (
    "You are an assistant that turns raw notes into structured, actionable output.\n"
    "Learn from these high-quality examples where users provided positive feedback:\n\n"
)


@dataclass(frozen=True)
class RetrievalFilters:
    """Optional narrowing of find_similar results."""

    output_kind: str | None = None
    min_confidence: float | None = None
    min_quality_score: float | None = None
    min_similarity: float | None = None
    context: dict[str, Any] | None = None

    @classmethod
    def from_value(cls, value: RetrievalFilters | dict[str, Any] | None) -> RetrievalFilters:
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        known = {k: v for k, v in value.items() if k in cls.__dataclass_fields__}
        unknown = set(value) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown retrieval filters: {sorted(unknown)}")
        return cls(**known)

    def cache_key(self) -> tuple:
        context = json.dumps(self.context, sort_keys=True, default=str) if self.context else None
        return (self.output_kind, self.min_confidence, self.min_quality_score, self.min_similarity, context)


@dataclass(frozen=True)
class SimilarExample:
    """A prior (input, output, accept feedback) triple ranked by similarity."""

    input: Input
    output: Output
    feedback: Feedback
    similarity_score: float
    personalization_score: float | None = None
    combined_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": {"id": self.input.id, "content": self.input.content},
            "output": {
                "id": self.output.id,
                "content": self.output.content,
                "output_kind": self.output.output_kind,
                "quality_score": self.output.quality_score,
            },
            "feedback": {
                "id": self.feedback.id,
                "action": self.feedback.action,
                "confidence": self.feedback.confidence,
                "metadata": self.feedback.meta or {},
            },
            "similarity_score": self.similarity_score,
            "personalization_score": self.personalization_score,
            "combined_score": self.combined_score,
        }


@dataclass
class UserFeedbackProfile:
    """Aggregated feedback history of one user."""

    preferred_output_kinds: list[str] = field(default_factory=list)
    avg_confidence: float = 0.8
    action_distribution: dict[str, int] = field(default_factory=dict)
    total_feedback_count: int = 0


class RetrievalService:
    """
    Retrieve and rank feedback examples similar to an Input.

    Example:
        >>> service = RetrievalService()
        >>> examples = service.find_similar(42, {"output_kind": "task_list"}, limit=3)
        >>> prompt = service.build_rag_prompt("Plan the Q3 launch", examples)
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        store: EmbeddingStore | None = None,
        cache: QueryCache | None = None,
        model_name: str | None = None,
    ):
        self.settings = get_settings()
        self._session_factory = session_factory
        self.store = store or EmbeddingStore()
        self.cache = cache if cache is not None else retrieval_cache
        self.model_name = model_name or self.settings.embedding_model

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # ========================================
    # Similarity search
    # ========================================

    def find_similar(
        self,
        input_id: int,
        filters: RetrievalFilters | dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[SimilarExample]:
        """
        Find the most similar prior examples with high-confidence accept feedback.

        Args:
            input_id: The Input to find examples for.
            filters: Optional RetrievalFilters (or equivalent dict).
            limit: Maximum examples returned (defaults to settings).

        Returns:
            Examples sorted by similarity, then quality score, then output
            recency. Empty when the Input has no embedding yet.

        Raises:
            EntityNotFoundError: If the Input does not exist.
        """
        filters = RetrievalFilters.from_value(filters)
        limit = limit if limit is not None else self.settings.retrieval_default_limit
        if limit <= 0:
            return []

        cache_key = (input_id, filters.cache_key(), limit, self.model_name)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        with session_scope(self.session_factory) as session:
            if session.get(Input, input_id) is None:
                raise EntityNotFoundError(f"Input {input_id} not found")

            query_embedding = self.store.get(session, EntityKind.INPUT, input_id, self.model_name)
            if query_embedding is None:
                logger.debug(f"Input {input_id} has no {self.model_name} embedding; no examples")
                return []
            query_vector = vector_from_bytes(query_embedding.vector)

            min_confidence = self.settings.retrieval_min_confidence
            if filters.min_confidence is not None:
                min_confidence = max(min_confidence, filters.min_confidence)

            stmt = (
                select(Input, Output, Feedback)
                .join(Output, Output.input_id == Input.id)
                .join(Feedback, Feedback.output_id == Output.id)
                .where(
                    Input.id != input_id,
                    Output.quality_score.is_not(None),
                    Feedback.action == "accept",
                    Feedback.confidence >= min_confidence,
                )
            )
            if filters.output_kind:
                stmt = stmt.where(Output.output_kind == filters.output_kind)
            if filters.min_quality_score is not None:
                stmt = stmt.where(Output.quality_score >= filters.min_quality_score)

            rows = session.execute(stmt).all()
            if not rows:
                self.cache.set(cache_key, [])
                return []

            vectors = self.store.load_vectors(
                session,
                EntityKind.INPUT,
                self.model_name,
                dimensions=query_embedding.dimensions,
                content_ids=sorted({row.Input.id for row in rows}),
            )

            # One entry per output, keeping its best qualifying feedback
            best: dict[int, SimilarExample] = {}
            for candidate_input, output, feedback in rows:
                vector = vectors.get(candidate_input.id)
                if vector is None:
                    continue
                if filters.context and not _matches_context(feedback, filters.context):
                    continue
                similarity = EmbeddingService.cosine_similarity(query_vector, vector)
                if filters.min_similarity is not None and similarity < filters.min_similarity:
                    continue

                current = best.get(output.id)
                if current is None or _feedback_rank(feedback) > _feedback_rank(current.feedback):
                    best[output.id] = SimilarExample(candidate_input, output, feedback, similarity)

        examples = sorted(
            best.values(),
            key=lambda e: (e.similarity_score, e.output.quality_score or 0.0, e.output.created_at),
            reverse=True,
        )[:limit]

        logger.debug(f"Found {len(examples)} similar examples for input {input_id}")
        self.cache.set(cache_key, examples)
        return list(examples)

    def invalidate_cache(self, input_id: int | None = None) -> int:
        """Drop cached query results after a new example or embedding is stored."""
        return self.cache.clear(input_id)

    # ========================================
    # Personalization
    # ========================================

    def get_user_profile(self, user_id: int) -> UserFeedbackProfile:
        """Summarize a user's feedback history."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(Feedback.confidence, Feedback.action, Output.output_kind)
                .join(Output, Output.id == Feedback.output_id)
                .where(Feedback.user_id == user_id)
            ).all()

        if not rows:
            return UserFeedbackProfile()

        kinds = Counter(row.output_kind or "unknown" for row in rows)
        return UserFeedbackProfile(
            preferred_output_kinds=[kind for kind, _ in kinds.most_common()],
            avg_confidence=sum(row.confidence for row in rows) / len(rows),
            action_distribution=dict(Counter(row.action for row in rows)),
            total_feedback_count=len(rows),
        )

    def find_personalized(self, input_id: int, user_id: int, limit: int = 5) -> list[SimilarExample]:
        """
        Similar examples re-weighted by the user's feedback history.

        The combined score is the mean of similarity and a personalization
        score built from output-kind preference (0.4), confidence alignment
        (0.3) and action preference (0.3).
        """
        profile = self.get_user_profile(user_id)

        filters: dict[str, Any] = {}
        if profile.preferred_output_kinds:
            filters["output_kind"] = profile.preferred_output_kinds[0]
        if profile.total_feedback_count:
            filters["min_confidence"] = max(0.6, profile.avg_confidence - 0.2)

        examples = self.find_similar(input_id, filters, limit)
        weighted = []
        for example in examples:
            personal = personalization_score(example, profile)
            weighted.append(
                replace(
                    example,
                    personalization_score=personal,
                    combined_score=(example.similarity_score + personal) / 2,
                )
            )
        return sorted(weighted, key=lambda e: e.combined_score, reverse=True)

    # ========================================
    # Prompt assembly
    # ========================================

    def build_rag_prompt(
        self,
        current_input: str,
        examples: list[SimilarExample],
        max_examples: int | None = None,
        include_metadata: bool = False,
        template: str | None = None,
    ) -> str:
        """
        Build a few-shot generation prompt from retrieved examples.

        A custom template may use the {input}, {examples} and {example_count}
        placeholders; the default template is used otherwise.
        """
        max_examples = max_examples if max_examples is not None else self.settings.rag_max_examples
        selected = list(examples)[: max(0, max_examples)]
        example_block = _render_examples(selected, include_metadata)

        if template:
            return (
                template.replace("{input}", current_input)
                .replace("{examples}", example_block)
                .replace("{example_count}", str(len(selected)))
            )

        prompt = DEFAULT_PROMPT_HEADER if selected else ""
        prompt += example_block
        prompt += "Now generate a high-quality response for this new input:\n"
        prompt += f"Input: {current_input}\n\n"
        prompt += "Respond with a JSON object containing your output:\n"
        return prompt


def _feedback_rank(feedback: Feedback) -> tuple:
    return (feedback.confidence, feedback.created_at, feedback.id or 0)


def _matches_context(feedback: Feedback, context: dict[str, Any]) -> bool:
    meta = feedback.meta or {}
    return all(meta.get(key) == value for key, value in context.items())


def _render_examples(examples: list[SimilarExample], include_metadata: bool) -> str:
    lines: list[str] = []
    for index, example in enumerate(examples, start=1):
        lines.append(f"EXAMPLE {index}:")
        lines.append(f"Input: {example.input.content}")
        lines.append(f"AI Output: {example.output.content}")
        lines.append(
            f"User Feedback: {example.feedback.action} (confidence: {example.feedback.confidence})"
        )
        meta = example.feedback.meta or {}
        if meta.get("corrected_content"):
            lines.append(f"User Corrections: {meta['corrected_content']}")
        if meta.get("edit_reason"):
            lines.append(f"Edit Reason: {meta['edit_reason']}")
        if include_metadata and meta:
            lines.append(f"Context: {json.dumps(meta, sort_keys=True, default=str)}")
        lines.append("")
    return "\n".join(lines) + ("\n" if lines else "")


def personalization_score(example: SimilarExample, profile: UserFeedbackProfile) -> float:
    """Score in [0, 1] for how well an example matches a user's history."""
    score = 0.0

    kinds = profile.preferred_output_kinds
    if kinds and example.output.output_kind in kinds:
        index = kinds.index(example.output.output_kind)
        score += 0.4 * (1.0 - index / len(kinds))

    if profile.total_feedback_count:
        score += 0.3 * (1.0 - abs(example.feedback.confidence - profile.avg_confidence))

    total_actions = sum(profile.action_distribution.values())
    if total_actions:
        score += 0.3 * (profile.action_distribution.get(example.feedback.action, 0) / total_actions)

    return float(np.clip(score, 0.0, 1.0))
