"""
Learning Aggregator - turns accumulated feedback into output quality and patterns.

An Output becomes a reusable retrieval example once it has a quality score
and at least one `accept` feedback at or above the retrieval confidence
threshold; process_output() then sets feedback_integrated and drops cached
similarity results so the new example is visible to the next query.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Feedback, Output
from learnloop.errors import EntityNotFoundError
from learnloop.gateway.cache_invalidation import CacheInvalidator, SafeInvalidator
from learnloop.learning.patterns import build_patterns
from learnloop.learning.quality import weighted_quality_score
from learnloop.semantic.query_cache import QueryCache, retrieval_cache
from learnloop.time_utils import utcnow


def refresh_quality_score(session: Session, output: Output) -> float | None:
    """Recompute and store the quality score of an Output inside an open session."""
    session.flush()
    rows = session.execute(
        select(Feedback.action, Feedback.confidence).where(Feedback.output_id == output.id)
    ).all()
    score = weighted_quality_score([(row.action, row.confidence) for row in rows])
    if score is not None:
        output.quality_score = score
    return score


def has_qualifying_accept(feedback: list[Feedback], min_confidence: float) -> bool:
    return any(fb.action == "accept" and fb.confidence >= min_confidence for fb in feedback)


class LearningAggregator:
    """
    Recompute quality scores and extract learning patterns per Output.

    Example:
        >>> aggregator = LearningAggregator()
        >>> aggregator.recompute_quality(17)
        0.8667
        >>> patterns = aggregator.process_output(17)
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        invalidator: CacheInvalidator | None = None,
        cache: QueryCache | None = None,
    ):
        self.settings = get_settings()
        self._session_factory = session_factory
        self.invalidator = invalidator if isinstance(invalidator, SafeInvalidator) else SafeInvalidator(invalidator)
        self.cache = cache if cache is not None else retrieval_cache

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def recompute_quality(self, output_id: int) -> float | None:
        """
        Recompute the confidence-weighted quality score of an Output.

        Returns:
            The stored score, or None when the Output has no feedback yet.
        """
        with session_scope(self.session_factory) as session:
            output = session.get(Output, output_id)
            if output is None:
                raise EntityNotFoundError(f"Output {output_id} not found")
            previous = output.quality_score
            score = refresh_quality_score(session, output)

        if score is not None and score != previous:
            self.invalidator.invalidate("outputs", [output_id])
        return score

    def process_output(self, output_id: int, job_id: str | None = None) -> dict[str, Any]:
        """
        Aggregate all feedback on an Output into learning patterns.

        Stores the recomputed quality score, marks the Output as an integrated
        example when a high-confidence accept exists, and records the patterns
        under metadata["feedback_learning"].

        Returns:
            The extracted patterns, or an empty dict when there is no feedback.
        """
        min_confidence = self.settings.retrieval_min_confidence
        log = logger.bind(entity_type="output", entity_id=output_id)

        with session_scope(self.session_factory) as session:
            output = session.get(Output, output_id)
            if output is None:
                raise EntityNotFoundError(f"Output {output_id} not found")

            feedback = list(
                session.execute(
                    select(Feedback).where(Feedback.output_id == output_id).order_by(Feedback.created_at.desc())
                ).scalars()
            )
            if not feedback:
                log.info("No feedback available for learning")
                return {}

            patterns = build_patterns(output, feedback, self.settings.pattern_top_n, min_confidence)
            score = refresh_quality_score(session, output)
            qualifying = has_qualifying_accept(feedback, min_confidence)
            if qualifying:
                output.feedback_integrated = True

            meta = dict(output.meta or {})
            meta["feedback_learning"] = {
                **patterns,
                "processed_at": utcnow().isoformat(),
                "job_id": job_id,
                "learning_enabled": True,
            }
            output.meta = meta

        if qualifying:
            self.cache.clear()
        self.invalidator.invalidate("outputs", [output_id])

        log.info(
            f"Feedback learning complete: {len(feedback)} feedback, quality={score}, "
            f"integrated={qualifying}, themes={len(patterns['themes'])}"
        )
        return patterns
