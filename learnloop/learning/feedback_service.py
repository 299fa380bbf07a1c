"""
Feedback capture.

Explicit (inline) feedback and passive behavioral signals are both stored as
Feedback rows. Every write bumps the Output's feedback_count, recomputes its
quality score in the same transaction and then invalidates caches.
"""

from __future__ import annotations

import json
import math
from collections import Counter
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Feedback, Output
from learnloop.errors import EntityNotFoundError, FeedbackValidationError, LearnLoopError
from learnloop.gateway.cache_invalidation import CacheInvalidator, SafeInvalidator
from learnloop.learning.aggregator import refresh_quality_score
from learnloop.learning.quality import INLINE_ACTIONS, PASSIVE_ACTIONS, default_confidence
from learnloop.semantic.query_cache import QueryCache, retrieval_cache
from learnloop.time_utils import utcnow

MAX_METADATA_BYTES = 1_048_576


def _validate_confidence(confidence: float) -> float:
    try:
        value = float(confidence)
    except (TypeError, ValueError) as e:
        raise FeedbackValidationError(f"Confidence must be a number, got {confidence!r}") from e
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise FeedbackValidationError("Confidence score must be between 0.0 and 1.0")
    return value


def _prepare_metadata(metadata: dict[str, Any] | None, **fields: Any) -> dict[str, Any]:
    prepared = dict(metadata or {})
    for key, value in fields.items():
        if value is not None:
            prepared[key] = value
    prepared.setdefault("timestamp", utcnow().isoformat())

    size = len(json.dumps(prepared, default=str))
    if size > MAX_METADATA_BYTES:
        raise FeedbackValidationError(
            f"Metadata payload too large ({size} bytes). Maximum allowed: {MAX_METADATA_BYTES}"
        )
    return prepared


class FeedbackService:
    """
    Record user feedback and keep output quality scores current.

    Example:
        >>> service = FeedbackService()
        >>> fb = service.record_feedback(17, user_id=3, action="edit", correction="Ship Friday")
        >>> service.update_confidence(fb.id, 0.4)
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

    # ========================================
    # Capture
    # ========================================

    def record_feedback(
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
        Record explicit inline feedback on an Output.

        Args:
            output_id: Output the feedback refers to.
            user_id: Acting user.
            action: accept, edit, reject or copy.
            confidence: Value in [0, 1]; defaults per action when omitted.
            correction: Corrected content; required for edits unless given
                        as metadata["corrected_content"].
            metadata: Free-form context stored with the feedback.
            edit_reason: Why the user edited.

        Raises:
            FeedbackValidationError: On an invalid action, confidence or
                missing correction.
            EntityNotFoundError: If the Output does not exist.
        """
        if action not in INLINE_ACTIONS:
            raise FeedbackValidationError(f"Invalid action: {action}")
        value = default_confidence(action) if confidence is None else _validate_confidence(confidence)

        correction = correction or (metadata or {}).get("corrected_content")
        if action == "edit" and not (isinstance(correction, str) and correction.strip()):
            raise FeedbackValidationError("Edit feedback requires corrected content")

        return self._store(
            output_id,
            user_id,
            action,
            value,
            feedback_type="inline",
            signal_type="explicit",
            metadata=metadata,
            corrected_content=correction,
            edit_reason=edit_reason,
        )

    def record_passive_signal(
        self,
        output_id: int,
        user_id: int,
        action: str,
        confidence: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Feedback:
        """Record a behavioral signal such as completing or deleting a generated task."""
        if action not in PASSIVE_ACTIONS:
            raise FeedbackValidationError(f"Invalid passive action: {action}")
        value = default_confidence(action) if confidence is None else _validate_confidence(confidence)
        return self._store(
            output_id,
            user_id,
            action,
            value,
            feedback_type="behavioral",
            signal_type="passive",
            metadata=metadata,
        )

    def record_batch(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Record several feedback submissions; failures are collected per item.

        Each item holds record_feedback/record_passive_signal keyword arguments
        plus an optional "type" ("inline" or "behavioral").
        """
        successful: list[Feedback] = []
        errors: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            kwargs = dict(item)
            feedback_type = kwargs.pop("type", "inline")
            try:
                if feedback_type == "inline":
                    successful.append(self.record_feedback(**kwargs))
                else:
                    successful.append(self.record_passive_signal(**kwargs))
            except (LearnLoopError, TypeError) as e:
                errors.append({"index": index, "error": str(e)})

        return {
            "success": not errors,
            "successful": successful,
            "failed": errors,
            "total_processed": len(items),
            "success_count": len(successful),
            "error_count": len(errors),
        }

    def _store(
        self,
        output_id: int,
        user_id: int,
        action: str,
        confidence: float,
        feedback_type: str,
        signal_type: str,
        metadata: dict[str, Any] | None,
        corrected_content: str | None = None,
        edit_reason: str | None = None,
    ) -> Feedback:
        with session_scope(self.session_factory) as session:
            output = session.get(Output, output_id)
            if output is None:
                raise EntityNotFoundError(f"Output {output_id} not found")

            meta = _prepare_metadata(
                metadata,
                corrected_content=corrected_content,
                edit_reason=edit_reason,
                original_content=output.content if corrected_content else None,
            )
            feedback = Feedback(
                output_id=output_id,
                user_id=user_id,
                type=feedback_type,
                action=action,
                signal_type=signal_type,
                confidence=confidence,
                meta=meta,
            )
            session.add(feedback)
            output.feedback_count = (output.feedback_count or 0) + 1
            score = refresh_quality_score(session, output)

        logger.bind(entity_type="output", entity_id=output_id).info(
            f"Recorded {signal_type} feedback {feedback.id}: {action}@{confidence} (quality={score})"
        )

        if action == "accept" and confidence >= self.settings.retrieval_min_confidence:
            self.cache.clear()
        self.invalidator.invalidate("feedback", [feedback.id])
        self.invalidator.invalidate("outputs", [output_id])
        return feedback

    # ========================================
    # Updates
    # ========================================

    def update_confidence(self, feedback_id: int, confidence: float) -> Feedback:
        """
        Change the confidence of an existing feedback row.

        A shift larger than confidence_shift_threshold invalidates feedback
        and embedding caches broadly instead of only this row's entries.
        """
        value = _validate_confidence(confidence)

        with session_scope(self.session_factory) as session:
            feedback = session.get(Feedback, feedback_id)
            if feedback is None:
                raise EntityNotFoundError(f"Feedback {feedback_id} not found")
            previous = feedback.confidence
            shift = abs(value - previous)
            feedback.confidence = value
            output = session.get(Output, feedback.output_id)
            refresh_quality_score(session, output)

        if shift > self.settings.confidence_shift_threshold:
            logger.info(f"Confidence of feedback {feedback_id} shifted by {shift:.2f}; broad invalidation")
            self.cache.clear()
            self.invalidator.bulk_invalidate(["feedback", "embeddings"])
        else:
            self.invalidator.invalidate("feedback", [feedback_id])
            self.invalidator.invalidate("outputs", [feedback.output_id])

        threshold = self.settings.retrieval_min_confidence
        if feedback.action == "accept" and max(previous, value) >= threshold:
            # Qualification of this example may have changed
            self.cache.clear()
        return feedback

    # ========================================
    # Analytics
    # ========================================

    def feedback_analytics(self, user_id: int | None = None, since: datetime | None = None) -> dict[str, Any]:
        """Counts, rates (percent) and average confidence over feedback rows."""
        with session_scope(self.session_factory) as session:
            stmt = select(Feedback.action, Feedback.type, Feedback.confidence)
            if user_id is not None:
                stmt = stmt.where(Feedback.user_id == user_id)
            if since is not None:
                stmt = stmt.where(Feedback.created_at >= since)
            rows = session.execute(stmt).all()

        total = len(rows)
        actions = Counter(row.action for row in rows)
        types = Counter(row.type for row in rows)

        def rate(count: int) -> float:
            return round(count / total * 100, 2) if total else 0.0

        return {
            "total_feedback": total,
            "acceptance_rate": rate(actions["accept"]),
            "edit_rate": rate(actions["edit"]),
            "rejection_rate": rate(actions["reject"]),
            "average_confidence": round(sum(row.confidence for row in rows) / total, 2) if total else 0.0,
            "inline_feedback_count": types["inline"],
            "behavioral_feedback_count": types["behavioral"],
            "feedback_distribution": {
                "accept": actions["accept"],
                "edit": actions["edit"],
                "reject": actions["reject"],
            },
        }

    def aggregate_patterns(self, output_id: int) -> dict[str, Any]:
        """Action distribution and average confidence for one Output."""
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(Feedback.action, Feedback.confidence).where(Feedback.output_id == output_id)
            ).all()

        actions = Counter(row.action for row in rows)
        count = len(rows)
        return {
            "action_distribution": dict(actions),
            "average_confidence": round(sum(row.confidence for row in rows) / count, 2) if count else 0.0,
            "feedback_count": count,
            "most_common_action": actions.most_common(1)[0][0] if actions else None,
        }
