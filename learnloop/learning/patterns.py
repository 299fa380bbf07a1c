"""
Feedback pattern extraction.

Patterns are stored on the Output under metadata["feedback_learning"] and
feed later prompt construction: recurring correction themes, literal
(original, corrected) pairs and simple quality indicators.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from learnloop.db.models import Feedback, Output
from learnloop.learning.quality import weighted_quality_score

NEGATIVE_ACTIONS = ("reject", "edit")
LOW_CONFIDENCE = 0.6


def feedback_summary(feedback: Sequence[Feedback]) -> dict[str, Any]:
    total = len(feedback)
    return {
        "total_feedback": total,
        "positive_feedback": sum(1 for fb in feedback if fb.action == "accept"),
        "negative_feedback": sum(1 for fb in feedback if fb.action in NEGATIVE_ACTIONS),
        "average_confidence": round(sum(fb.confidence for fb in feedback) / total, 4) if total else None,
        "feedback_types": dict(Counter(fb.type for fb in feedback)),
    }


def extract_themes(feedback: Sequence[Feedback], top_n: int = 10) -> dict[str, int]:
    """Top-N recurring edit reasons and feedback categories, most frequent first."""
    themes: Counter[str] = Counter()
    for fb in feedback:
        meta = fb.meta or {}
        for key in ("edit_reason", "feedback_category"):
            value = meta.get(key)
            if value:
                themes[str(value)] += 1
    return dict(themes.most_common(max(0, top_n)))


def extract_corrections(output: Output, feedback: Sequence[Feedback]) -> list[dict[str, Any]]:
    """Literal correction pairs from edit feedback."""
    corrections = []
    for fb in feedback:
        meta = fb.meta or {}
        if fb.action != "edit" or not meta.get("corrected_content"):
            continue
        corrections.append(
            {
                "original_content": meta.get("original_content") or output.content,
                "corrected_content": meta["corrected_content"],
                "edit_reason": meta.get("edit_reason"),
                "confidence": fb.confidence,
                "user_id": fb.user_id,
                "timestamp": fb.created_at.isoformat() if fb.created_at else None,
            }
        )
    return corrections


def quality_indicators(feedback: Sequence[Feedback], min_confidence: float) -> dict[str, Any]:
    high_quality = sum(1 for fb in feedback if fb.action == "accept" and fb.confidence >= min_confidence)

    improvement_areas: list[str] = []
    for fb in feedback:
        if fb.confidence < LOW_CONFIDENCE or fb.action in NEGATIVE_ACTIONS:
            category = (fb.meta or {}).get("feedback_category")
            if category and category not in improvement_areas:
                improvement_areas.append(category)

    return {
        "high_quality_signals": high_quality,
        "improvement_areas": improvement_areas,
        "overall_quality_score": weighted_quality_score(feedback),
    }


def build_patterns(
    output: Output,
    feedback: Sequence[Feedback],
    top_n: int = 10,
    min_confidence: float = 0.8,
) -> dict[str, Any]:
    return {
        "feedback_summary": feedback_summary(feedback),
        "themes": extract_themes(feedback, top_n),
        "corrections": extract_corrections(output, feedback),
        "quality_indicators": quality_indicators(feedback, min_confidence),
    }
