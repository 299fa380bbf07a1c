"""
Confidence-weighted quality scoring.

quality = sum(action_score * confidence) / sum(confidence)

The score is undefined (None) until at least one feedback row exists and is
always clamped to [0, 1].
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

ACTION_SCORES: dict[str, float] = {
    "accept": 1.0,
    "copy": 0.8,
    "edit": 0.6,
    "reject": 0.2,
}
DEFAULT_ACTION_SCORE = 0.5

INLINE_ACTIONS = frozenset({"accept", "edit", "reject", "copy"})
PASSIVE_ACTIONS = frozenset({"task_completed", "task_deleted", "time_spent"})
VALID_ACTIONS = INLINE_ACTIONS | PASSIVE_ACTIONS

# Confidence assigned when the caller does not supply one
DEFAULT_CONFIDENCE: dict[str, float] = {
    "accept": 1.0,
    "reject": 1.0,
    "edit": 0.7,
    "copy": 0.8,
    "task_completed": 0.9,
    "task_deleted": 0.8,
    "time_spent": 0.6,
}
FALLBACK_CONFIDENCE = 0.8


def action_score(action: str) -> float:
    return ACTION_SCORES.get(action, DEFAULT_ACTION_SCORE)


def default_confidence(action: str) -> float:
    return DEFAULT_CONFIDENCE.get(action, FALLBACK_CONFIDENCE)


def _pair(row: Any) -> tuple[str, float]:
    if isinstance(row, tuple):
        action, confidence = row
    else:
        action, confidence = row.action, row.confidence
    return action, float(confidence)


def weighted_quality_score(rows: Iterable[Any]) -> float | None:
    """
    Quality score for a set of feedback rows.

    Args:
        rows: Feedback objects (with .action and .confidence) or
              (action, confidence) tuples.

    Returns:
        Score in [0, 1], DEFAULT_ACTION_SCORE when every confidence is zero,
        or None when there are no rows.
    """
    pairs = [_pair(row) for row in rows]
    if not pairs:
        return None

    total_weight = sum(confidence for _, confidence in pairs)
    if total_weight <= 0:
        return DEFAULT_ACTION_SCORE

    weighted = sum(action_score(action) * confidence for action, confidence in pairs)
    return min(1.0, max(0.0, weighted / total_weight))


def estimate_confidence(
    action: str,
    signal_type: str = "explicit",
    time_to_action: float | None = None,
    user_experience: str | None = None,
    completion_time: float | None = None,
) -> float:
    """
    Heuristic confidence for a feedback event when the client sends none.

    Args:
        action: Feedback action.
        signal_type: "explicit" or "passive".
        time_to_action: Seconds between showing the output and the action.
        user_experience: "beginner", "intermediate" or "expert".
        completion_time: Seconds to complete a generated task.
    """
    if signal_type == "explicit":
        base = {"accept": 1.0, "reject": 1.0, "edit": 0.7}.get(action, 0.8)
    else:
        base = {"task_completed": 0.9, "task_deleted": 0.8, "time_spent": 0.6}.get(action, 0.7)

    if time_to_action is not None and action == "edit":
        base = max(0.7, base) if time_to_action <= 5.0 else base
        if time_to_action > 30.0:
            base = 0.7

    if user_experience == "expert":
        base = min(1.0, base + 0.1)
    elif user_experience == "beginner":
        base = max(0.1, base - 0.1)

    if completion_time is not None and action == "task_completed":
        if completion_time < 1800:
            base = min(1.0, base + 0.1)
        elif completion_time > 7200:
            base = max(0.5, base - 0.1)

    return max(0.0, min(1.0, round(base, 1)))
