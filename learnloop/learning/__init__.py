"""
Learning from feedback: capture, quality scoring and pattern extraction.
"""

from learnloop.learning.aggregator import LearningAggregator
from learnloop.learning.feedback_service import FeedbackService
from learnloop.learning.quality import ACTION_SCORES, DEFAULT_ACTION_SCORE, weighted_quality_score

__all__ = [
    "FeedbackService",
    "LearningAggregator",
    "ACTION_SCORES",
    "DEFAULT_ACTION_SCORE",
    "weighted_quality_score",
]
