"""Retry and feedback loop.

Records operator feedback, snapshots item versions, and schedules
bounded regeneration retries with exponential backoff.
"""

from src.curation.feedback.loop import (
    FeedbackError,
    FeedbackRepository,
    Regenerator,
    RetryFeedbackLoop,
    RetryLimitExceededError,
)
from src.curation.feedback.memory import InMemoryFeedbackRepository
from src.curation.feedback.models import (
    DEFAULT_MAX_RETRIES,
    FeedbackAction,
    FeedbackCategory,
    FeedbackHistory,
    ItemVersion,
    OperatorFeedback,
    RetryPassResult,
    RetryQueueEntry,
    RetryStatus,
)
from src.curation.feedback.repository import PostgresFeedbackRepository

__all__ = [
    # Models
    "DEFAULT_MAX_RETRIES",
    "FeedbackAction",
    "FeedbackCategory",
    "FeedbackHistory",
    "ItemVersion",
    "OperatorFeedback",
    "RetryPassResult",
    "RetryQueueEntry",
    "RetryStatus",
    # Loop
    "FeedbackError",
    "FeedbackRepository",
    "Regenerator",
    "RetryFeedbackLoop",
    "RetryLimitExceededError",
    # Repositories
    "InMemoryFeedbackRepository",
    "PostgresFeedbackRepository",
]
