# SQLAlchemy models
from .base import Base
from .content import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    Embedding,
    Feedback,
    Input,
    Output,
)
from .jobs import (
    ArchivedDeadLetterRecord,
    DeadLetterRecord,
    JobLease,
    QueuedJob,
)

__all__ = [
    # Base
    "Base",
    # Content
    "Input",
    "Output",
    "Feedback",
    "Embedding",
    "STATUS_PENDING",
    "STATUS_PROCESSING",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    # Jobs
    "QueuedJob",
    "JobLease",
    "DeadLetterRecord",
    "ArchivedDeadLetterRecord",
]
