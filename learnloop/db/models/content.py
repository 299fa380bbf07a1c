"""
Content tables for the feedback learning loop.

Inputs are submitted by users, Outputs are generated from them by the AI
gateway, Feedback rows record how users reacted, and Embeddings hold one
vector per (content row, model). Embeddings reference their row through a
polymorphic (content_id, content_type) pair, so the reference is validated by
the embedding store at write time rather than by a foreign key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from learnloop.time_utils import utcnow

from .base import Base, JSONType

# ========================================
# STATUS VALUES
# ========================================

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class Input(Base):
    """Raw user submission (note, email, brain dump)."""

    __tablename__ = "inputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_kind: Mapped[str] = mapped_column(String(50), default="note")  # note, email, task_description
    source: Mapped[str] = mapped_column(String(20), default="manual")  # manual, import, api
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    # Relationships
    outputs: Mapped[list[Output]] = relationship(
        back_populates="input", cascade="all, delete-orphan", order_by="Output.version"
    )

    def embeddable_text(self) -> str:
        return _first_text(self, ("content", "title", "description"))


class Output(Base):
    """AI-generated content for an Input; regenerations add versions."""

    __tablename__ = "outputs"
    __table_args__ = (
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 1)",
            name="ck_outputs_quality_score_range",
        ),
        Index("ix_outputs_input_version", "input_id", "version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    input_id: Mapped[int] = mapped_column(ForeignKey("inputs.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    output_kind: Mapped[str] = mapped_column(String(50), default="summary")  # summary, task_list, checklist
    ai_model: Mapped[str | None] = mapped_column(String(100))
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    parent_output_id: Mapped[int | None] = mapped_column(ForeignKey("outputs.id", ondelete="SET NULL"))
    feedback_integrated: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    feedback_count: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_COMPLETED)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    # Relationships
    input: Mapped[Input] = relationship(back_populates="outputs")
    feedback: Mapped[list[Feedback]] = relationship(
        back_populates="output", cascade="all, delete-orphan", order_by="Feedback.created_at"
    )

    def embeddable_text(self) -> str:
        return _first_text(self, ("content", "title", "description"))


class Feedback(Base):
    """A single explicit or passive reaction to an Output."""

    __tablename__ = "feedback"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_feedback_confidence_range"),
        Index("ix_feedback_output_action", "output_id", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    output_id: Mapped[int] = mapped_column(ForeignKey("outputs.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), default="inline")  # inline, behavioral
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(20), default="explicit")  # explicit, passive
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    # Relationships
    output: Mapped[Output] = relationship(back_populates="feedback")

    def embeddable_text(self) -> str:
        """The user's correction, else the edit reason."""
        meta = self.meta or {}
        for key in ("corrected_content", "edit_reason"):
            value = meta.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""


class Embedding(Base):
    """Vector for exactly one Input, Output or Feedback row."""

    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("content_id", "content_type", "model", name="uq_embeddings_content_model"),
        Index("ix_embeddings_content", "content_id", "content_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_id: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)  # input, output, feedback
    # Serialized float32 numpy array
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    normalized: Mapped[bool] = mapped_column(Boolean, default=False)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


def _first_text(entity: Any, attrs: tuple[str, ...]) -> str:
    for attr in attrs:
        value = getattr(entity, attr, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""
