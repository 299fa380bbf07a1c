"""
Embedding Store - persistence for Input/Output/Feedback vectors.

Each embedding references exactly one content row through (content_id,
content_type). There is no foreign key for a polymorphic reference, so the
store checks that the row exists for the declared type before writing.
Writes are a single INSERT ... ON CONFLICT DO UPDATE on
(content_id, content_type, model), which keeps concurrent jobs embedding the
same entity from creating duplicates.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import numpy as np
from loguru import logger
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from learnloop.db.models import Embedding, Feedback, Input, Output
from learnloop.errors import EmbeddingReferenceError
from learnloop.time_utils import utcnow


class EntityKind(str, Enum):
    """Content types that can carry an embedding."""

    INPUT = "input"
    OUTPUT = "output"
    FEEDBACK = "feedback"

    @property
    def model(self) -> type:
        return _KIND_MODELS[self]


_KIND_MODELS: dict[EntityKind, type] = {
    EntityKind.INPUT: Input,
    EntityKind.OUTPUT: Output,
    EntityKind.FEEDBACK: Feedback,
}


def vector_to_bytes(vector: np.ndarray | list[float]) -> bytes:
    """Serialize a vector to float32 bytes for LargeBinary storage."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def vector_from_bytes(data: bytes) -> np.ndarray:
    """Deserialize a vector stored by vector_to_bytes."""
    return np.frombuffer(data, dtype=np.float32)


def embeddable_text(entity: Any) -> str:
    """
    Text to embed for a content row.

    Every embeddable model exposes embeddable_text(); Inputs and Outputs
    return their content, Feedback returns the user's correction or edit
    reason. An empty string means the row has nothing to embed.
    """
    extract = getattr(entity, "embeddable_text", None)
    if extract is None:
        raise TypeError(f"{type(entity).__name__} does not carry embeddable text")
    return extract() or ""


class EmbeddingStore:
    """Validated, idempotent embedding writes and vector loading."""

    def validate_reference(self, session: Session, kind: EntityKind, content_id: int) -> None:
        if session.get(kind.model, content_id) is None:
            raise EmbeddingReferenceError(f"No {kind.value} with id {content_id} for embedding")

    def upsert(
        self,
        session: Session,
        kind: EntityKind,
        content_id: int,
        vector: np.ndarray | list[float],
        model: str,
        metadata: dict[str, Any] | None = None,
    ) -> Embedding:
        """Insert or replace the embedding for (content_id, kind, model)."""
        kind = EntityKind(kind)
        self.validate_reference(session, kind, content_id)

        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.size == 0:
            raise ValueError("Embedding vector must be a non-empty 1-D array")

        now = utcnow()
        values = {
            "content_id": content_id,
            "content_type": kind.value,
            "vector": vector_to_bytes(array),
            "model": model,
            "dimensions": int(array.size),
            "normalized": bool(np.isclose(np.linalg.norm(array), 1.0, atol=1e-3)),
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        }

        dialect = session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(Embedding.__table__).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["content_id", "content_type", "model"],
                set_={
                    "vector": stmt.excluded.vector,
                    "dimensions": stmt.excluded.dimensions,
                    "normalized": stmt.excluded.normalized,
                    "metadata": stmt.excluded["metadata"],
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            session.execute(stmt)
        else:
            self._upsert_fallback(session, values)

        row = self.get(session, kind, content_id, model)
        # Refresh any identity-map copy with the values just written
        session.refresh(row)
        logger.debug(f"Stored {row.dimensions}-dim embedding for {kind.value} {content_id} ({model})")
        return row

    def _upsert_fallback(self, session: Session, values: dict[str, Any]) -> None:
        existing = session.execute(
            select(Embedding).where(
                Embedding.content_id == values["content_id"],
                Embedding.content_type == values["content_type"],
                Embedding.model == values["model"],
            )
        ).scalar_one_or_none()
        if existing is None:
            session.add(
                Embedding(
                    content_id=values["content_id"],
                    content_type=values["content_type"],
                    vector=values["vector"],
                    model=values["model"],
                    dimensions=values["dimensions"],
                    normalized=values["normalized"],
                    meta=values["metadata"],
                )
            )
        else:
            existing.vector = values["vector"]
            existing.dimensions = values["dimensions"]
            existing.normalized = values["normalized"]
            existing.meta = values["metadata"]
        session.flush()

    def get(
        self, session: Session, kind: EntityKind, content_id: int, model: str | None = None
    ) -> Embedding | None:
        stmt = select(Embedding).where(
            Embedding.content_id == content_id,
            Embedding.content_type == EntityKind(kind).value,
        )
        if model is not None:
            stmt = stmt.where(Embedding.model == model)
        return session.execute(stmt.order_by(Embedding.updated_at.desc()).limit(1)).scalar_one_or_none()

    def exists(self, session: Session, kind: EntityKind, content_id: int, model: str | None = None) -> bool:
        return self.get(session, kind, content_id, model) is not None

    def load_vectors(
        self,
        session: Session,
        kind: EntityKind,
        model: str,
        dimensions: int | None = None,
        content_ids: list[int] | None = None,
    ) -> dict[int, np.ndarray]:
        """
        Load vectors for one content type and model.

        Args:
            session: Database session.
            kind: Content type to load.
            model: Embedding model; vectors from other models are not comparable.
            dimensions: Optional dimensionality filter.
            content_ids: Optional restriction to these rows.

        Returns:
            Dictionary mapping content_id to its vector.
        """
        stmt = select(Embedding.content_id, Embedding.vector).where(
            Embedding.content_type == EntityKind(kind).value,
            Embedding.model == model,
        )
        if dimensions is not None:
            stmt = stmt.where(Embedding.dimensions == dimensions)
        if content_ids is not None:
            if not content_ids:
                return {}
            stmt = stmt.where(Embedding.content_id.in_(content_ids))

        vectors = {row.content_id: vector_from_bytes(row.vector) for row in session.execute(stmt)}
        logger.debug(f"Loaded {len(vectors)} {EntityKind(kind).value} embeddings for {model}")
        return vectors
