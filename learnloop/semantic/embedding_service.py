"""
Embedding Service - Generate semantic embeddings through the AI gateway.

Vectors come from the gateway's embedding endpoint (text-embedding-3-small,
1536 dimensions by default). Every call goes through the ai-provider circuit
breaker, so an unhealthy provider fails fast with CircuitOpenError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import numpy as np
from loguru import logger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from learnloop.db.database import get_session_factory, session_scope
from learnloop.db.models import Embedding
from learnloop.errors import EntityNotFoundError
from learnloop.gateway.ai_gateway import AiGateway, HttpAiGateway
from learnloop.gateway.cache_invalidation import CacheInvalidator, SafeInvalidator
from learnloop.gateway.guarded import GuardedAiGateway
from learnloop.semantic.embedding_store import (
    EmbeddingStore,
    EntityKind,
    embeddable_text,
    vector_from_bytes,
    vector_to_bytes,
)
from learnloop.semantic.query_cache import retrieval_cache
from learnloop.time_utils import utcnow


@dataclass
class EmbeddingResult:
    """Result of embedding generation for a single text."""

    text: str
    embedding: np.ndarray
    model_name: str
    generated_at: datetime
    tokens_used: int = 0

    def to_list(self) -> list[float]:
        """Convert embedding to list for JSON output."""
        return self.embedding.tolist()

    def to_bytes(self) -> bytes:
        """Convert embedding to bytes for LargeBinary storage."""
        return vector_to_bytes(self.embedding)

    @staticmethod
    def from_bytes(data: bytes) -> np.ndarray:
        """Deserialize embedding from LargeBinary storage."""
        return vector_from_bytes(data)

    @property
    def dimension(self) -> int:
        """Get embedding dimension."""
        return len(self.embedding)


class EmbeddingService:
    """
    Generate and store embeddings for Inputs, Outputs and Feedback.

    The gateway is created lazily on first use so constructing the service
    never opens a network client.

    Example:
        >>> service = EmbeddingService()
        >>> result = await service.embed("Ship the billing migration by Friday")
        >>> print(result.embedding.shape)  # (1536,)
        >>> row = await service.embed_entity(EntityKind.INPUT, 42)
    """

    def __init__(
        self,
        gateway: AiGateway | None = None,
        session_factory: sessionmaker | None = None,
        store: EmbeddingStore | None = None,
        invalidator: CacheInvalidator | None = None,
        model_name: str | None = None,
    ):
        settings = get_settings()
        self.model_name = model_name or settings.embedding_model
        self.expected_dimension = settings.embedding_dimension
        self._gateway = gateway
        self._session_factory = session_factory
        self.store = store or EmbeddingStore()
        self.invalidator = invalidator if isinstance(invalidator, SafeInvalidator) else SafeInvalidator(invalidator)

    @property
    def gateway(self) -> AiGateway:
        """Lazy load the guarded HTTP gateway on first use."""
        if self._gateway is None:
            logger.info(f"Creating AI gateway for embeddings: {self.model_name}")
            self._gateway = GuardedAiGateway(HttpAiGateway(embedding_model=self.model_name))
        return self._gateway

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Args:
            text: The text to generate an embedding for.

        Returns:
            EmbeddingResult containing the embedding vector and metadata.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        response = await self.gateway.embed(text, {"model": self.model_name})
        embedding = np.asarray(response.vector, dtype=np.float32)

        if embedding.size != self.expected_dimension:
            logger.warning(
                f"Embedding dimension {embedding.size} differs from configured {self.expected_dimension} "
                f"for model {response.model or self.model_name}"
            )

        return EmbeddingResult(
            text=text,
            embedding=embedding,
            model_name=self.model_name,
            generated_at=utcnow(),
            tokens_used=response.tokens_used,
        )

    async def embed_entity(self, kind: EntityKind | str, content_id: int, force: bool = False) -> Embedding | None:
        """
        Embed one content row and store the vector.

        Returns the stored Embedding, the existing one when already embedded
        (unless force), or None when the row has no embeddable text.
        """
        kind = EntityKind(kind)
        log = logger.bind(entity_type=kind.value, entity_id=content_id)

        with session_scope(self.session_factory) as session:
            entity = session.get(kind.model, content_id)
            if entity is None:
                raise EntityNotFoundError(f"{kind.value} {content_id} not found")
            text = embeddable_text(entity)
            if not text:
                log.debug("Nothing to embed")
                return None
            existing = self.store.get(session, kind, content_id, self.model_name)
            if existing is not None and not force:
                log.debug("Embedding already exists, skipping")
                return existing

        # Network call happens outside any open transaction
        result = await self.embed(text)

        with session_scope(self.session_factory) as session:
            row = self.store.upsert(
                session,
                kind,
                content_id,
                result.embedding,
                self.model_name,
                metadata={"tokens_used": result.tokens_used, "text_length": len(text)},
            )

        retrieval_cache.clear()
        if existing is not None:
            # A replaced vector changes every similarity ranking
            self.invalidator.bulk_invalidate(["embeddings"])
        else:
            self.invalidator.invalidate(kind.value, [content_id])
        log.info(f"Embedded {kind.value} {content_id} ({result.dimension}-dim)")
        return row

    @staticmethod
    def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """
        Calculate cosine similarity between two embeddings.

        Args:
            emb1: First embedding vector.
            emb2: Second embedding vector.

        Returns:
            Cosine similarity score between -1 and 1.
            Higher values indicate more similar texts.

        Raises:
            ValueError: If the vectors have different dimensions.
        """
        emb1 = np.asarray(emb1, dtype=np.float64)
        emb2 = np.asarray(emb2, dtype=np.float64)
        if emb1.shape != emb2.shape:
            raise ValueError(f"Dimension mismatch: {emb1.shape} vs {emb2.shape}")

        dot_product = np.dot(emb1, emb2)
        norm1 = np.linalg.norm(emb1)
        norm2 = np.linalg.norm(emb2)

        if norm1 == 0 or norm2 == 0:
            return 0.0

        return float(dot_product / (norm1 * norm2))

    @staticmethod
    def cosine_distance(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """
        Calculate cosine distance between two embeddings.

        Returns:
            Cosine distance (1 - similarity), between 0 and 2.
            Lower values indicate more similar texts.
        """
        return 1.0 - EmbeddingService.cosine_similarity(emb1, emb2)

    def get_model_info(self) -> dict:
        """Get information about the configured embedding model."""
        return {
            "model_name": self.model_name,
            "dimension": self.expected_dimension,
            "gateway_ready": self._gateway is not None,
        }
