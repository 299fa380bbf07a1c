"""
Semantic layer: embedding storage and similarity retrieval.

- Embeddings for Inputs, Outputs and Feedback via the AI gateway
- Cosine similarity computed with numpy over stored float32 vectors
- Few-shot prompt assembly from high-confidence accepted examples
"""

from learnloop.semantic.embedding_service import EmbeddingResult, EmbeddingService
from learnloop.semantic.embedding_store import EmbeddingStore, EntityKind, embeddable_text
from learnloop.semantic.retrieval_service import RetrievalFilters, RetrievalService, SimilarExample

__all__ = [
    # Embedding
    "EmbeddingService",
    "EmbeddingResult",
    "EmbeddingStore",
    "EntityKind",
    "embeddable_text",
    # Retrieval
    "RetrievalService",
    "RetrievalFilters",
    "SimilarExample",
]
