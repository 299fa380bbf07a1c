"""
External collaborator interfaces: the AI gateway and cache invalidation.
"""

from learnloop.gateway.ai_gateway import AiGateway, EmbeddingResponse, GenerationResult, HttpAiGateway
from learnloop.gateway.cache_invalidation import CacheInvalidator, NullCacheInvalidator, SafeInvalidator

__all__ = [
    "AiGateway",
    "HttpAiGateway",
    "GenerationResult",
    "EmbeddingResponse",
    "CacheInvalidator",
    "NullCacheInvalidator",
    "SafeInvalidator",
]
