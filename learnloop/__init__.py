"""
learnloop: feedback-driven retrieval and job reliability for AI-generated content.

Subpackages:
- db: SQLAlchemy models and session management
- semantic: embedding storage, similarity retrieval and RAG prompt assembly
- learning: feedback capture and quality aggregation
- reliability: circuit breaker, idempotency leases, retry policy
- jobs: queues, orchestrator, worker pool and dead-letter store
- gateway: AI gateway and cache invalidation interfaces
"""

__version__ = "0.1.0"
