"""Database module for the product knowledge base."""

from product_kb.db.database import (
    SessionFactory,
    create_engine,
    create_session_factory,
    init_db,
)
from product_kb.db.models import (
    Artifact,
    Base,
    ClusterComputationLog,
    CodebaseConnection,
    CodebaseModule,
    EmbeddingChunk,
    Evidence,
    EvidenceCluster,
    Link,
)

__all__ = [
    "Base",
    "Evidence",
    "Artifact",
    "CodebaseConnection",
    "CodebaseModule",
    "EmbeddingChunk",
    "EvidenceCluster",
    "ClusterComputationLog",
    "Link",
    "SessionFactory",
    "create_engine",
    "create_session_factory",
    "init_db",
]
