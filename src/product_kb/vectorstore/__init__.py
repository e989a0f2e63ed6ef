"""Vector store module: embeddings, chunk storage and similarity search."""

from product_kb.vectorstore.embeddings import (
    BaseEmbeddings,
    EmbeddingService,
    get_embeddings,
)
from product_kb.vectorstore.indexer import SourceIndexer
from product_kb.vectorstore.retriever import SearchResult, SimilaritySearch
from product_kb.vectorstore.store import EmbeddingStore, IndexResult, PreparedChunk

__all__ = [
    "BaseEmbeddings",
    "EmbeddingService",
    "get_embeddings",
    "EmbeddingStore",
    "IndexResult",
    "PreparedChunk",
    "SearchResult",
    "SimilaritySearch",
    "SourceIndexer",
]
