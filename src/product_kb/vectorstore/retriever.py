"""Workspace-scoped similarity search over embedding chunks."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np
from sqlalchemy import select

from product_kb.config import settings
from product_kb.db.database import SessionFactory
from product_kb.db.models import EmbeddingChunk, SourceType
from product_kb.vectorstore.embeddings import EmbeddingService
from product_kb.vectorstore.similarity import cosine_similarities

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """A ranked chunk with its similarity to the query."""

    similarity: float
    chunk_text: str
    source_id: str
    source_type: str
    chunk_index: int
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def title(self) -> str | None:
        return self.metadata.get("title")

    def to_dict(self) -> dict[str, Any]:
        return {
            "similarity": self.similarity,
            "chunk_text": self.chunk_text,
            "source_id": self.source_id,
            "source_type": self.source_type,
            "chunk_index": self.chunk_index,
            "metadata": self.metadata,
        }


def effective_limit(limit: int | None) -> int:
    """Requested limit, defaulted and capped at SEARCH_MAX_LIMIT."""
    if limit is None:
        limit = settings.SEARCH_DEFAULT_LIMIT
    return max(0, min(limit, settings.SEARCH_MAX_LIMIT))


class SimilaritySearch:
    """Ranks a workspace's embedded chunks by cosine similarity."""

    def __init__(self, session_factory: SessionFactory, embedder: EmbeddingService):
        self.session_factory = session_factory
        self.embedder = embedder

    async def search(
        self,
        query: str,
        workspace_id: str,
        source_types: Iterable[str] | None = None,
        limit: int | None = None,
        min_similarity: float = 0.0,
    ) -> list[SearchResult]:
        """Embed the query and return the closest chunks of the workspace.

        Results are ordered by descending similarity, ties broken by the
        most recently created chunk.
        """
        vector = await self.embedder.embed(query)
        return await self.search_by_vector(
            vector,
            workspace_id,
            source_types=source_types,
            limit=limit,
            min_similarity=min_similarity,
        )

    async def search_by_vector(
        self,
        vector: Sequence[float],
        workspace_id: str,
        source_types: Iterable[str] | None = None,
        limit: int | None = None,
        min_similarity: float = 0.0,
        exclude_source_ids: Iterable[str] | None = None,
    ) -> list[SearchResult]:
        limit = effective_limit(limit)
        if limit == 0:
            return []

        stmt = select(EmbeddingChunk).where(
            EmbeddingChunk.workspace_id == workspace_id,
            EmbeddingChunk.vector.is_not(None),
        )
        if source_types:
            stmt = stmt.where(
                EmbeddingChunk.source_type.in_([SourceType(t).value for t in source_types])
            )
        excluded = set(exclude_source_ids or ())

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        candidates = []
        mismatched = 0
        for row in rows:
            if row.source_id in excluded:
                continue
            if len(row.vector) != len(vector):
                mismatched += 1
                continue
            candidates.append(row)
        if mismatched:
            logger.debug(f"Skipped {mismatched} chunks with mismatched dimension in {workspace_id}")
        if not candidates:
            return []

        scores = cosine_similarities(vector, np.asarray([row.vector for row in candidates], dtype=float))

        ranked = sorted(
            (
                (float(score), row)
                for score, row in zip(scores, candidates)
                if score >= min_similarity
            ),
            key=lambda pair: (-pair[0], -pair[1].created_at.timestamp()),
        )

        return [
            SearchResult(
                similarity=score,
                chunk_text=row.chunk_text,
                source_id=row.source_id,
                source_type=row.source_type,
                chunk_index=row.chunk_index,
                metadata=dict(row.chunk_metadata or {}),
                created_at=row.created_at,
            )
            for score, row in ranked[:limit]
        ]
