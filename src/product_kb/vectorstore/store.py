"""Embedding store: chunk, embed and atomically replace a source's chunks."""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.chunking import TextChunker
from product_kb.content.nodes import DocNode
from product_kb.db.database import SessionFactory
from product_kb.db.models import EmbeddingChunk, SourceType
from product_kb.vectorstore.embeddings import EmbeddingService

logger = logging.getLogger(__name__)


@dataclass
class PreparedChunk:
    """A chunk ready to be written; ``vector`` is None if embedding failed."""

    chunk_index: int
    chunk_text: str
    vector: list[float] | None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def embedded(self) -> bool:
        return self.vector is not None


@dataclass
class IndexResult:
    source_id: str
    source_type: str
    chunk_count: int
    embedded_count: int

    @property
    def failed_count(self) -> int:
        return self.chunk_count - self.embedded_count


class EmbeddingStore:
    """Owns the EmbeddingChunk rows of every source.

    Re-indexing a source replaces its chunk set in one transaction, so
    readers see either the old set or the new one. Concurrent indexing of
    the same source is serialized in-process; different sources proceed
    in parallel.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        embedder: EmbeddingService,
        chunker: TextChunker | None = None,
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.chunker = chunker or TextChunker()
        self._locks: "weakref.WeakValueDictionary[tuple[str, str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def source_lock(self, workspace_id: str, source_type: str, source_id: str) -> asyncio.Lock:
        """Lock serializing writers of one source's chunks."""
        key = (workspace_id, str(source_type), source_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def prepare_chunks(
        self,
        content: str | DocNode | dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> list[PreparedChunk]:
        """Chunk and embed content without touching the database."""
        texts = self.chunker.chunk(content)
        outcomes = await asyncio.gather(*(self.embedder.try_embed(text) for text in texts))

        chunks = []
        for index, (text, (vector, error)) in enumerate(zip(texts, outcomes)):
            chunk_metadata = dict(metadata or {})
            chunk_metadata["chunk_count"] = len(texts)
            if error:
                chunk_metadata["embedding_error"] = error
            chunks.append(PreparedChunk(index, text, vector, chunk_metadata))
        return chunks

    @staticmethod
    async def replace_chunks(
        session: AsyncSession,
        workspace_id: str,
        source_type: str,
        source_id: str,
        chunks: list[PreparedChunk],
    ) -> None:
        """Swap a source's chunk set inside the caller's transaction."""
        source_type = SourceType(source_type).value
        await session.execute(
            delete(EmbeddingChunk).where(
                EmbeddingChunk.workspace_id == workspace_id,
                EmbeddingChunk.source_type == source_type,
                EmbeddingChunk.source_id == source_id,
            )
        )
        session.add_all(
            EmbeddingChunk(
                workspace_id=workspace_id,
                source_id=source_id,
                source_type=source_type,
                chunk_text=chunk.chunk_text,
                chunk_index=chunk.chunk_index,
                vector=chunk.vector,
                chunk_metadata=chunk.metadata,
            )
            for chunk in chunks
        )
        await session.flush()

    @staticmethod
    async def delete_source(
        session: AsyncSession, workspace_id: str, source_type: str, source_id: str
    ) -> int:
        """Delete a source's chunks inside the caller's transaction."""
        result = await session.execute(
            delete(EmbeddingChunk).where(
                EmbeddingChunk.workspace_id == workspace_id,
                EmbeddingChunk.source_type == SourceType(source_type).value,
                EmbeddingChunk.source_id == source_id,
            )
        )
        return result.rowcount or 0

    async def index_source(
        self,
        source_id: str,
        source_type: str,
        workspace_id: str,
        content: str | DocNode | dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> IndexResult:
        """Chunk, embed and store a source, replacing its previous chunks."""
        source_type = SourceType(source_type).value
        async with self.source_lock(workspace_id, source_type, source_id):
            return await self.write_source(source_id, source_type, workspace_id, content, metadata)

    async def write_source(
        self,
        source_id: str,
        source_type: str,
        workspace_id: str,
        content: str | DocNode | dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> IndexResult:
        """Like ``index_source``, for callers already holding the source's lock."""
        source_type = SourceType(source_type).value
        chunks = await self.prepare_chunks(content, metadata)
        async with self.session_factory() as session:
            await self.replace_chunks(session, workspace_id, source_type, source_id, chunks)
            await session.commit()

        result = IndexResult(
            source_id=source_id,
            source_type=source_type,
            chunk_count=len(chunks),
            embedded_count=sum(1 for c in chunks if c.embedded),
        )
        if result.failed_count:
            logger.warning(
                f"Indexed {source_type}:{source_id} with {result.failed_count}/{result.chunk_count} "
                f"chunks left without a vector"
            )
        else:
            logger.info(f"Indexed {source_type}:{source_id} ({result.chunk_count} chunks)")
        return result

    async def get_source_vectors(
        self, workspace_id: str, source_type: str, source_id: str
    ) -> list[list[float]]:
        """Vectors of a source's embedded chunks, in chunk order."""
        async with self.session_factory() as session:
            rows = await session.execute(
                select(EmbeddingChunk.vector)
                .where(
                    EmbeddingChunk.workspace_id == workspace_id,
                    EmbeddingChunk.source_type == SourceType(source_type).value,
                    EmbeddingChunk.source_id == source_id,
                    EmbeddingChunk.vector.is_not(None),
                )
                .order_by(EmbeddingChunk.chunk_index)
            )
            return [vector for (vector,) in rows.all() if vector]
