"""Indexing of stored records (evidence, artifacts, modules) into chunks."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.content.nodes import DocNode, extract_text, parse_document
from product_kb.db.database import SessionFactory
from product_kb.db.models import Artifact, CodebaseModule, Evidence, SourceType
from product_kb.exceptions import NotFoundError
from product_kb.vectorstore.store import EmbeddingStore, IndexResult

logger = logging.getLogger(__name__)

SOURCE_MODELS = {
    SourceType.EVIDENCE: Evidence,
    SourceType.ARTIFACT: Artifact,
    SourceType.CODEBASE_MODULE: CodebaseModule,
}

Record = Evidence | Artifact | CodebaseModule


async def load_source(
    session: AsyncSession, workspace_id: str, source_type: str, source_id: str
) -> Record:
    """Load a record of the given type from the workspace.

    Raises:
        NotFoundError: If the record does not exist in this workspace
    """
    source_type = SourceType(source_type)
    model = SOURCE_MODELS[source_type]
    record = await session.scalar(
        select(model).where(model.id == source_id, model.workspace_id == workspace_id)
    )
    if record is None:
        raise NotFoundError(source_type.value, source_id)
    return record


def module_embedding_text(module: CodebaseModule) -> str:
    """Text embedded for a module: path, summary and exported names."""
    lines = [module.file_path]
    if module.summary:
        lines.append(module.summary)
    if module.exports:
        lines.append(f"Exports: {', '.join(module.exports)}")
    return "\n".join(lines)


def source_content(record: Record) -> str | DocNode:
    """Content to chunk for a record."""
    if isinstance(record, Evidence):
        return f"{record.title}\n\n{record.content}".strip()
    if isinstance(record, Artifact):
        doc = parse_document(record.content or {"type": "doc"})
        if extract_text(doc):
            return doc
        return record.title
    return module_embedding_text(record)


def source_metadata(record: Record) -> dict[str, Any]:
    """Metadata copied onto each of the record's chunks."""
    if isinstance(record, Evidence):
        return {"title": record.title, "type": record.type}
    if isinstance(record, Artifact):
        return {"title": record.title, "type": record.type, "status": record.status}
    return {
        "file_path": record.file_path,
        "connection_id": record.connection_id,
        "module_type": record.module_type,
        "language": record.language,
    }


class SourceIndexer:
    """Re-indexes stored records through the embedding store.

    The record is read while holding the source's lock, so an index that
    queues behind a delete finds the record gone instead of writing
    chunks for it.
    """

    def __init__(self, session_factory: SessionFactory, store: EmbeddingStore):
        self.session_factory = session_factory
        self.store = store

    async def index(self, source_type: str, source_id: str, workspace_id: str) -> IndexResult:
        """Index the current content of a stored record.

        Raises:
            NotFoundError: If the record does not exist in this workspace
        """
        source_type = SourceType(source_type).value
        async with self.store.source_lock(workspace_id, source_type, source_id):
            async with self.session_factory() as session:
                record = await load_source(session, workspace_id, source_type, source_id)
                content = source_content(record)
                metadata = source_metadata(record)

            return await self.store.write_source(
                source_id=source_id,
                source_type=source_type,
                workspace_id=workspace_id,
                content=content,
                metadata=metadata,
            )
