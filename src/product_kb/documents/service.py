"""Evidence and artifact management.

Creating or editing a record commits it first and then schedules indexing
plus auto-linking as a background job. Deleting a record removes it with
its chunks, links and cluster memberships in one transaction.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.clusters.engine import remove_evidence_from_clusters
from product_kb.content.nodes import DocNode, parse_document
from product_kb.db.database import SessionFactory
from product_kb.db.models import (
    Artifact,
    ArtifactStatus,
    ArtifactType,
    Evidence,
    EvidenceType,
    Link,
    SourceType,
)
from product_kb.exceptions import NotFoundError
from product_kb.jobs import JobRunner
from product_kb.linking import AutoLinker, delete_links_for_source, links_for_source
from product_kb.vectorstore.indexer import SourceIndexer
from product_kb.vectorstore.store import EmbeddingStore

logger = logging.getLogger(__name__)

ARTIFACT_FIELDS = ("title", "content", "status", "parent_id")


async def index_and_link(
    indexer: SourceIndexer,
    linker: AutoLinker,
    source_type: str,
    source_id: str,
    workspace_id: str,
) -> int:
    """Index a record, then link it to similar records. Returns links created."""
    try:
        await indexer.index(source_type, source_id, workspace_id)
    except NotFoundError:
        logger.info(f"{source_type}:{source_id} was deleted before it could be indexed")
        return 0
    return await linker.auto_link(source_id, source_type, workspace_id)


class _RecordService(ABC):
    source_type: SourceType

    def __init__(
        self,
        session_factory: SessionFactory,
        store: EmbeddingStore,
        indexer: SourceIndexer,
        linker: AutoLinker,
        jobs: JobRunner,
    ):
        self.session_factory = session_factory
        self.store = store
        self.indexer = indexer
        self.linker = linker
        self.jobs = jobs

    def schedule_indexing(self, source_id: str, workspace_id: str) -> None:
        self.jobs.start(
            f"index:{self.source_type.value}:{source_id}",
            index_and_link(self.indexer, self.linker, self.source_type.value, source_id, workspace_id),
        )

    async def links(self, workspace_id: str, source_id: str) -> list[Link]:
        await self.get(workspace_id, source_id)
        async with self.session_factory() as session:
            return await links_for_source(session, workspace_id, source_id)

    @abstractmethod
    async def get(self, workspace_id: str, record_id: str) -> Any:
        """Load a record of this workspace or raise NotFoundError."""


class EvidenceService(_RecordService):
    """Customer evidence: feedback, metrics, research and meeting notes."""

    source_type = SourceType.EVIDENCE

    async def create(
        self,
        workspace_id: str,
        type: str,
        title: str,
        content: str = "",
        source: str | None = None,
        tags: list[str] | None = None,
    ) -> Evidence:
        evidence = Evidence(
            workspace_id=workspace_id,
            type=EvidenceType(type).value,
            title=title,
            content=content,
            source=source,
            tags=list(tags or []),
        )
        async with self.session_factory() as session:
            session.add(evidence)
            await session.commit()

        logger.info(f"Created evidence {evidence.id} in {workspace_id}")
        self.schedule_indexing(evidence.id, workspace_id)
        return evidence

    async def get(self, workspace_id: str, record_id: str) -> Evidence:
        async with self.session_factory() as session:
            evidence = await session.scalar(
                select(Evidence).where(Evidence.id == record_id, Evidence.workspace_id == workspace_id)
            )
        if evidence is None:
            raise NotFoundError("evidence", record_id)
        return evidence

    async def list_evidence(
        self,
        workspace_id: str,
        type: str | None = None,
        tag: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Evidence]:
        stmt = select(Evidence).where(Evidence.workspace_id == workspace_id)
        if type:
            stmt = stmt.where(Evidence.type == EvidenceType(type).value)
        stmt = stmt.order_by(Evidence.created_at.desc())

        async with self.session_factory() as session:
            rows = list((await session.scalars(stmt)).all())

        # Tags are a JSON column, so filter after loading
        if tag:
            rows = [e for e in rows if tag in (e.tags or [])]
        return rows[offset:offset + limit]

    async def update_tags(self, workspace_id: str, record_id: str, tags: list[str]) -> Evidence:
        async with self.session_factory() as session:
            evidence = await session.scalar(
                select(Evidence).where(Evidence.id == record_id, Evidence.workspace_id == workspace_id)
            )
            if evidence is None:
                raise NotFoundError("evidence", record_id)
            evidence.tags = list(dict.fromkeys(t.strip() for t in tags if t.strip()))
            await session.commit()
            return evidence

    async def delete(self, workspace_id: str, record_id: str) -> None:
        """Delete evidence with its chunks, links and cluster memberships."""
        async with self.store.source_lock(workspace_id, self.source_type.value, record_id):
            async with self.session_factory() as session:
                evidence = await session.scalar(
                    select(Evidence).where(Evidence.id == record_id, Evidence.workspace_id == workspace_id)
                )
                if evidence is None:
                    raise NotFoundError("evidence", record_id)

                await self.store.delete_source(session, workspace_id, self.source_type.value, record_id)
                await delete_links_for_source(session, workspace_id, record_id)
                await remove_evidence_from_clusters(session, workspace_id, record_id)
                await session.delete(evidence)
                await session.commit()
        logger.info(f"Deleted evidence {record_id} from {workspace_id}")


class ArtifactService(_RecordService):
    """Product artifacts: PRDs, user stories, decision logs and the like."""

    source_type = SourceType.ARTIFACT

    async def create(
        self,
        workspace_id: str,
        type: str,
        title: str,
        content: dict[str, Any] | DocNode | None = None,
        status: str = ArtifactStatus.DRAFT.value,
        parent_id: str | None = None,
    ) -> Artifact:
        """Create an artifact.

        Raises:
            ContentValidationError: If ``content`` is not a valid document tree
        """
        doc = parse_document(content if content is not None else {"type": "doc"})
        artifact = Artifact(
            workspace_id=workspace_id,
            type=ArtifactType(type).value,
            title=title,
            content=doc.to_dict(),
            status=ArtifactStatus(status).value,
            parent_id=parent_id,
        )
        async with self.session_factory() as session:
            if parent_id is not None:
                await self._require(session, workspace_id, parent_id)
            session.add(artifact)
            await session.commit()

        logger.info(f"Created artifact {artifact.id} ({artifact.type}) in {workspace_id}")
        self.schedule_indexing(artifact.id, workspace_id)
        return artifact

    @staticmethod
    async def _require(session: AsyncSession, workspace_id: str, artifact_id: str) -> Artifact:
        artifact = await session.scalar(
            select(Artifact).where(Artifact.id == artifact_id, Artifact.workspace_id == workspace_id)
        )
        if artifact is None:
            raise NotFoundError("artifact", artifact_id)
        return artifact

    async def get(self, workspace_id: str, record_id: str) -> Artifact:
        async with self.session_factory() as session:
            return await self._require(session, workspace_id, record_id)

    async def list_artifacts(
        self,
        workspace_id: str,
        type: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Artifact]:
        stmt = select(Artifact).where(Artifact.workspace_id == workspace_id)
        if type:
            stmt = stmt.where(Artifact.type == ArtifactType(type).value)
        if status:
            stmt = stmt.where(Artifact.status == ArtifactStatus(status).value)
        stmt = stmt.order_by(Artifact.updated_at.desc()).offset(offset).limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def update(self, workspace_id: str, record_id: str, updates: dict[str, Any]) -> Artifact:
        """Apply field updates; re-indexes when the title or content changed.

        Raises:
            ValueError: If an unknown field is given
            ContentValidationError: If new content is not a valid document tree
        """
        unknown = set(updates) - set(ARTIFACT_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        if "content" in updates:
            updates = {**updates, "content": parse_document(updates["content"]).to_dict()}
        if "status" in updates:
            updates = {**updates, "status": ArtifactStatus(updates["status"]).value}

        async with self.session_factory() as session:
            artifact = await self._require(session, workspace_id, record_id)
            if updates.get("parent_id"):
                if updates["parent_id"] == record_id:
                    raise ValueError("An artifact cannot be its own parent")
                await self._require(session, workspace_id, updates["parent_id"])

            reindex = any(
                name in ("title", "content") and getattr(artifact, name) != value
                for name, value in updates.items()
            )
            for name, value in updates.items():
                setattr(artifact, name, value)
            await session.commit()

        if reindex:
            self.schedule_indexing(record_id, workspace_id)
        return artifact

    async def delete(self, workspace_id: str, record_id: str) -> None:
        """Delete an artifact with its chunks and links."""
        async with self.store.source_lock(workspace_id, self.source_type.value, record_id):
            async with self.session_factory() as session:
                artifact = await self._require(session, workspace_id, record_id)
                await self.store.delete_source(session, workspace_id, self.source_type.value, record_id)
                await delete_links_for_source(session, workspace_id, record_id)
                await session.delete(artifact)
                await session.commit()
        logger.info(f"Deleted artifact {record_id} from {workspace_id}")
