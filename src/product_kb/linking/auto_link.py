"""Similarity-based link suggestion between evidence, artifacts and modules."""

import logging

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.config import settings
from product_kb.db.database import SessionFactory
from product_kb.db.models import Link, SourceType
from product_kb.vectorstore.retriever import SimilaritySearch
from product_kb.vectorstore.similarity import centroid
from product_kb.vectorstore.store import EmbeddingStore

logger = logging.getLogger(__name__)

RELATED_TO = "related_to"

# Source kind -> kind of record it gets linked to
LINK_TARGETS = {
    SourceType.EVIDENCE: SourceType.ARTIFACT,
    SourceType.ARTIFACT: SourceType.EVIDENCE,
    SourceType.CODEBASE_MODULE: SourceType.ARTIFACT,
}


def edge_direction(
    source_id: str, source_type: SourceType, match_id: str, match_type: SourceType
) -> tuple[tuple[str, str], tuple[str, str]]:
    """Stored direction of an edge: evidence and modules always point at artifacts."""
    if source_type == SourceType.ARTIFACT:
        return (match_id, match_type.value), (source_id, source_type.value)
    return (source_id, source_type.value), (match_id, match_type.value)


async def links_for_source(session: AsyncSession, workspace_id: str, source_id: str) -> list[Link]:
    """Every link touching the record, in either direction."""
    rows = await session.scalars(
        select(Link)
        .where(
            Link.workspace_id == workspace_id,
            or_(Link.source_id == source_id, Link.target_id == source_id),
        )
        .order_by(Link.created_at)
    )
    return list(rows.all())


async def delete_links_for_source(session: AsyncSession, workspace_id: str, source_id: str) -> int:
    """Delete every link touching the record, inside the caller's transaction."""
    result = await session.execute(
        delete(Link).where(
            Link.workspace_id == workspace_id,
            or_(Link.source_id == source_id, Link.target_id == source_id),
        )
    )
    return result.rowcount or 0


class AutoLinker:
    """Creates ``related_to`` links to records similar to a source.

    The query vector is the centroid of the source's own chunk vectors.
    Links are deduplicated against existing edges in either direction,
    so repeated calls create nothing new.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        store: EmbeddingStore,
        search: SimilaritySearch,
        threshold: float | None = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.search = search
        self.threshold = settings.AUTO_LINK_THRESHOLD if threshold is None else threshold

    async def auto_link(self, source_id: str, source_type: str, workspace_id: str) -> int:
        """Link the source to sufficiently similar records; returns links created."""
        source_kind = SourceType(source_type)
        target_kind = LINK_TARGETS[source_kind]

        vectors = await self.store.get_source_vectors(workspace_id, source_kind.value, source_id)
        query = centroid(vectors)
        if query is None:
            logger.debug(f"No vectors for {source_kind.value}:{source_id}, nothing to link")
            return 0

        results = await self.search.search_by_vector(
            query,
            workspace_id,
            source_types=[target_kind.value],
            limit=settings.AUTO_LINK_CANDIDATES,
            exclude_source_ids=[source_id],
        )
        match_ids: list[str] = []
        for result in results:
            if result.similarity > self.threshold and result.source_id not in match_ids:
                match_ids.append(result.source_id)
        if not match_ids:
            return 0

        created = 0
        async with self.session_factory() as session:
            existing = await self._linked_ids(session, workspace_id, source_id, match_ids)
            for match_id in match_ids:
                if match_id in existing:
                    continue
                (src_id, src_type), (dst_id, dst_type) = edge_direction(
                    source_id, source_kind, match_id, target_kind
                )
                session.add(
                    Link(
                        workspace_id=workspace_id,
                        source_id=src_id,
                        source_type=src_type,
                        target_id=dst_id,
                        target_type=dst_type,
                        relationship=RELATED_TO,
                    )
                )
                created += 1

            if created:
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent call inserted the same edges first
                    await session.rollback()
                    logger.info(f"Links for {source_kind.value}:{source_id} already created concurrently")
                    return 0

        if created:
            logger.info(f"Auto-linked {source_kind.value}:{source_id} to {created} {target_kind.value} records")
        return created

    @staticmethod
    async def _linked_ids(
        session: AsyncSession, workspace_id: str, source_id: str, match_ids: list[str]
    ) -> set[str]:
        rows = await session.execute(
            select(Link.source_id, Link.target_id).where(
                Link.workspace_id == workspace_id,
                Link.relationship == RELATED_TO,
                or_(
                    and_(Link.source_id == source_id, Link.target_id.in_(match_ids)),
                    and_(Link.target_id == source_id, Link.source_id.in_(match_ids)),
                ),
            )
        )
        linked = set()
        for link_source, link_target in rows.all():
            linked.add(link_target if link_source == source_id else link_source)
        return linked
