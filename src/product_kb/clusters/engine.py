"""Evidence clustering with staleness-gated recomputation.

A workspace's cluster set is recomputed only when ``should_recompute``
holds. A run holds a lease in the workspace's computation log, groups
evidence vectors into threshold-connected components and replaces the
previous set in one transaction. User-edited fields move over from the
closest matching previous cluster.
"""

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.clusters.labeling import ClusterDraft, ClusterLabeler, EvidenceSnapshot
from product_kb.config import settings
from product_kb.db.database import SessionFactory
from product_kb.db.models import (
    ClusterComputationLog,
    ComputeStatus,
    EmbeddingChunk,
    Evidence,
    EvidenceCluster,
    SourceType,
    Verdict,
    utcnow,
)
from product_kb.exceptions import ComputeConflictError, NotFoundError
from product_kb.vectorstore.embeddings import EmbeddingService
from product_kb.vectorstore.indexer import SourceIndexer
from product_kb.vectorstore.similarity import centroid, cosine_similarity, jaccard, similarity_matrix
from product_kb.vectorstore.store import EmbeddingStore

logger = logging.getLogger(__name__)

COMPUTE_STEPS = ("fetching", "embedding", "clustering", "labeling", "scoring", "saving")

# Fields a user may edit; they survive recomputation
CARRY_FORWARD_FIELDS = (
    "custom_label",
    "pm_note",
    "pinned",
    "dismissed",
    "verdict",
    "verdict_reasoning",
    "verdict_at",
)
EDITABLE_FIELDS = ("custom_label", "pm_note", "pinned", "dismissed", "verdict", "verdict_reasoning")

ProgressCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class ComputeResult:
    status: str  # "skipped" or "completed"
    cluster_count: int = 0
    clustered_count: int = 0
    unclustered_evidence_ids: list[str] = field(default_factory=list)
    carried_forward: int = 0


@dataclass
class Nudge:
    """A cluster suggested for a document section."""

    cluster_id: str
    label: str
    summary: str
    evidence_count: int
    similarity: float
    relevance: float
    score: float
    criticality_level: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "label": self.label,
            "summary": self.summary,
            "evidence_count": self.evidence_count,
            "similarity": self.similarity,
            "relevance": self.relevance,
            "score": self.score,
            "criticality_level": self.criticality_level,
        }


def needs_recompute(
    evidence_count: int, log: ClusterComputationLog | None, now: datetime
) -> bool:
    """Staleness predicate over the workspace's computation log."""
    if evidence_count < settings.CLUSTER_MIN_EVIDENCE:
        return False
    if log is None or log.last_computed_at is None:
        return True
    if lease_is_held(log, now):
        return False
    if now - log.last_computed_at >= timedelta(hours=settings.CLUSTER_RECOMPUTE_HOURS):
        return True
    return abs(evidence_count - log.evidence_count_at_computation) >= settings.CLUSTER_EVIDENCE_DELTA


def lease_is_held(log: ClusterComputationLog, now: datetime) -> bool:
    return (
        log.status == ComputeStatus.COMPUTING.value
        and log.started_at is not None
        and now - log.started_at < timedelta(minutes=settings.CLUSTER_LEASE_MINUTES)
    )


def group_by_threshold(vectors: Sequence[Sequence[float]], threshold: float) -> list[list[int]]:
    """Connected components of the graph linking vectors with similarity >= threshold.

    Components are ordered by their lowest member index; members ascend.
    """
    count = len(vectors)
    parent = list(range(count))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    if count > 1:
        matrix = similarity_matrix(vectors)
        for i in range(count):
            for j in range(i + 1, count):
                if matrix[i, j] >= threshold:
                    root_i, root_j = find(i), find(j)
                    if root_i != root_j:
                        parent[max(root_i, root_j)] = min(root_i, root_j)

    groups: dict[int, list[int]] = {}
    for i in range(count):
        groups.setdefault(find(i), []).append(i)
    return [groups[root] for root in sorted(groups)]


def match_prior_clusters(
    new_sets: Sequence[set[str]],
    prior: Sequence[EvidenceCluster],
    threshold: float,
) -> dict[int, EvidenceCluster]:
    """One-to-one matching of new clusters to prior ones by evidence-set Jaccard."""
    candidates = []
    for new_index, members in enumerate(new_sets):
        for prior_index, cluster in enumerate(prior):
            score = jaccard(members, cluster.evidence_ids or [])
            if score >= threshold:
                candidates.append((score, new_index, prior_index))
    candidates.sort(key=lambda c: (-c[0], c[1], c[2]))

    matches: dict[int, EvidenceCluster] = {}
    used_prior: set[int] = set()
    for _, new_index, prior_index in candidates:
        if new_index in matches or prior_index in used_prior:
            continue
        matches[new_index] = prior[prior_index]
        used_prior.add(prior_index)
    return matches


async def remove_evidence_from_clusters(
    session: AsyncSession, workspace_id: str, evidence_id: str
) -> None:
    """Drop an evidence item from every cluster, inside the caller's transaction.

    Clusters left empty are deleted.
    """
    clusters = (
        await session.scalars(select(EvidenceCluster).where(EvidenceCluster.workspace_id == workspace_id))
    ).all()
    for cluster in clusters:
        if evidence_id not in (cluster.evidence_ids or []):
            continue
        remaining = [eid for eid in cluster.evidence_ids if eid != evidence_id]
        if remaining:
            cluster.evidence_ids = remaining
            cluster.evidence_count = len(remaining)
        else:
            await session.delete(cluster)

    log = await session.get(ClusterComputationLog, workspace_id)
    if log is not None and evidence_id in (log.unclustered_evidence_ids or []):
        log.unclustered_evidence_ids = [e for e in log.unclustered_evidence_ids if e != evidence_id]


class ClusterEngine:
    """Computes, stores and serves a workspace's evidence clusters."""

    def __init__(
        self,
        session_factory: SessionFactory,
        store: EmbeddingStore,
        embedder: EmbeddingService,
        labeler: ClusterLabeler,
    ):
        self.session_factory = session_factory
        self.indexer = SourceIndexer(session_factory, store)
        self.embedder = embedder
        self.labeler = labeler

    async def should_recompute(self, workspace_id: str, now: datetime | None = None) -> bool:
        now = now or utcnow()
        async with self.session_factory() as session:
            evidence_count = await self._evidence_count(session, workspace_id)
            log = await session.get(ClusterComputationLog, workspace_id)
            return needs_recompute(evidence_count, log, now)

    async def compute_clusters(
        self,
        workspace_id: str,
        on_progress: ProgressCallback | None = None,
        force: bool = False,
    ) -> ComputeResult:
        """Recompute the workspace's clusters if they are stale.

        Raises:
            ComputeConflictError: If another run holds the workspace lease
        """
        now = utcnow()
        async with self.session_factory() as session:
            evidence_count = await self._evidence_count(session, workspace_id)
            log = await session.get(ClusterComputationLog, workspace_id)
        if log is not None and lease_is_held(log, now):
            raise ComputeConflictError(workspace_id)
        if not force and not needs_recompute(evidence_count, log, now):
            logger.info(f"Clusters for {workspace_id} are fresh, skipping compute")
            return ComputeResult(status="skipped")

        token = await self._acquire_lease(workspace_id)
        logger.info(f"Computing clusters for {workspace_id}")

        try:
            await _emit(on_progress, "fetching")
            snapshots, overflow = await self._fetch_evidence(workspace_id)

            await _emit(on_progress, "embedding")
            embedded, unclustered = await self._ensure_vectors(workspace_id, snapshots)
            unclustered.extend(overflow)

            await _emit(on_progress, "clustering")
            drafts = self._build_drafts(embedded)

            await _emit(on_progress, "labeling")
            await self.labeler.label(drafts)

            await _emit(on_progress, "scoring")
            await self.labeler.score_sections(drafts)
            await self.labeler.assess_criticality(drafts)

            await _emit(on_progress, "saving")
            result = await self._save(workspace_id, token, drafts, unclustered)
        except Exception as e:
            logger.error(f"Cluster computation failed for {workspace_id}: {e}", exc_info=True)
            await self._fail_lease(workspace_id, token, str(e))
            raise

        logger.info(
            f"Computed {result.cluster_count} clusters for {workspace_id} "
            f"({result.clustered_count} clustered, {len(result.unclustered_evidence_ids)} unclustered)"
        )
        return result

    async def _evidence_count(self, session: AsyncSession, workspace_id: str) -> int:
        return await session.scalar(
            select(func.count()).select_from(Evidence).where(Evidence.workspace_id == workspace_id)
        ) or 0

    async def _acquire_lease(self, workspace_id: str) -> str:
        token = str(uuid.uuid4())
        now = utcnow()
        stale_before = now - timedelta(minutes=settings.CLUSTER_LEASE_MINUTES)

        async with self.session_factory() as session:
            exists = await session.scalar(
                select(ClusterComputationLog.workspace_id).where(
                    ClusterComputationLog.workspace_id == workspace_id
                )
            )
            if exists is None:
                session.add(
                    ClusterComputationLog(
                        workspace_id=workspace_id,
                        status=ComputeStatus.COMPUTING.value,
                        lease_token=token,
                        started_at=now,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise ComputeConflictError(workspace_id) from e
                return token

            result = await session.execute(
                update(ClusterComputationLog)
                .where(
                    ClusterComputationLog.workspace_id == workspace_id,
                    or_(
                        ClusterComputationLog.status != ComputeStatus.COMPUTING.value,
                        ClusterComputationLog.started_at.is_(None),
                        ClusterComputationLog.started_at < stale_before,
                    ),
                )
                .values(
                    status=ComputeStatus.COMPUTING.value,
                    lease_token=token,
                    started_at=now,
                    error_message=None,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ComputeConflictError(workspace_id)
            await session.commit()
        return token

    async def _fail_lease(self, workspace_id: str, token: str, message: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ClusterComputationLog)
                .where(
                    ClusterComputationLog.workspace_id == workspace_id,
                    ClusterComputationLog.lease_token == token,
                )
                .values(status=ComputeStatus.FAILED.value, error_message=message[:2000])
            )
            await session.commit()

    async def _fetch_evidence(self, workspace_id: str) -> tuple[list[EvidenceSnapshot], list[str]]:
        """The most recent evidence up to the cap, and the ids of older items past it."""
        recency = (Evidence.created_at.desc(), Evidence.id)
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(Evidence)
                .where(Evidence.workspace_id == workspace_id)
                .order_by(*recency)
                .limit(settings.CLUSTER_MAX_EVIDENCE)
            )
            snapshots = [
                EvidenceSnapshot(
                    id=row.id,
                    title=row.title,
                    content=row.content or "",
                    type=row.type,
                    created_at=row.created_at,
                )
                for row in rows
            ]
            overflow = list(
                (
                    await session.scalars(
                        select(Evidence.id)
                        .where(Evidence.workspace_id == workspace_id)
                        .order_by(*recency)
                        .offset(settings.CLUSTER_MAX_EVIDENCE)
                    )
                ).all()
            )

        if overflow:
            logger.warning(
                f"{len(overflow)} evidence items in {workspace_id} are past the "
                f"{settings.CLUSTER_MAX_EVIDENCE}-item cap and left unclustered"
            )
        return snapshots, overflow

    async def _load_vectors(self, workspace_id: str, evidence_ids: list[str]) -> dict[str, list[float]]:
        """One vector per evidence item: the mean of its embedded chunks."""
        if not evidence_ids:
            return {}
        async with self.session_factory() as session:
            rows = await session.execute(
                select(EmbeddingChunk.source_id, EmbeddingChunk.vector).where(
                    EmbeddingChunk.workspace_id == workspace_id,
                    EmbeddingChunk.source_type == SourceType.EVIDENCE.value,
                    EmbeddingChunk.source_id.in_(evidence_ids),
                    EmbeddingChunk.vector.is_not(None),
                )
            )
            chunk_vectors: dict[str, list[list[float]]] = {}
            for source_id, vector in rows.all():
                if vector:
                    chunk_vectors.setdefault(source_id, []).append(vector)

        return {source_id: centroid(vectors) for source_id, vectors in chunk_vectors.items()}

    async def _ensure_vectors(
        self, workspace_id: str, snapshots: list[EvidenceSnapshot]
    ) -> tuple[list[tuple[EvidenceSnapshot, list[float]]], list[str]]:
        """Pair each evidence item with its vector, embedding any that lack one.

        Returns the embedded items (in input order) and the ids of items that
        still have no vector.
        """
        vectors = await self._load_vectors(workspace_id, [s.id for s in snapshots])

        missing = [s for s in snapshots if s.id not in vectors]
        if missing:
            logger.info(f"Embedding {len(missing)} evidence items without vectors in {workspace_id}")
            for snapshot in missing:
                try:
                    await self.indexer.index(SourceType.EVIDENCE.value, snapshot.id, workspace_id)
                except NotFoundError:
                    logger.info(f"Evidence {snapshot.id} was deleted during compute, skipping")
            vectors.update(await self._load_vectors(workspace_id, [s.id for s in missing]))

        embedded = []
        unclustered = []
        dimension = None
        for snapshot in snapshots:
            vector = vectors.get(snapshot.id)
            if vector is not None and dimension is None:
                dimension = len(vector)
            if vector is None or len(vector) != dimension:
                unclustered.append(snapshot.id)
            else:
                embedded.append((snapshot, vector))

        if unclustered:
            logger.warning(f"{len(unclustered)} evidence items in {workspace_id} left unclustered")
        return embedded, unclustered

    def _build_drafts(self, embedded: list[tuple[EvidenceSnapshot, list[float]]]) -> list[ClusterDraft]:
        vectors = [vector for _, vector in embedded]
        drafts = []
        for group in group_by_threshold(vectors, settings.CLUSTER_SIMILARITY_THRESHOLD):
            group_vectors = [vectors[i] for i in group]
            drafts.append(
                ClusterDraft(
                    members=[embedded[i][0] for i in group],
                    vectors=group_vectors,
                    centroid=centroid(group_vectors),
                )
            )
        # Largest themes first
        drafts.sort(key=lambda d: -d.size)
        return drafts

    async def _save(
        self,
        workspace_id: str,
        token: str,
        drafts: list[ClusterDraft],
        unclustered: list[str],
    ) -> ComputeResult:
        now = utcnow()
        async with self.session_factory() as session:
            # Evidence deleted while the run was working must not be referenced
            all_ids = [eid for d in drafts for eid in d.evidence_ids] + unclustered
            live_ids: set[str] = set()
            if all_ids:
                rows = await session.scalars(
                    select(Evidence.id).where(
                        Evidence.workspace_id == workspace_id, Evidence.id.in_(all_ids)
                    )
                )
                live_ids = set(rows.all())

            kept: list[tuple[ClusterDraft, list[str]]] = []
            for draft in drafts:
                ids = [eid for eid in draft.evidence_ids if eid in live_ids]
                if ids:
                    kept.append((draft, ids))
            unclustered = [eid for eid in unclustered if eid in live_ids]

            prior = (
                await session.scalars(
                    select(EvidenceCluster).where(EvidenceCluster.workspace_id == workspace_id)
                )
            ).all()
            matches = match_prior_clusters(
                [set(ids) for _, ids in kept], prior, settings.CLUSTER_IDENTITY_JACCARD
            )
            carried = {
                index: {name: getattr(cluster, name) for name in CARRY_FORWARD_FIELDS}
                for index, cluster in matches.items()
            }

            await session.execute(
                delete(EvidenceCluster).where(EvidenceCluster.workspace_id == workspace_id)
            )
            for index, (draft, ids) in enumerate(kept):
                session.add(
                    EvidenceCluster(
                        workspace_id=workspace_id,
                        label=draft.label,
                        summary=draft.summary,
                        evidence_ids=ids,
                        evidence_count=len(ids),
                        representative_vector=draft.centroid,
                        section_relevance=draft.section_relevance,
                        criticality_score=draft.criticality_score,
                        criticality_level=draft.criticality_level,
                        criticality_reason=draft.criticality_reason,
                        computed_at=now,
                        **carried.get(index, {}),
                    )
                )

            evidence_count = await self._evidence_count(session, workspace_id)
            result = await session.execute(
                update(ClusterComputationLog)
                .where(
                    ClusterComputationLog.workspace_id == workspace_id,
                    ClusterComputationLog.lease_token == token,
                )
                .values(
                    status=ComputeStatus.COMPLETED.value,
                    last_computed_at=now,
                    evidence_count_at_computation=evidence_count,
                    unclustered_evidence_ids=unclustered,
                    error_message=None,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ComputeConflictError(workspace_id)
            await session.commit()

        return ComputeResult(
            status="completed",
            cluster_count=len(kept),
            clustered_count=sum(len(ids) for _, ids in kept),
            unclustered_evidence_ids=unclustered,
            carried_forward=len(matches),
        )

    async def get_nudges(
        self,
        workspace_id: str,
        section_text: str,
        section_name: str,
        limit: int | None = None,
    ) -> list[Nudge]:
        """Clusters most worth surfacing for a document section.

        Score is a weighted blend of similarity to the section text and the
        cluster's stored relevance to the section. Dismissed clusters are
        never suggested.
        """
        limit = settings.NUDGE_LIMIT if limit is None else limit
        vector = await self.embedder.embed(section_text)

        async with self.session_factory() as session:
            clusters = (
                await session.scalars(
                    select(EvidenceCluster).where(
                        EvidenceCluster.workspace_id == workspace_id,
                        EvidenceCluster.dismissed == False,  # noqa: E712
                        EvidenceCluster.representative_vector.is_not(None),
                    )
                )
            ).all()

        wanted = section_name.strip().lower()
        nudges = []
        for cluster in clusters:
            if len(cluster.representative_vector) != len(vector):
                continue
            similarity = cosine_similarity(vector, cluster.representative_vector)
            relevance = next(
                (
                    float(score)
                    for name, score in (cluster.section_relevance or {}).items()
                    if name.lower() == wanted
                ),
                0.0,
            )
            score = (
                settings.NUDGE_SIMILARITY_WEIGHT * similarity
                + settings.NUDGE_RELEVANCE_WEIGHT * relevance
            )
            nudges.append(
                Nudge(
                    cluster_id=cluster.id,
                    label=cluster.display_label,
                    summary=cluster.summary,
                    evidence_count=cluster.evidence_count,
                    similarity=round(similarity, 4),
                    relevance=round(relevance, 4),
                    score=round(score, 4),
                    criticality_level=cluster.criticality_level,
                )
            )

        nudges.sort(key=lambda n: (-n.score, -n.evidence_count))
        return nudges[:limit]

    async def list_clusters(self, workspace_id: str, include_dismissed: bool = True) -> list[EvidenceCluster]:
        stmt = select(EvidenceCluster).where(EvidenceCluster.workspace_id == workspace_id)
        if not include_dismissed:
            stmt = stmt.where(EvidenceCluster.dismissed == False)  # noqa: E712
        stmt = stmt.order_by(EvidenceCluster.pinned.desc(), EvidenceCluster.evidence_count.desc())
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def get_computation_log(self, workspace_id: str) -> ClusterComputationLog | None:
        async with self.session_factory() as session:
            return await session.get(ClusterComputationLog, workspace_id)

    async def update_cluster(
        self, workspace_id: str, cluster_id: str, updates: dict[str, Any]
    ) -> EvidenceCluster:
        """Apply user edits to a cluster.

        Raises:
            NotFoundError: If the cluster is not in this workspace
            ValueError: If an unknown field or verdict is given
        """
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        async with self.session_factory() as session:
            cluster = await session.scalar(
                select(EvidenceCluster).where(
                    EvidenceCluster.id == cluster_id,
                    EvidenceCluster.workspace_id == workspace_id,
                )
            )
            if cluster is None:
                raise NotFoundError("cluster", cluster_id)

            if "verdict" in updates:
                verdict = updates["verdict"]
                if verdict is not None:
                    verdict = Verdict(verdict).value
                updates = {**updates, "verdict": verdict}
                cluster.verdict_at = utcnow() if verdict is not None else None

            for name, value in updates.items():
                setattr(cluster, name, value)
            await session.commit()
            return cluster


async def _emit(on_progress: ProgressCallback | None, step: str) -> None:
    if on_progress is None:
        return
    result = on_progress(step)
    if inspect.isawaitable(result):
        await result
