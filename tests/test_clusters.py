"""Tests for evidence clustering, carry-forward and section nudges."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from product_kb.clusters.engine import (
    COMPUTE_STEPS,
    ClusterEngine,
    group_by_threshold,
    match_prior_clusters,
    needs_recompute,
)
from product_kb.clusters.labeling import (
    ClusterDraft,
    ClusterLabeler,
    EvidenceSnapshot,
    criticality_level,
    fallback_label,
)
from product_kb.config import settings
from product_kb.db.models import ClusterComputationLog, EmbeddingChunk, Evidence, EvidenceCluster, utcnow
from product_kb.exceptions import ComputeConflictError, NotFoundError
from product_kb.vectorstore.embeddings import EmbeddingService
from product_kb.vectorstore.store import EmbeddingStore

from tests.conftest import FakeEmbeddings, FakeLLM, GatedEmbeddings, keyword_vector

DASHBOARD_ITEMS = ("Dashboard loads slowly", "Slow dashboard on Mondays", "Dashboard lag")


async def add_evidence(resources, title: str, workspace_id: str = "ws-a"):
    evidence = await resources.evidence.create(workspace_id, "feedback", title)
    await resources.jobs.wait(f"index:evidence:{evidence.id}")
    return evidence


async def seed_dashboard_and_sso(resources) -> tuple[list[str], str]:
    dashboard_ids = [(await add_evidence(resources, title)).id for title in DASHBOARD_ITEMS]
    sso = await add_evidence(resources, "SSO login broken for enterprise")
    return dashboard_ids, sso.id


def _log(**overrides) -> ClusterComputationLog:
    values = dict(
        workspace_id="ws-a",
        status="completed",
        lease_token=None,
        started_at=None,
        last_computed_at=datetime(2026, 1, 1, 12, 0),
        evidence_count_at_computation=10,
        unclustered_evidence_ids=[],
    )
    values.update(overrides)
    return ClusterComputationLog(**values)


def _snapshot(eid: str, title: str, created_at: datetime | None = None) -> EvidenceSnapshot:
    return EvidenceSnapshot(
        id=eid, title=title, content="", type="feedback", created_at=created_at or utcnow()
    )


class TestNeedsRecompute:
    """Tests for the staleness predicate."""

    NOW = datetime(2026, 1, 1, 13, 0)

    def test_too_little_evidence(self):
        assert not needs_recompute(2, None, self.NOW)

    def test_never_computed(self):
        assert needs_recompute(3, None, self.NOW)

    def test_fresh(self):
        assert not needs_recompute(12, _log(), self.NOW)

    def test_old(self):
        assert needs_recompute(10, _log(), self.NOW + timedelta(hours=6))

    def test_evidence_delta(self):
        assert needs_recompute(15, _log(), self.NOW)
        assert needs_recompute(5, _log(), self.NOW)

    def test_live_lease_blocks(self):
        log = _log(status="computing", started_at=self.NOW - timedelta(minutes=1))
        assert not needs_recompute(50, log, self.NOW)

    def test_stale_lease_does_not_block(self):
        log = _log(status="computing", started_at=self.NOW - timedelta(minutes=10))
        assert needs_recompute(50, log, self.NOW)


class TestGrouping:
    """Tests for threshold grouping and identity matching."""

    def test_connected_components(self):
        """Chained neighbors join one component even if the ends are far apart."""
        vectors = [[1.0, 0.0], [0.9, 0.44], [0.6, 0.8], [0.0, 1.0], [-1.0, 0.0]]
        groups = group_by_threshold(vectors, 0.75)
        assert groups == [[0, 1, 2, 3], [4]]

    def test_singletons(self):
        assert group_by_threshold([[1.0, 0.0], [0.0, 1.0]], 0.75) == [[0], [1]]
        assert group_by_threshold([], 0.75) == []

    def test_match_prior_clusters_one_to_one(self):
        prior = [
            EvidenceCluster(label="a", evidence_ids=["e1", "e2", "e3"]),
            EvidenceCluster(label="b", evidence_ids=["e7", "e8"]),
        ]
        new_sets = [{"e1", "e2"}, {"e1", "e2", "e3", "e4"}, {"e9"}]

        matches = match_prior_clusters(new_sets, prior, 0.5)

        # {e1,e2,e3,e4} scores 0.75 and wins the prior "a" over {e1,e2} at 0.67
        assert {i: c.label for i, c in matches.items()} == {1: "a"}


class TestLabeling:
    """Tests for labels and criticality."""

    def test_criticality_levels(self):
        assert criticality_level(0.85) == "critical"
        assert criticality_level(0.6) == "high"
        assert criticality_level(0.4) == "medium"
        assert criticality_level(0.1) == "low"

    def test_fallback_label_uses_central_member(self):
        members = [_snapshot("a", "Dashboard lag"), _snapshot("b", "Dashboard loads slowly forever")]
        draft = ClusterDraft(members=members, vectors=[[1.0], [1.0]], centroid=[1.0])
        label, summary = fallback_label(draft)
        assert label == "Dashboard lag"
        assert summary.endswith("(2 related items)")

    @pytest.mark.asyncio
    async def test_generated_labels(self):
        reply = '{"clusters": [{"index": 0, "label": "Slow dashboards", "summary": "Dashboards lag."}]}'
        labeler = ClusterLabeler(FakeLLM(reply), EmbeddingService(FakeEmbeddings(), backoff=0))
        draft = ClusterDraft(
            members=[_snapshot("a", "Dashboard lag")],
            vectors=[keyword_vector("dashboard")],
            centroid=keyword_vector("dashboard"),
        )

        await labeler.label([draft])

        assert draft.label == "Slow dashboards"
        assert draft.summary == "Dashboards lag."

    @pytest.mark.asyncio
    async def test_unusable_output_falls_back(self):
        labeler = ClusterLabeler(FakeLLM("I cannot help with that"), EmbeddingService(FakeEmbeddings(), backoff=0))
        draft = ClusterDraft(
            members=[_snapshot("a", "Dashboard lag")],
            vectors=[keyword_vector("dashboard")],
            centroid=keyword_vector("dashboard"),
        )

        await labeler.label([draft])
        await labeler.score_sections([draft])
        await labeler.assess_criticality([draft])

        assert draft.label == "Dashboard lag"
        assert set(draft.section_relevance) == {"Problem", "Goals & Success Metrics", "User Stories", "Requirements", "Open Questions"}
        assert draft.criticality_level is None


class TestClusterEngine:
    """Tests for compute runs against the database."""

    @pytest.mark.asyncio
    async def test_dashboard_and_sso_themes(self, resources):
        dashboard_ids, sso_id = await seed_dashboard_and_sso(resources)
        steps = []

        result = await resources.clusters.compute_clusters("ws-a", on_progress=steps.append)

        assert steps == list(COMPUTE_STEPS)
        assert result.status == "completed"
        assert result.cluster_count == 2
        clusters = await resources.clusters.list_clusters("ws-a")
        assert [c.evidence_count for c in clusters] == [3, 1]
        assert set(clusters[0].evidence_ids) == set(dashboard_ids)
        assert clusters[1].evidence_ids == [sso_id]
        assert sum(c.evidence_count for c in clusters) + len(result.unclustered_evidence_ids) == 4

        log = await resources.clusters.get_computation_log("ws-a")
        assert log.status == "completed"
        assert log.evidence_count_at_computation == 4

    @pytest.mark.asyncio
    async def test_too_little_evidence_skips(self, resources):
        await add_evidence(resources, "Dashboard lag")
        result = await resources.clusters.compute_clusters("ws-a")
        assert result.status == "skipped"

    @pytest.mark.asyncio
    async def test_fresh_clusters_skip(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")

        result = await resources.clusters.compute_clusters("ws-a")

        assert result.status == "skipped"

    @pytest.mark.asyncio
    async def test_user_edits_carried_forward(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")
        dashboard = (await resources.clusters.list_clusters("ws-a"))[0]
        await resources.clusters.update_cluster(
            "ws-a", dashboard.id, {"custom_label": "Performance", "pinned": True, "verdict": "BUILD"}
        )

        await add_evidence(resources, "Dashboard loading forever")
        result = await resources.clusters.compute_clusters("ws-a", force=True)

        assert result.carried_forward >= 1
        clusters = await resources.clusters.list_clusters("ws-a")
        assert clusters[0].evidence_count == 4
        assert clusters[0].display_label == "Performance"
        assert clusters[0].pinned is True
        assert clusters[0].verdict == "BUILD"
        assert clusters[0].verdict_at is not None

    @pytest.mark.asyncio
    async def test_failure_leaves_previous_clusters(self, resources, monkeypatch):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")
        before = {c.id for c in await resources.clusters.list_clusters("ws-a")}

        async def explode(drafts):
            raise RuntimeError("labeling exploded")

        monkeypatch.setattr(resources.clusters.labeler, "label", explode)
        with pytest.raises(RuntimeError):
            await resources.clusters.compute_clusters("ws-a", force=True)

        assert {c.id for c in await resources.clusters.list_clusters("ws-a")} == before
        log = await resources.clusters.get_computation_log("ws-a")
        assert log.status == "failed"
        assert "labeling exploded" in log.error_message

    @pytest.mark.asyncio
    async def test_unembeddable_evidence_is_unclustered(self, resources, session_factory):
        await seed_dashboard_and_sso(resources)
        async with session_factory() as session:
            orphan = Evidence(workspace_id="ws-a", type="feedback", title="Never embedded", content="", tags=[])
            session.add(orphan)
            await session.commit()

        failing = EmbeddingService(FakeEmbeddings(failures=100), max_attempts=1, backoff=0)
        engine = ClusterEngine(
            session_factory,
            EmbeddingStore(session_factory, failing),
            failing,
            ClusterLabeler(None, failing),
        )

        result = await engine.compute_clusters("ws-a", force=True)

        assert result.unclustered_evidence_ids == [orphan.id]
        assert result.clustered_count == 4
        log = await engine.get_computation_log("ws-a")
        assert log.unclustered_evidence_ids == [orphan.id]

    @pytest.mark.asyncio
    async def test_live_lease_conflicts(self, resources, session_factory):
        await seed_dashboard_and_sso(resources)
        async with session_factory() as session:
            session.add(_log(status="computing", lease_token="other", started_at=utcnow()))
            await session.commit()

        with pytest.raises(ComputeConflictError):
            await resources.clusters.compute_clusters("ws-a", force=True)

    @pytest.mark.asyncio
    async def test_live_lease_conflicts_without_force(self, resources, session_factory):
        """Another holder's lease is a conflict, not a skip."""
        await seed_dashboard_and_sso(resources)
        async with session_factory() as session:
            session.add(
                _log(
                    status="computing",
                    lease_token="other",
                    started_at=utcnow() - timedelta(minutes=1),
                    last_computed_at=utcnow() - timedelta(hours=10),
                    evidence_count_at_computation=4,
                )
            )
            await session.commit()

        with pytest.raises(ComputeConflictError):
            await resources.clusters.compute_clusters("ws-a")

        assert not await resources.clusters.should_recompute("ws-a")
        log = await resources.clusters.get_computation_log("ws-a")
        assert log.lease_token == "other"

    @pytest.mark.asyncio
    async def test_stale_lease_is_taken_over(self, resources, session_factory):
        await seed_dashboard_and_sso(resources)
        async with session_factory() as session:
            session.add(
                _log(status="computing", lease_token="dead", started_at=utcnow() - timedelta(minutes=10))
            )
            await session.commit()

        result = await resources.clusters.compute_clusters("ws-a")

        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_evidence_deleted_during_compute_is_not_indexed(self, resources, session_factory):
        """Evidence deleted before the run embeds it gets no chunks and no cluster."""
        await seed_dashboard_and_sso(resources)
        now = utcnow()
        async with session_factory() as session:
            billing = Evidence(
                workspace_id="ws-a", type="feedback", title="Invoice totals are wrong", content="",
                tags=[], created_at=now + timedelta(minutes=2),
            )
            mobile = Evidence(
                workspace_id="ws-a", type="feedback", title="Mobile app crashes", content="",
                tags=[], created_at=now + timedelta(minutes=1),
            )
            session.add_all([billing, mobile])
            await session.commit()
        embeddings = GatedEmbeddings(hold="invoice")
        resources.embedder.provider = embeddings

        computing = asyncio.create_task(resources.clusters.compute_clusters("ws-a", force=True))
        await embeddings.entered.wait()
        await resources.evidence.delete("ws-a", mobile.id)
        embeddings.gate.set()
        result = await computing

        assert mobile.id not in result.unclustered_evidence_ids
        assert result.clustered_count == 5
        async with session_factory() as session:
            orphans = await session.scalar(
                select(func.count()).select_from(EmbeddingChunk).where(EmbeddingChunk.source_id == mobile.id)
            )
        assert orphans == 0

    @pytest.mark.asyncio
    async def test_evidence_past_cap_is_unclustered(self, resources, session_factory, monkeypatch):
        await seed_dashboard_and_sso(resources)
        async with session_factory() as session:
            oldest = Evidence(
                workspace_id="ws-a", type="feedback", title="Dashboard slow forever", content="",
                tags=[], created_at=utcnow() - timedelta(days=30),
            )
            session.add(oldest)
            await session.commit()
        monkeypatch.setattr(settings, "CLUSTER_MAX_EVIDENCE", 4)

        result = await resources.clusters.compute_clusters("ws-a", force=True)

        assert result.unclustered_evidence_ids == [oldest.id]
        assert result.clustered_count == 4
        log = await resources.clusters.get_computation_log("ws-a")
        assert log.unclustered_evidence_ids == [oldest.id]

    @pytest.mark.asyncio
    async def test_deleted_evidence_leaves_clusters(self, resources):
        dashboard_ids, sso_id = await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")

        await resources.evidence.delete("ws-a", sso_id)
        await resources.evidence.delete("ws-a", dashboard_ids[0])

        clusters = await resources.clusters.list_clusters("ws-a")
        assert [c.evidence_count for c in clusters] == [2]
        assert dashboard_ids[0] not in clusters[0].evidence_ids


class TestClusterEdits:
    """Tests for user edits and nudges."""

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")
        cluster = (await resources.clusters.list_clusters("ws-a"))[0]

        with pytest.raises(ValueError):
            await resources.clusters.update_cluster("ws-a", cluster.id, {"evidence_count": 99})
        with pytest.raises(ValueError):
            await resources.clusters.update_cluster("ws-a", cluster.id, {"verdict": "PROBABLY"})

    @pytest.mark.asyncio
    async def test_cross_workspace_update_not_found(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")
        cluster = (await resources.clusters.list_clusters("ws-a"))[0]

        with pytest.raises(NotFoundError):
            await resources.clusters.update_cluster("ws-b", cluster.id, {"pinned": True})

    @pytest.mark.asyncio
    async def test_nudges(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")

        nudges = await resources.clusters.get_nudges("ws-a", "Dashboards are slow to load", "Problem")

        assert nudges[0].evidence_count == 3
        assert nudges[0].similarity == pytest.approx(1.0)
        assert nudges[0].score >= nudges[-1].score

    @pytest.mark.asyncio
    async def test_dismissed_clusters_not_nudged(self, resources):
        await seed_dashboard_and_sso(resources)
        await resources.clusters.compute_clusters("ws-a")
        dashboard = (await resources.clusters.list_clusters("ws-a"))[0]
        await resources.clusters.update_cluster("ws-a", dashboard.id, {"dismissed": True})

        nudges = await resources.clusters.get_nudges("ws-a", "Dashboards are slow", "Problem")

        assert dashboard.id not in [n.cluster_id for n in nudges]
        assert len(await resources.clusters.list_clusters("ws-a", include_dismissed=False)) == 1
