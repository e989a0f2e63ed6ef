"""Tests for database models."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from product_kb.db.models import (
    EmbeddingChunk,
    Evidence,
    EvidenceCluster,
    Link,
    utcnow,
)


def test_utcnow_is_naive():
    """Timestamps are stored as naive UTC."""
    assert utcnow().tzinfo is None


def test_display_label_prefers_custom_label():
    cluster = EvidenceCluster(label="Slow dashboards", custom_label=None)
    assert cluster.display_label == "Slow dashboards"

    cluster.custom_label = "Performance"
    assert cluster.display_label == "Performance"
    assert "Performance" in repr(cluster)


def test_link_repr():
    link = Link(
        source_id="e1", source_type="evidence", target_id="a1", target_type="artifact",
        relationship="related_to",
    )
    assert repr(link) == "<Link(evidence:e1 -related_to-> artifact:a1)>"


def test_chunk_repr_shows_embedding_state():
    chunk = EmbeddingChunk(source_type="evidence", source_id="e1", chunk_index=0, vector=None)
    assert "embedded=False" in repr(chunk)


@pytest.mark.asyncio
async def test_defaults_applied_on_insert(session_factory):
    async with session_factory() as session:
        evidence = Evidence(workspace_id="ws-a", type="feedback", title="Dashboard lag")
        session.add(evidence)
        await session.commit()

        stored = await session.scalar(select(Evidence).where(Evidence.id == evidence.id))

    assert len(stored.id) == 36
    assert stored.tags == []
    assert stored.content == ""
    assert stored.created_at is not None


@pytest.mark.asyncio
async def test_chunk_position_is_unique(session_factory):
    async with session_factory() as session:
        for _ in range(2):
            session.add(
                EmbeddingChunk(
                    workspace_id="ws-a", source_id="e1", source_type="evidence",
                    chunk_text="Dashboard lag", chunk_index=0,
                )
            )
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_null_vector_round_trips(session_factory):
    async with session_factory() as session:
        session.add(
            EmbeddingChunk(
                workspace_id="ws-a", source_id="e1", source_type="evidence",
                chunk_text="Dashboard lag", chunk_index=0, vector=None,
            )
        )
        await session.commit()

        pending = await session.scalar(select(EmbeddingChunk).where(EmbeddingChunk.vector.is_(None)))

    assert pending is not None
    assert pending.vector is None
