"""Labels, section relevance and criticality for evidence clusters.

Each step makes one structured text-generation call covering every
cluster. When no client is configured, or a call fails or returns
unusable output, a deterministic fallback fills in the values so a
compute run never fails on labeling.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np
from pydantic import BaseModel, Field

from product_kb.db.models import CriticalityLevel, utcnow
from product_kb.rag.exceptions import LLMError
from product_kb.rag.llm import BaseLLM
from product_kb.search.sections import CLUSTER_SECTIONS, SectionConfig
from product_kb.vectorstore.embeddings import EmbeddingService
from product_kb.vectorstore.exceptions import EmbeddingError
from product_kb.vectorstore.similarity import cosine_similarity, similarity_matrix

logger = logging.getLogger(__name__)

MAX_SAMPLE_MEMBERS = 8
SNIPPET_CHARS = 300
RECENT_DAYS = 30


@dataclass
class EvidenceSnapshot:
    id: str
    title: str
    content: str
    type: str
    created_at: datetime


@dataclass
class ClusterDraft:
    """A cluster being built by a compute run."""

    members: list[EvidenceSnapshot]
    vectors: list[list[float]]
    centroid: list[float]
    label: str = ""
    summary: str = ""
    section_relevance: dict[str, float] = field(default_factory=dict)
    criticality_score: float | None = None
    criticality_level: str | None = None
    criticality_reason: str | None = None

    @property
    def evidence_ids(self) -> list[str]:
        return [m.id for m in self.members]

    @property
    def size(self) -> int:
        return len(self.members)

    def central_member(self) -> EvidenceSnapshot:
        """Member with the highest mean similarity to the others."""
        if len(self.members) <= 2:
            return self.members[0]
        scores = similarity_matrix(self.vectors).mean(axis=1)
        return self.members[int(np.argmax(scores))]


class ClusterLabel(BaseModel):
    index: int = Field(description="0-based cluster index")
    label: str = Field(description="3-5 word theme label")
    summary: str = Field(description="One-sentence summary of the theme")


class ClusterLabelBatch(BaseModel):
    clusters: list[ClusterLabel]


class SectionScore(BaseModel):
    section: str
    score: float = Field(ge=0.0, le=1.0)


class ClusterRelevance(BaseModel):
    index: int
    scores: list[SectionScore]


class ClusterRelevanceBatch(BaseModel):
    results: list[ClusterRelevance]


class ClusterCriticality(BaseModel):
    index: int
    score: float = Field(ge=0.0, le=1.0)
    reason: str = Field(description="One sentence")


class ClusterCriticalityBatch(BaseModel):
    results: list[ClusterCriticality]


LABEL_SYSTEM = (
    "You are a product research analyst. Each numbered group below is a cluster of "
    "customer evidence. For every cluster give a label of 3-5 words naming the theme "
    "and a one-sentence summary."
)

RELEVANCE_SYSTEM = (
    "You are a product research analyst. For each cluster, score its relevance "
    "(0.0 to 1.0) to each of these document sections: {sections}."
)

CRITICALITY_SYSTEM = (
    "You are a product analyst assessing business criticality of evidence themes. "
    "Score each on a 0.0-1.0 scale considering frequency (evidence count), business "
    "impact (revenue, churn, compliance risk), breadth of affected users, and recency. "
    "{recency} of the evidence is from the last {days} days. Give a one-sentence reason."
)


def criticality_level(score: float) -> str:
    if score >= 0.8:
        return CriticalityLevel.CRITICAL.value
    if score >= 0.6:
        return CriticalityLevel.HIGH.value
    if score >= 0.4:
        return CriticalityLevel.MEDIUM.value
    return CriticalityLevel.LOW.value


def fallback_label(draft: ClusterDraft) -> tuple[str, str]:
    """Label and summary taken from the most central member."""
    member = draft.central_member()
    words = member.title.split()
    label = " ".join(words[:5]) or "Untitled theme"
    text = re.sub(r"\s+", " ", member.content or member.title).strip()
    sentence = re.split(r"(?<=[.!?])\s", text, maxsplit=1)[0]
    summary = sentence[:200]
    if draft.size > 1:
        summary = f"{summary} ({draft.size} related items)"
    return label, summary


def describe_clusters(drafts: list[ClusterDraft], with_members: bool) -> str:
    lines = []
    for index, draft in enumerate(drafts):
        if with_members:
            lines.append(f"Cluster {index}:")
            for member in draft.members[:MAX_SAMPLE_MEMBERS]:
                lines.append(f"  - {member.title}: {member.content[:SNIPPET_CHARS]}")
        else:
            lines.append(
                f"Cluster {index}: \"{draft.label}\": {draft.summary} ({draft.size} evidence items)"
            )
    return "\n".join(lines)


class ClusterLabeler:
    """Fills in the descriptive fields of cluster drafts."""

    def __init__(
        self,
        llm: BaseLLM | None,
        embedder: EmbeddingService,
        sections: tuple[SectionConfig, ...] = CLUSTER_SECTIONS,
    ):
        self.llm = llm
        self.embedder = embedder
        self.sections = sections
        self._section_vectors: dict[str, list[float]] = {}

    async def label(self, drafts: list[ClusterDraft]) -> None:
        for draft in drafts:
            draft.label, draft.summary = fallback_label(draft)
        if not drafts or self.llm is None:
            return

        try:
            batch = await self.llm.generate_structured(
                describe_clusters(drafts, with_members=True),
                ClusterLabelBatch,
                system=LABEL_SYSTEM,
            )
        except LLMError as e:
            logger.warning(f"Cluster labeling failed, using member titles: {e}")
            return

        for item in batch.clusters:
            if 0 <= item.index < len(drafts) and item.label.strip():
                drafts[item.index].label = item.label.strip()[:256]
                drafts[item.index].summary = item.summary.strip()

    async def score_sections(self, drafts: list[ClusterDraft]) -> None:
        if not drafts:
            return
        headings = [s.heading for s in self.sections]

        scored: set[int] = set()
        if self.llm is not None:
            try:
                batch = await self.llm.generate_structured(
                    describe_clusters(drafts, with_members=False),
                    ClusterRelevanceBatch,
                    system=RELEVANCE_SYSTEM.format(sections=", ".join(headings)),
                )
                by_name = {h.lower(): h for h in headings}
                for item in batch.results:
                    if not 0 <= item.index < len(drafts):
                        continue
                    relevance = {
                        by_name[s.section.strip().lower()]: round(s.score, 4)
                        for s in item.scores
                        if s.section.strip().lower() in by_name
                    }
                    if relevance:
                        drafts[item.index].section_relevance = {
                            h: relevance.get(h, 0.0) for h in headings
                        }
                        scored.add(item.index)
            except LLMError as e:
                logger.warning(f"Section relevance scoring failed, using embeddings: {e}")

        for index, draft in enumerate(drafts):
            if index not in scored:
                draft.section_relevance = await self._embedding_relevance(draft)

    async def _embedding_relevance(self, draft: ClusterDraft) -> dict[str, float]:
        relevance = {}
        for section in self.sections:
            vector = await self._section_vector(section)
            relevance[section.heading] = (
                round(cosine_similarity(draft.centroid, vector), 4) if vector else 0.0
            )
        return relevance

    async def _section_vector(self, section: SectionConfig) -> list[float] | None:
        if section.heading not in self._section_vectors:
            try:
                self._section_vectors[section.heading] = await self.embedder.embed(section.descriptor)
            except EmbeddingError as e:
                logger.warning(f"Could not embed section '{section.heading}': {e}")
                return None
        return self._section_vectors[section.heading]

    async def assess_criticality(self, drafts: list[ClusterDraft], now: datetime | None = None) -> None:
        if not drafts or self.llm is None:
            return

        now = now or utcnow()
        members = [m for d in drafts for m in d.members]
        recent = sum(1 for m in members if m.created_at >= now - timedelta(days=RECENT_DAYS))
        ratio = f"{recent / len(members):.2f}" if members else "0"

        try:
            batch = await self.llm.generate_structured(
                describe_clusters(drafts, with_members=False),
                ClusterCriticalityBatch,
                system=CRITICALITY_SYSTEM.format(recency=ratio, days=RECENT_DAYS),
            )
        except LLMError as e:
            logger.warning(f"Criticality assessment failed: {e}")
            return

        for item in batch.results:
            if 0 <= item.index < len(drafts):
                draft = drafts[item.index]
                draft.criticality_score = item.score
                draft.criticality_level = criticality_level(item.score)
                draft.criticality_reason = item.reason.strip()
