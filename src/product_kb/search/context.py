"""Context assembly for downstream prompting.

Search results are deduplicated per source, grouped by kind, enriched with
the source record's fields and, for a document section, trimmed to a slot
allocation driven by how much code context the section wants.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from product_kb.config import settings
from product_kb.db.database import SessionFactory
from product_kb.db.models import Artifact, CodebaseModule, Evidence, SourceType
from product_kb.vectorstore.retriever import SearchResult, SimilaritySearch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResultAllocation:
    evidence: int
    code: int
    specs: int

    @property
    def total(self) -> int:
        return self.evidence + self.code + self.specs


def allocate(
    code_weight: float,
    pool_slots: int | None = None,
    spec_slots: int | None = None,
) -> ResultAllocation:
    """Split the result budget between evidence, code and specs.

    Evidence and code share a fixed pool; code gets ``round(pool * w)``
    (half rounds up) and evidence the remainder, so the total never
    changes and code slots never decrease as the weight grows.
    """
    pool = settings.CONTEXT_POOL_SLOTS if pool_slots is None else pool_slots
    specs = settings.CONTEXT_SPEC_SLOTS if spec_slots is None else spec_slots

    weight = min(max(float(code_weight), 0.0), 1.0)
    code = min(pool, int(pool * weight + 0.5))
    return ResultAllocation(evidence=pool - code, code=code, specs=specs)


@dataclass
class AssembledContext:
    """Search results grouped by source kind, best first."""

    artifacts: list[SearchResult] = field(default_factory=list)
    evidence: list[SearchResult] = field(default_factory=list)
    codebase_modules: list[SearchResult] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.artifacts) + len(self.evidence) + len(self.codebase_modules)

    def limited(self, allocation: ResultAllocation) -> "AssembledContext":
        return AssembledContext(
            artifacts=self.artifacts[: allocation.specs],
            evidence=self.evidence[: allocation.evidence],
            codebase_modules=self.codebase_modules[: allocation.code],
        )

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "artifacts": [r.to_dict() for r in self.artifacts],
            "evidence": [r.to_dict() for r in self.evidence],
            "codebase_modules": [r.to_dict() for r in self.codebase_modules],
        }


def best_per_source(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Keep the highest-similarity chunk of each source."""
    best: dict[tuple[str, str], SearchResult] = {}
    for result in results:
        key = (result.source_type, result.source_id)
        current = best.get(key)
        if current is None or result.similarity > current.similarity:
            best[key] = result
    return list(best.values())


class ContextAssembler:
    """Builds grouped, enriched context for a query."""

    def __init__(self, session_factory: SessionFactory, search: SimilaritySearch):
        self.session_factory = session_factory
        self.search = search

    async def assemble(
        self,
        query: str,
        workspace_id: str,
        source_types: Iterable[str] | None = None,
        exclude_source_ids: Iterable[str] | None = None,
    ) -> AssembledContext:
        vector = await self.search.embedder.embed(query)
        results = await self.search.search_by_vector(
            vector,
            workspace_id,
            source_types=source_types,
            limit=settings.CONTEXT_SEARCH_LIMIT,
            min_similarity=settings.CONTEXT_MIN_SIMILARITY,
            exclude_source_ids=exclude_source_ids,
        )

        deduped = await self._enrich(workspace_id, best_per_source(results))

        context = AssembledContext()
        groups = {
            SourceType.ARTIFACT.value: context.artifacts,
            SourceType.EVIDENCE.value: context.evidence,
            SourceType.CODEBASE_MODULE.value: context.codebase_modules,
        }
        for result in sorted(deduped, key=lambda r: r.similarity, reverse=True):
            groups[result.source_type].append(result)

        logger.debug(
            f"Assembled context for {workspace_id}: {len(context.artifacts)} artifacts, "
            f"{len(context.evidence)} evidence, {len(context.codebase_modules)} modules"
        )
        return context

    async def assemble_for_section(
        self,
        query: str,
        workspace_id: str,
        code_weight: float,
        source_types: Iterable[str] | None = None,
        exclude_source_id: str | None = None,
    ) -> AssembledContext:
        """Assemble context trimmed to the section's slot allocation."""
        context = await self.assemble(
            query,
            workspace_id,
            source_types=source_types,
            exclude_source_ids=[exclude_source_id] if exclude_source_id else None,
        )
        return context.limited(allocate(code_weight))

    async def _enrich(self, workspace_id: str, results: list[SearchResult]) -> list[SearchResult]:
        """Copy current fields of each source record into result metadata.

        Results whose source record no longer exists are dropped.
        """
        ids: dict[str, set[str]] = {}
        for result in results:
            ids.setdefault(result.source_type, set()).add(result.source_id)
        if not ids:
            return []

        details: dict[tuple[str, str], dict[str, Any]] = {}
        async with self.session_factory() as session:
            if ids.get(SourceType.EVIDENCE.value):
                rows = await session.scalars(
                    select(Evidence).where(
                        Evidence.workspace_id == workspace_id,
                        Evidence.id.in_(ids[SourceType.EVIDENCE.value]),
                    )
                )
                for row in rows:
                    details[(SourceType.EVIDENCE.value, row.id)] = {
                        "title": row.title,
                        "type": row.type,
                        "source": row.source,
                        "tags": list(row.tags or []),
                        "full_content": row.content,
                    }
            if ids.get(SourceType.ARTIFACT.value):
                rows = await session.scalars(
                    select(Artifact).where(
                        Artifact.workspace_id == workspace_id,
                        Artifact.id.in_(ids[SourceType.ARTIFACT.value]),
                    )
                )
                for row in rows:
                    details[(SourceType.ARTIFACT.value, row.id)] = {
                        "title": row.title,
                        "type": row.type,
                        "status": row.status,
                    }
            if ids.get(SourceType.CODEBASE_MODULE.value):
                rows = await session.scalars(
                    select(CodebaseModule).where(
                        CodebaseModule.workspace_id == workspace_id,
                        CodebaseModule.id.in_(ids[SourceType.CODEBASE_MODULE.value]),
                    )
                )
                for row in rows:
                    details[(SourceType.CODEBASE_MODULE.value, row.id)] = {
                        "file_path": row.file_path,
                        "module_name": row.module_name,
                        "module_type": row.module_type,
                        "language": row.language,
                        "summary": row.summary,
                    }

        enriched = []
        for result in results:
            extra = details.get((result.source_type, result.source_id))
            if extra is None:
                continue
            result.metadata = {**result.metadata, **extra}
            enriched.append(result)
        return enriched
