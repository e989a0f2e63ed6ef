"""Search and context assembly endpoints."""

import logging
from typing import Any

from fastapi import APIRouter

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import (
    AllocationSchema,
    GroupedSearchResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SectionContextRequest,
    SectionContextResponse,
)
from product_kb.search import allocate, get_section_config
from product_kb.search.context import AssembledContext
from product_kb.vectorstore.retriever import SearchResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["search"])


def _items(results: list[SearchResult]) -> list[SearchResultItem]:
    return [SearchResultItem(**r.to_dict()) for r in results]


def _grouped(query: str, context: AssembledContext) -> dict[str, Any]:
    return {
        "query": query,
        "artifacts": _items(context.artifacts),
        "evidence": _items(context.evidence),
        "codebase_modules": _items(context.codebase_modules),
    }


@router.post("/search", response_model=SearchResponse | GroupedSearchResponse)
async def search(
    request: SearchRequest,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> SearchResponse | GroupedSearchResponse:
    """Semantic search over the workspace's evidence, artifacts and code.

    With ``grouped`` the best chunk of each record is returned, grouped by
    record kind and enriched with the record's current fields.
    """
    source_types = [t.value for t in request.source_types] if request.source_types else None
    logger.info(f"Search in {workspace_id}: '{request.query[:50]}...' (grouped={request.grouped})")

    if request.grouped:
        context = await resources.assembler.assemble(
            request.query, workspace_id, source_types=source_types
        )
        return GroupedSearchResponse(**_grouped(request.query, context))

    results = await resources.search.search(
        request.query,
        workspace_id,
        source_types=source_types,
        limit=request.limit,
        min_similarity=request.min_similarity,
    )
    return SearchResponse(query=request.query, results=_items(results), total=len(results))


@router.post("/context/section", response_model=SectionContextResponse)
async def section_context(
    request: SectionContextRequest,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> SectionContextResponse:
    """Context for drafting one document section, split by its code weight."""
    section = get_section_config(request.section_name, request.template_type)
    allocation = allocate(section.code_weight)

    context = await resources.assembler.assemble_for_section(
        request.query,
        workspace_id,
        code_weight=section.code_weight,
        source_types=[t.value for t in section.source_types],
        exclude_source_id=request.exclude_source_id,
    )
    return SectionContextResponse(
        **_grouped(request.query, context),
        section=section.heading,
        code_weight=section.code_weight,
        allocation=AllocationSchema(
            evidence=allocation.evidence, code=allocation.code, specs=allocation.specs
        ),
    )
