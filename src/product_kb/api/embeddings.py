"""Indexing endpoint."""

from fastapi import APIRouter

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import IndexRequest, IndexResponse

router = APIRouter(prefix="/api/v1", tags=["embeddings"])


@router.post("/embeddings/index", response_model=IndexResponse)
async def index_source(
    request: IndexRequest,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> IndexResponse:
    """Re-chunk and re-embed one record, replacing its previous chunks."""
    result = await resources.indexer.index(request.source_type.value, request.source_id, workspace_id)
    return IndexResponse(
        source_id=result.source_id,
        source_type=result.source_type,
        chunk_count=result.chunk_count,
        embedded_count=result.embedded_count,
    )
