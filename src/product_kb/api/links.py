"""Link endpoints."""

from fastapi import APIRouter

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import AutoLinkRequest, AutoLinkResponse
from product_kb.vectorstore.indexer import load_source

router = APIRouter(prefix="/api/v1", tags=["links"])


@router.post("/links/auto", response_model=AutoLinkResponse)
async def auto_link(
    request: AutoLinkRequest,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> AutoLinkResponse:
    """Link a record to sufficiently similar records of the complementary kind."""
    async with resources.session_factory() as session:
        await load_source(session, workspace_id, request.source_type.value, request.source_id)

    created = await resources.linker.auto_link(
        request.source_id, request.source_type.value, workspace_id
    )
    return AutoLinkResponse(created=created)
