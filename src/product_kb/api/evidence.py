"""Evidence endpoints."""

from fastapi import APIRouter, Query, Response, status

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import (
    EvidenceCreate,
    EvidenceSchema,
    EvidenceTagsUpdate,
    LinkSchema,
)
from product_kb.db.models import EvidenceType

router = APIRouter(prefix="/api/v1/evidence", tags=["evidence"])


@router.post("", response_model=EvidenceSchema, status_code=status.HTTP_201_CREATED)
async def create_evidence(
    request: EvidenceCreate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> EvidenceSchema:
    """Store evidence; indexing and auto-linking run in the background."""
    evidence = await resources.evidence.create(
        workspace_id,
        type=request.type.value,
        title=request.title,
        content=request.content,
        source=request.source,
        tags=request.tags,
    )
    return EvidenceSchema.model_validate(evidence)


@router.get("", response_model=list[EvidenceSchema])
async def list_evidence(
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
    type: EvidenceType | None = None,
    tag: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[EvidenceSchema]:
    rows = await resources.evidence.list_evidence(
        workspace_id, type=type.value if type else None, tag=tag, limit=limit, offset=offset
    )
    return [EvidenceSchema.model_validate(e) for e in rows]


@router.get("/{evidence_id}", response_model=EvidenceSchema)
async def get_evidence(evidence_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> EvidenceSchema:
    return EvidenceSchema.model_validate(await resources.evidence.get(workspace_id, evidence_id))


@router.patch("/{evidence_id}", response_model=EvidenceSchema)
async def update_evidence_tags(
    evidence_id: str,
    request: EvidenceTagsUpdate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> EvidenceSchema:
    """Replace the evidence's tags (the only mutable field)."""
    evidence = await resources.evidence.update_tags(workspace_id, evidence_id, request.tags)
    return EvidenceSchema.model_validate(evidence)


@router.get("/{evidence_id}/links", response_model=list[LinkSchema])
async def evidence_links(evidence_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> list[LinkSchema]:
    links = await resources.evidence.links(workspace_id, evidence_id)
    return [LinkSchema.model_validate(link) for link in links]


@router.delete("/{evidence_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_evidence(evidence_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> Response:
    """Delete evidence with its chunks, links and cluster memberships."""
    await resources.evidence.delete(workspace_id, evidence_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
