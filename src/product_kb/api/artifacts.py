"""Artifact endpoints."""

from fastapi import APIRouter, Query, Response, status

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import (
    ArtifactCreate,
    ArtifactSchema,
    ArtifactUpdate,
    LinkSchema,
)
from product_kb.db.models import ArtifactStatus, ArtifactType

router = APIRouter(prefix="/api/v1/artifacts", tags=["artifacts"])


@router.post("", response_model=ArtifactSchema, status_code=status.HTTP_201_CREATED)
async def create_artifact(
    request: ArtifactCreate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> ArtifactSchema:
    """Store an artifact; indexing and auto-linking run in the background."""
    artifact = await resources.artifacts.create(
        workspace_id,
        type=request.type.value,
        title=request.title,
        content=request.content,
        status=request.status.value,
        parent_id=request.parent_id,
    )
    return ArtifactSchema.model_validate(artifact)


@router.get("", response_model=list[ArtifactSchema])
async def list_artifacts(
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
    type: ArtifactType | None = None,
    status_filter: ArtifactStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[ArtifactSchema]:
    rows = await resources.artifacts.list_artifacts(
        workspace_id,
        type=type.value if type else None,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return [ArtifactSchema.model_validate(a) for a in rows]


@router.get("/{artifact_id}", response_model=ArtifactSchema)
async def get_artifact(artifact_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> ArtifactSchema:
    return ArtifactSchema.model_validate(await resources.artifacts.get(workspace_id, artifact_id))


@router.patch("/{artifact_id}", response_model=ArtifactSchema)
async def update_artifact(
    artifact_id: str,
    request: ArtifactUpdate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> ArtifactSchema:
    """Update an artifact; changed title or content is re-indexed in the background."""
    updates = request.model_dump(exclude_unset=True, mode="json")
    artifact = await resources.artifacts.update(workspace_id, artifact_id, updates)
    return ArtifactSchema.model_validate(artifact)


@router.get("/{artifact_id}/links", response_model=list[LinkSchema])
async def artifact_links(artifact_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> list[LinkSchema]:
    links = await resources.artifacts.links(workspace_id, artifact_id)
    return [LinkSchema.model_validate(link) for link in links]


@router.delete("/{artifact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_artifact(artifact_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep) -> Response:
    await resources.artifacts.delete(workspace_id, artifact_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
