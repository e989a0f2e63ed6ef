"""Codebase connection endpoints."""

from fastapi import APIRouter, HTTPException, Response, status

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import (
    ConnectionCreate,
    ConnectionSchema,
    ModuleSchema,
    SyncRequest,
)

router = APIRouter(prefix="/api/v1/codebase", tags=["codebase"])


@router.post("/connections", response_model=ConnectionSchema, status_code=status.HTTP_201_CREATED)
async def connect_repository(
    request: ConnectionCreate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> ConnectionSchema:
    """Register a repository; it stays ``pending`` until the first sync."""
    try:
        connection = await resources.sync.connect(
            workspace_id,
            repo_url=request.repo_url,
            repo_name=request.repo_name,
            default_branch=request.default_branch,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ConnectionSchema.model_validate(connection)


@router.get("/connections", response_model=list[ConnectionSchema])
async def list_connections(workspace_id: WorkspaceDep, resources: ResourcesDep) -> list[ConnectionSchema]:
    connections = await resources.sync.list_connections(workspace_id)
    return [ConnectionSchema.model_validate(c) for c in connections]


@router.get("/connections/{connection_id}", response_model=ConnectionSchema)
async def get_connection(
    connection_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep
) -> ConnectionSchema:
    """Connection with its sync status, counts and last error."""
    connection = await resources.sync.get_connection(connection_id, workspace_id)
    return ConnectionSchema.model_validate(connection)


@router.get("/connections/{connection_id}/modules", response_model=list[ModuleSchema])
async def list_modules(
    connection_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep
) -> list[ModuleSchema]:
    await resources.sync.get_connection(connection_id, workspace_id)
    modules = await resources.sync.list_modules(connection_id, workspace_id)
    return [ModuleSchema.model_validate(m) for m in modules]


@router.post(
    "/connections/{connection_id}/sync",
    response_model=ConnectionSchema,
    status_code=status.HTTP_202_ACCEPTED,
)
async def sync_repository(
    connection_id: str,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
    request: SyncRequest | None = None,
) -> ConnectionSchema:
    """Start a background sync; poll the connection for its outcome.

    Returns 409 while a recent sync of the same connection is still running.
    """
    connection = await resources.sync.request_resync(
        connection_id, workspace_id, credentials=request.token if request else None
    )
    return ConnectionSchema.model_validate(connection)


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_repository(
    connection_id: str, workspace_id: WorkspaceDep, resources: ResourcesDep
) -> Response:
    """Remove the connection with its modules, chunks and links."""
    await resources.sync.disconnect(connection_id, workspace_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
