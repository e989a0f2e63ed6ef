"""Shared FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Header, Request

from product_kb.resources import Resources


def get_resources(request: Request) -> Resources:
    """Process-wide resources opened by the application lifespan."""
    return request.app.state.resources


async def get_workspace_id(
    x_workspace_id: Annotated[str, Header(alias="X-Workspace-ID", min_length=1, max_length=64)],
) -> str:
    """Workspace every request is scoped to."""
    return x_workspace_id.strip()


ResourcesDep = Annotated[Resources, Depends(get_resources)]
WorkspaceDep = Annotated[str, Depends(get_workspace_id)]
