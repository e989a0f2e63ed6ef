"""Evidence cluster endpoints."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from product_kb.api.deps import ResourcesDep, WorkspaceDep
from product_kb.api.schemas import (
    ClusterListResponse,
    ClusterSchema,
    ClusterUpdate,
    ComputationSchema,
    ComputeRequest,
    NudgeRequest,
    NudgeResponse,
    NudgeSchema,
)
from product_kb.config import settings
from product_kb.exceptions import ComputeConflictError, ConflictError
from product_kb.resources import Resources

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/clusters", tags=["clusters"])

DONE = "[DONE]"


def _sse(payload: dict[str, Any] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


async def _run_compute(
    resources: Resources, workspace_id: str, force: bool, queue: asyncio.Queue
) -> None:
    """Background job: compute clusters, reporting progress to the queue."""
    try:
        result = await resources.clusters.compute_clusters(
            workspace_id,
            on_progress=lambda step: queue.put_nowait({"step": step}),
            force=force,
        )
    except Exception as e:
        if isinstance(e, ConflictError) or settings.DEBUG:
            message = str(e)
        else:
            message = "Cluster computation failed"
        queue.put_nowait({"error": message})
        raise

    queue.put_nowait(
        {
            "step": result.status,
            "cluster_count": result.cluster_count,
            "clustered_count": result.clustered_count,
            "unclustered_count": len(result.unclustered_evidence_ids),
        }
    )
    queue.put_nowait(None)


async def _relay(queue: asyncio.Queue) -> AsyncIterator[str]:
    """Relay queued progress as server-sent events.

    Disconnecting only stops the relay; the computation keeps running.
    """
    while True:
        item = await queue.get()
        if item is None:
            yield _sse(DONE)
            return
        yield _sse(item)
        if "error" in item:
            return


@router.post("/compute")
async def compute_clusters(
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
    request: ComputeRequest | None = None,
) -> StreamingResponse:
    """Recompute clusters, streaming progress steps as server-sent events.

    Events are ``{"step": ...}`` per stage, a final summary, then ``[DONE]``;
    a failure ends the stream with ``{"error": ...}``.
    """
    job_name = f"clusters:{workspace_id}"
    if resources.jobs.running(job_name):
        raise ComputeConflictError(workspace_id)

    queue: asyncio.Queue = asyncio.Queue()
    force = request.force if request else False
    resources.jobs.start(job_name, _run_compute(resources, workspace_id, force, queue))

    return StreamingResponse(
        _relay(queue),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("", response_model=ClusterListResponse)
async def list_clusters(
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
    include_dismissed: bool = True,
) -> ClusterListResponse:
    clusters = await resources.clusters.list_clusters(workspace_id, include_dismissed=include_dismissed)
    log = await resources.clusters.get_computation_log(workspace_id)
    return ClusterListResponse(
        clusters=[ClusterSchema.model_validate(c) for c in clusters],
        computation=ComputationSchema.model_validate(log) if log else None,
    )


@router.patch("/{cluster_id}", response_model=ClusterSchema)
async def update_cluster(
    cluster_id: str,
    request: ClusterUpdate,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> ClusterSchema:
    """Edit a cluster's label, note, pin, dismissal or verdict."""
    updates = request.model_dump(exclude_unset=True, mode="json")
    cluster = await resources.clusters.update_cluster(workspace_id, cluster_id, updates)
    return ClusterSchema.model_validate(cluster)


@router.post("/nudges", response_model=NudgeResponse)
async def get_nudges(
    request: NudgeRequest,
    workspace_id: WorkspaceDep,
    resources: ResourcesDep,
) -> NudgeResponse:
    """Clusters worth surfacing while writing a document section."""
    nudges = await resources.clusters.get_nudges(
        workspace_id, request.section_text, request.section_name, limit=request.limit
    )
    return NudgeResponse(nudges=[NudgeSchema(**n.to_dict()) for n in nudges])
