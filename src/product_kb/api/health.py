"""Health check endpoints for the knowledge base API."""

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from product_kb.api.deps import ResourcesDep
from product_kb.rag.exceptions import LLMError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(resources: ResourcesDep) -> dict[str, Any]:
    """
    Readiness check - verifies dependent services are available.

    Checks:
    - Database: a trivial query on the engine
    - LLM: provider reachability (optional; fallbacks cover its absence)
    - Background jobs: count of running jobs
    """
    services: dict[str, str] = {}
    all_ok = True

    try:
        async with resources.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        services["database"] = "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Database readiness check failed: {e}")
        services["database"] = f"error: {type(e).__name__}"
        all_ok = False

    if resources.llm is None:
        services["llm"] = "warning: no provider configured"
    else:
        try:
            healthy = await resources.llm.check_health()
        except LLMError as e:
            logger.warning(f"LLM readiness check failed: {e}")
            healthy = False
        if healthy:
            services["llm"] = f"ok ({resources.llm.provider_name})"
        else:
            # Readiness does not depend on the LLM
            services["llm"] = f"error: {resources.llm.provider_name} not healthy"

    services["embeddings"] = resources.embeddings.provider_name
    services["jobs"] = f"{resources.jobs.active_count} running"

    status = "ready" if all_ok else "degraded"
    return {"status": status, "services": services}
