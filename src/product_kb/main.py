"""FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from product_kb import __version__
from product_kb.api.artifacts import router as artifacts_router
from product_kb.api.clusters import router as clusters_router
from product_kb.api.codebase import router as codebase_router
from product_kb.api.embeddings import router as embeddings_router
from product_kb.api.evidence import router as evidence_router
from product_kb.api.health import router as health_router
from product_kb.api.links import router as links_router
from product_kb.api.search import router as search_router
from product_kb.config import settings
from product_kb.exceptions import ConflictError, ContentValidationError, NotFoundError
from product_kb.jobs import reconcile_interrupted_jobs
from product_kb.resources import Resources
from product_kb.vectorstore.exceptions import EmbeddingError, EmbeddingInputError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open process-wide resources and fail over interrupted jobs."""
    resources = await Resources.open()
    await reconcile_interrupted_jobs(resources.session_factory)
    app.state.resources = resources
    logger.info(f"{settings.APP_NAME} started")
    try:
        yield
    finally:
        logger.info("Shutting down application")
        await resources.aclose()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Build the application; tests pass their own lifespan."""
    app = FastAPI(
        title=settings.APP_NAME,
        description="Multi-tenant product knowledge base with semantic search, evidence clustering and codebase context",
        version=__version__,
        lifespan=lifespan_handler,
    )

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(search_router)
    app.include_router(embeddings_router)
    app.include_router(evidence_router)
    app.include_router(artifacts_router)
    app.include_router(clusters_router)
    app.include_router(links_router)
    app.include_router(codebase_router)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ContentValidationError)
    async def content_handler(request: Request, exc: ContentValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(EmbeddingError)
    async def embedding_handler(request: Request, exc: EmbeddingError) -> JSONResponse:
        if isinstance(exc, EmbeddingInputError):
            return JSONResponse(status_code=422, content={"detail": str(exc)})
        logger.error(f"Embedding provider failed on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Embedding provider unavailable"})

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        detail = str(exc) if settings.DEBUG else "Internal server error"
        return JSONResponse(status_code=500, content={"detail": detail})

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic application info."""
        return {
            "name": settings.APP_NAME,
            "version": __version__,
            "docs": "/docs",
        }

    return app


app = create_app()
