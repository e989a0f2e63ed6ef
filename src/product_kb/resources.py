"""Process-wide handles and the components built from them.

One ``Resources`` instance is opened per process (by the API lifespan or a
CLI command). It owns the database engine, a pooled HTTP client and the
provider clients; every service receives these handles instead of
creating its own.
"""

import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from product_kb.clusters import ClusterEngine, ClusterLabeler
from product_kb.codebase import CodebaseSyncPipeline, github_provider_factory
from product_kb.codebase.sync import ProviderFactory
from product_kb.config import settings
from product_kb.db.database import create_engine, create_session_factory, init_db
from product_kb.documents import ArtifactService, EvidenceService
from product_kb.jobs import JobRunner
from product_kb.linking import AutoLinker
from product_kb.rag import BaseLLM, LLMProviderNotConfiguredError, get_llm
from product_kb.search import ContextAssembler
from product_kb.vectorstore import (
    BaseEmbeddings,
    EmbeddingService,
    EmbeddingStore,
    SimilaritySearch,
    SourceIndexer,
    get_embeddings,
)

logger = logging.getLogger(__name__)


class Resources:
    """Shared handles plus the service graph wired on top of them."""

    def __init__(
        self,
        engine: AsyncEngine,
        http_client: httpx.AsyncClient,
        embeddings: BaseEmbeddings,
        llm: BaseLLM | None,
        provider_factory: ProviderFactory | None = None,
    ):
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.http_client = http_client
        self.embeddings = embeddings
        self.llm = llm
        self.jobs = JobRunner()

        self.embedder = EmbeddingService(embeddings)
        self.store = EmbeddingStore(self.session_factory, self.embedder)
        self.search = SimilaritySearch(self.session_factory, self.embedder)
        self.assembler = ContextAssembler(self.session_factory, self.search)
        self.indexer = SourceIndexer(self.session_factory, self.store)
        self.labeler = ClusterLabeler(llm, self.embedder)
        self.clusters = ClusterEngine(self.session_factory, self.store, self.embedder, self.labeler)
        self.linker = AutoLinker(self.session_factory, self.store, self.search)
        self.evidence = EvidenceService(
            self.session_factory, self.store, self.indexer, self.linker, self.jobs
        )
        self.artifacts = ArtifactService(
            self.session_factory, self.store, self.indexer, self.linker, self.jobs
        )
        self.sync = CodebaseSyncPipeline(
            self.session_factory,
            self.store,
            llm,
            self.jobs,
            provider_factory or github_provider_factory(http_client),
        )

    @classmethod
    async def open(cls, database_url: str | None = None, create_tables: bool = True) -> "Resources":
        """Create the engine, HTTP client and configured providers."""
        engine = create_engine(database_url)
        if create_tables:
            await init_db(engine)

        http_client = httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT,
            limits=httpx.Limits(max_connections=settings.HTTP_MAX_CONNECTIONS),
        )
        embeddings = get_embeddings(client=http_client)

        try:
            llm = await get_llm(client=http_client)
        except LLMProviderNotConfiguredError as e:
            logger.warning(f"Running without text generation, fallbacks will be used: {e}")
            llm = None

        logger.info(
            f"Resources ready (embeddings={embeddings.provider_name}, "
            f"llm={llm.provider_name if llm else 'none'})"
        )
        return cls(engine, http_client, embeddings, llm)

    async def aclose(self) -> None:
        """Drain background jobs, then close the HTTP client and engine."""
        await self.jobs.aclose()
        await self.http_client.aclose()
        await self.engine.dispose()
