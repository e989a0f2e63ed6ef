"""Embeddings providers and the retrying embedding service."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from product_kb.config import settings
from product_kb.vectorstore.exceptions import (
    EmbeddingAuthenticationError,
    EmbeddingError,
    EmbeddingInputError,
    EmbeddingProviderNotConfiguredError,
    EmbeddingRateLimitError,
    EmbeddingTransientError,
)

logger = logging.getLogger(__name__)

# Provider registry
_EMBEDDING_REGISTRY: dict[str, Callable[..., "BaseEmbeddings"]] = {}


def register_embedding_provider(name: str):
    """Decorator to register an embedding provider factory.

    Factories accept an optional shared ``client`` keyword.
    """

    def decorator(factory: Callable[..., "BaseEmbeddings"]):
        _EMBEDDING_REGISTRY[name.lower()] = factory
        return factory

    return decorator


def raise_for_embedding_status(response: httpx.Response, provider: str) -> None:
    """Translate an HTTP error status into the embedding exception hierarchy."""
    status = response.status_code
    if status < 400:
        return

    detail = response.text[:200]
    if status == 429:
        retry_after = response.headers.get("retry-after")
        raise EmbeddingRateLimitError(
            "Rate limit exceeded",
            provider=provider,
            retry_after=float(retry_after) if retry_after else None,
        )
    if status >= 500:
        raise EmbeddingTransientError(f"Server error {status}: {detail}", provider=provider)
    if status in (401, 403):
        raise EmbeddingAuthenticationError(f"Authentication failed ({status})", provider=provider)
    raise EmbeddingInputError(f"Request rejected ({status}): {detail}", provider=provider)


class BaseEmbeddings(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension."""
        pass

    @abstractmethod
    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed
            **kwargs: Additional provider-specific parameters

        Returns:
            List of embedding vectors, in input order

        Raises:
            EmbeddingError: Classified as transient or fatal
        """
        pass

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        embeddings = await self.embed([text])
        return embeddings[0]


class _HTTPEmbeddings(BaseEmbeddings):
    """Shared request handling for HTTP providers."""

    def __init__(self, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT
        self._client = client
        self._warned_unshared = False

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> Any:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
            else:
                if not self._warned_unshared:
                    logger.warning(
                        f"{self.provider_name} embeddings have no shared HTTP client, "
                        f"opening a connection per request"
                    )
                    self._warned_unshared = True
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise EmbeddingTransientError(f"Request timed out: {e}", provider=self.provider_name) from e
        except httpx.TransportError as e:
            raise EmbeddingTransientError(f"Failed to connect: {e}", provider=self.provider_name) from e

        raise_for_embedding_status(response, self.provider_name)
        return response.json()


class OpenAIEmbeddings(_HTTPEmbeddings):
    """Embeddings using the OpenAI embeddings endpoint over raw httpx."""

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.base_url = (base_url or settings.OPENAI_API_URL).rstrip("/")

        if not self.api_key:
            logger.warning("OpenAI API key not configured")

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, settings.EMBEDDING_DIMENSION)

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        if not texts:
            return []
        if not self.api_key:
            raise EmbeddingProviderNotConfiguredError("API key not configured", provider=self.provider_name)

        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": texts},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        if len(items) != len(texts):
            raise EmbeddingTransientError(
                f"Expected {len(texts)} embeddings, got {len(items)}", provider=self.provider_name
            )
        return [item["embedding"] for item in items]


class OllamaEmbeddings(_HTTPEmbeddings):
    """Embeddings using Ollama (requires Ollama server)."""

    # Known dimensions for common Ollama embedding models
    MODEL_DIMENSIONS = {
        "mxbai-embed-large": 1024,
        "nomic-embed-text": 768,
        "all-minilm": 384,
    }

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_EMBEDDING_MODEL
        self._dimension: int | None = self.MODEL_DIMENSIONS.get(self.model)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def dimension(self) -> int:
        return self._dimension or 1024

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        embeddings = []
        for text in texts:
            data = await self._post(
                f"{self.base_url}/api/embeddings",
                {"model": self.model, "prompt": text},
            )
            embedding = data.get("embedding", [])
            if not embedding:
                raise EmbeddingInputError("Empty embedding returned", provider=self.provider_name)
            embeddings.append(embedding)

            # Update dimension from first response
            if self._dimension is None:
                self._dimension = len(embedding)

        return embeddings


class SentenceTransformerEmbeddings(BaseEmbeddings):
    """Embeddings using sentence-transformers (runs locally, no external API)."""

    def __init__(self, model: str | None = None):
        self.model_name = model or settings.EMBEDDING_MODEL
        self._model = None
        self._dimension: int | None = None

    @property
    def provider_name(self) -> str:
        return "sentence-transformer"

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._load_model()
        return self._dimension  # type: ignore

    def _load_model(self):
        """Lazy load the model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise EmbeddingProviderNotConfiguredError(
                    "sentence-transformers not installed. "
                    "Install with: pip install product-kb[local-embeddings]",
                    provider=self.provider_name,
                ) from e

            logger.info(f"Loading sentence-transformer model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Model loaded, dimension: {self._dimension}")

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        self._load_model()
        embeddings = await asyncio.to_thread(self._model.encode, texts, convert_to_numpy=True)
        return embeddings.tolist()


# Register providers
@register_embedding_provider("openai")
def _create_openai(client: httpx.AsyncClient | None = None):
    return OpenAIEmbeddings(client=client)


@register_embedding_provider("ollama")
def _create_ollama(client: httpx.AsyncClient | None = None):
    return OllamaEmbeddings(client=client)


@register_embedding_provider("sentence-transformer")
def _create_sentence_transformer(client: httpx.AsyncClient | None = None):
    return SentenceTransformerEmbeddings()


def get_available_embedding_providers() -> list[str]:
    """Get list of registered embedding provider names."""
    return list(_EMBEDDING_REGISTRY.keys())


def get_embeddings(provider: str | None = None, client: httpx.AsyncClient | None = None) -> BaseEmbeddings:
    """Get an embeddings instance.

    Args:
        provider: Provider name (defaults to settings.EMBEDDING_PROVIDER)
        client: Shared HTTP client for HTTP-based providers

    Raises:
        ValueError: If provider is not registered
    """
    provider_name = (provider or settings.EMBEDDING_PROVIDER).lower()

    if provider_name not in _EMBEDDING_REGISTRY:
        available = ", ".join(get_available_embedding_providers())
        raise ValueError(
            f"Unknown embedding provider '{provider_name}'. Available: {available}"
        )

    return _EMBEDDING_REGISTRY[provider_name](client=client)


def normalize_text(text: str) -> str:
    """Collapse whitespace runs so equivalent inputs embed identically."""
    return re.sub(r"\s+", " ", text or "").strip()


class EmbeddingService:
    """Bounded-concurrency, retrying front for an embeddings provider.

    Transient provider failures are retried with exponential backoff;
    input and authentication errors are raised immediately.
    """

    def __init__(
        self,
        provider: BaseEmbeddings,
        concurrency: int | None = None,
        max_attempts: int | None = None,
        backoff: float = 1.0,
    ):
        self.provider = provider
        self.max_attempts = max_attempts or settings.EMBEDDING_MAX_RETRIES
        self.backoff = backoff
        self._semaphore = asyncio.Semaphore(concurrency or settings.EMBEDDING_CONCURRENCY)

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    async def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises:
            EmbeddingInputError: If the text is empty after normalization
            EmbeddingError: If the provider fails fatally or retries are exhausted
        """
        normalized = normalize_text(text)
        if not normalized:
            raise EmbeddingInputError("Cannot embed empty text", provider=self.provider.provider_name)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=20),
            retry=retry_if_exception_type(EmbeddingTransientError),
            reraise=True,
        ):
            with attempt:
                async with self._semaphore:
                    vectors = await self.provider.embed([normalized])

        if attempt.retry_state.attempt_number > 1:
            logger.info(
                f"Embedding succeeded after {attempt.retry_state.attempt_number} attempts "
                f"({self.provider.provider_name})"
            )
        return vectors[0]

    async def try_embed(self, text: str) -> tuple[list[float] | None, str | None]:
        """Embed one text, returning ``(None, error)`` instead of raising."""
        try:
            return await self.embed(text), None
        except EmbeddingError as e:
            logger.warning(f"Embedding failed: {e}")
            return None, str(e)
