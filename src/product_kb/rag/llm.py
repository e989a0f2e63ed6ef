"""Text-generation client implementations."""

import logging
from abc import ABC, abstractmethod
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from product_kb.config import settings
from product_kb.rag.exceptions import LLMConnectionError, LLMError, LLMResponseError
from product_kb.rag.structured import decode_structured_text, extract_json_object, schema_instructions

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

JSON_INSTRUCTION = (
    "IMPORTANT: Respond ONLY with valid JSON. No markdown, no explanation, just the JSON object."
)


class BaseLLM(ABC):
    """Base class for text-generation providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'ollama', 'claude')."""
        pass

    @abstractmethod
    async def generate(
        self, prompt: str, system: str | None = None, max_tokens: int | None = None, **kwargs: Any
    ) -> str:
        """Generate text from a prompt."""
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Check if the provider is reachable and healthy."""
        pass

    async def is_available(self) -> bool:
        """Lightweight configuration check (no network requests)."""
        return True

    async def generate_json(self, prompt: str, **kwargs: Any) -> dict[str, Any]:
        """Generate a JSON object from a prompt.

        Returns an empty dict when the response holds no JSON object.
        """
        response_text = await self.generate(f"{prompt}\n\n{JSON_INSTRUCTION}", **kwargs)
        try:
            return extract_json_object(response_text)
        except ValueError as e:
            logger.warning(f"Failed to parse {self.provider_name} response as JSON: {e}")
            logger.debug(f"Raw response: {response_text}")
            return {}

    async def generate_structured(
        self, prompt: str, schema: type[T], system: str | None = None, **kwargs: Any
    ) -> T:
        """Generate output validated against a pydantic schema.

        The default decodes free text; providers with native structured
        output override this.

        Raises:
            LLMResponseError: If the output cannot be decoded into the schema
        """
        response_text = await self.generate(
            f"{prompt}\n\n{schema_instructions(schema)}", system=system, **kwargs
        )
        return decode_structured_text(response_text, schema, provider=self.provider_name)


class OllamaLLM(BaseLLM):
    """Ollama text-generation client."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout = timeout
        self._client = client
        self._warned_unshared = False

    @property
    def provider_name(self) -> str:
        return "ollama"

    async def is_available(self) -> bool:
        return bool(self.base_url)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(
                    method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
                )
            if not self._warned_unshared:
                logger.warning("Ollama has no shared HTTP client, opening a connection per request")
                self._warned_unshared = True
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, f"{self.base_url}{path}", **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise LLMConnectionError(f"Failed to reach Ollama: {e}", provider=self.provider_name) from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(LLMConnectionError),
        reraise=True,
    )
    async def generate(
        self, prompt: str, system: str | None = None, max_tokens: int | None = None, **kwargs: Any
    ) -> str:
        payload: dict[str, Any] = {"model": self.model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system
        if max_tokens:
            payload["options"] = {"num_predict": max_tokens}

        response = await self._request("POST", "/api/generate", json=payload)
        if response.status_code >= 400:
            raise LLMError(f"Generation failed with status {response.status_code}", provider=self.provider_name)
        data = response.json()
        text = data.get("response", "")
        if not text:
            raise LLMResponseError("Empty response", provider=self.provider_name)
        return text

    async def check_health(self) -> bool:
        try:
            response = await self._request("GET", "/api/tags")
            return response.status_code == 200
        except LLMConnectionError as e:
            logger.error(f"Ollama health check failed: {e}")
            return False
