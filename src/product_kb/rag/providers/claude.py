"""Claude (Anthropic) text-generation client using raw httpx."""

import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from product_kb.config import settings
from product_kb.rag.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
)
from product_kb.rag.llm import BaseLLM
from product_kb.rag.structured import validate_structured

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
STRUCTURED_TOOL_NAME = "record_result"


class ClaudeLLM(BaseLLM):
    """Claude client for the Anthropic Messages API.

    Structured output uses a forced tool call whose input schema is the
    requested pydantic model, so responses never need free-text parsing.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_tokens: int = 1024,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT
        self.max_tokens = max_tokens
        self._client = client
        self._warned_unshared = False

        if not self.api_key:
            logger.warning("Claude API key not configured")

    @property
    def provider_name(self) -> str:
        return "claude"

    async def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                ANTHROPIC_API_URL, headers=self._get_headers(), json=payload, timeout=self.timeout
            )
        if not self._warned_unshared:
            logger.warning("Claude has no shared HTTP client, opening a connection per request")
            self._warned_unshared = True
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(ANTHROPIC_API_URL, headers=self._get_headers(), json=payload)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((LLMConnectionError, LLMRateLimitError)),
        reraise=True,
    )
    async def _messages(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Call the Messages API and return the decoded body.

        Raises:
            LLMAuthenticationError: If API key is invalid
            LLMRateLimitError: If rate limit is exceeded
            LLMConnectionError: If connection fails or the service is overloaded
        """
        if not self.api_key:
            raise LLMAuthenticationError("API key not configured", provider=self.provider_name)

        try:
            response = await self._post({"model": self.model, **payload})
        except httpx.ConnectError as e:
            raise LLMConnectionError(f"Failed to connect: {e}", provider=self.provider_name) from e
        except httpx.TimeoutException as e:
            raise LLMConnectionError(f"Request timed out: {e}", provider=self.provider_name) from e

        if response.status_code == 401:
            raise LLMAuthenticationError("Invalid API key", provider=self.provider_name)
        elif response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise LLMRateLimitError(
                "Rate limit exceeded",
                provider=self.provider_name,
                retry_after=float(retry_after) if retry_after else None,
            )
        elif response.status_code >= 500:
            raise LLMConnectionError(
                f"Service error {response.status_code}", provider=self.provider_name
            )
        elif response.status_code >= 400:
            raise LLMError(
                f"Request rejected ({response.status_code}): {response.text[:200]}",
                provider=self.provider_name,
            )

        return response.json()

    def _base_payload(self, prompt: str, system: str | None, max_tokens: int | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "max_tokens": max_tokens or self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        return payload

    async def generate(
        self, prompt: str, system: str | None = None, max_tokens: int | None = None, **kwargs: Any
    ) -> str:
        data = await self._messages(self._base_payload(prompt, system, max_tokens))

        text_parts = [
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        ]
        return "".join(text_parts)

    async def generate_structured(
        self, prompt: str, schema: type[T], system: str | None = None, **kwargs: Any
    ) -> T:
        payload = self._base_payload(prompt, system, kwargs.get("max_tokens"))
        payload["tools"] = [
            {
                "name": STRUCTURED_TOOL_NAME,
                "description": f"Record the {schema.__name__} result.",
                "input_schema": schema.model_json_schema(),
            }
        ]
        payload["tool_choice"] = {"type": "tool", "name": STRUCTURED_TOOL_NAME}

        data = await self._messages(payload)
        for block in data.get("content", []):
            if block.get("type") == "tool_use" and block.get("name") == STRUCTURED_TOOL_NAME:
                return validate_structured(block.get("input", {}), schema, self.provider_name)

        raise LLMResponseError("Response contained no structured result", provider=self.provider_name)

    async def check_health(self) -> bool:
        """Verify the key is set and a minimal request is accepted."""
        if not self.api_key:
            logger.warning("Claude health check: No API key configured")
            return False

        try:
            response = await self._post(
                {
                    "model": self.model,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}],
                }
            )
            logger.info(f"Claude health check status: {response.status_code}")
            return response.status_code in (200, 400)
        except httpx.HTTPError as e:
            logger.error(f"Claude health check failed: {type(e).__name__}: {e}")
            return False
