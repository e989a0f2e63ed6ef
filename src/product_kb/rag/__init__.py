"""Text-generation clients used for labeling, scoring and summaries."""

from product_kb.rag.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
)
from product_kb.rag.factory import (
    get_available_providers,
    get_llm,
    get_provider,
    register_provider,
)
from product_kb.rag.llm import BaseLLM, OllamaLLM
from product_kb.rag.structured import decode_structured_text

__all__ = [
    # Base classes
    "BaseLLM",
    "OllamaLLM",
    # Factory functions
    "get_llm",
    "get_provider",
    "get_available_providers",
    "register_provider",
    "decode_structured_text",
    # Exceptions
    "LLMError",
    "LLMConnectionError",
    "LLMAuthenticationError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMProviderNotConfiguredError",
]
