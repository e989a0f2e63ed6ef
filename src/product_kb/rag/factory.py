"""Text-generation provider factory with registry pattern."""

import logging
from typing import Callable

import httpx

from product_kb.config import settings
from product_kb.rag.exceptions import LLMProviderNotConfiguredError
from product_kb.rag.llm import BaseLLM

logger = logging.getLogger(__name__)

# Provider registry: maps provider names to factories taking an optional shared client
_PROVIDER_REGISTRY: dict[str, Callable[..., BaseLLM]] = {}


def register_provider(name: str) -> Callable[[Callable[..., BaseLLM]], Callable[..., BaseLLM]]:
    """Decorator to register a provider factory.

    Usage:
        @register_provider("my_provider")
        def _create_my_provider(client=None):
            from product_kb.rag.providers.my_provider import MyProviderLLM
            return MyProviderLLM(client=client)
    """

    def decorator(factory: Callable[..., BaseLLM]) -> Callable[..., BaseLLM]:
        _PROVIDER_REGISTRY[name.lower()] = factory
        logger.debug(f"Registered LLM provider: {name}")
        return factory

    return decorator


def get_available_providers() -> list[str]:
    return list(_PROVIDER_REGISTRY.keys())


def get_provider(name: str, client: httpx.AsyncClient | None = None) -> BaseLLM:
    """Get a provider instance by name.

    Raises:
        LLMProviderNotConfiguredError: If provider is not registered
    """
    name_lower = name.lower()
    if name_lower not in _PROVIDER_REGISTRY:
        available = ", ".join(get_available_providers())
        raise LLMProviderNotConfiguredError(
            f"Unknown provider '{name}'. Available: {available}",
            provider=name,
        )

    return _PROVIDER_REGISTRY[name_lower](client=client)


async def get_llm(provider: str | None = None, client: httpx.AsyncClient | None = None) -> BaseLLM:
    """Get a text-generation client (main entry point).

    Selection order:
    1. Use specified provider if given
    2. Use LLM_PROVIDER from config if set
    3. Claude if an API key exists, else Ollama

    Raises:
        LLMProviderNotConfiguredError: If no provider is available
    """
    provider_name = provider or settings.LLM_PROVIDER

    if provider_name:
        llm = get_provider(provider_name, client=client)
        if await llm.is_available():
            logger.info(f"Using LLM provider: {llm.provider_name}")
            return llm
        logger.warning(f"Configured provider '{provider_name}' not available")

    if settings.ANTHROPIC_API_KEY:
        llm = get_provider("claude", client=client)
        if await llm.is_available():
            logger.info("Auto-selected Claude LLM provider")
            return llm

    llm = get_provider("ollama", client=client)
    if await llm.is_available():
        logger.info("Auto-selected Ollama LLM provider")
        return llm

    raise LLMProviderNotConfiguredError(
        "No LLM provider is configured or available. "
        "Set ANTHROPIC_API_KEY for Claude or OLLAMA_BASE_URL for Ollama.",
        provider="none",
    )


@register_provider("ollama")
def _create_ollama(client: httpx.AsyncClient | None = None) -> BaseLLM:
    from product_kb.rag.llm import OllamaLLM

    return OllamaLLM(client=client)


@register_provider("claude")
def _create_claude(client: httpx.AsyncClient | None = None) -> BaseLLM:
    from product_kb.rag.providers.claude import ClaudeLLM

    return ClaudeLLM(client=client)
