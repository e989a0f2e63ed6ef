"""Hosted text-generation providers."""

from product_kb.rag.providers.claude import ClaudeLLM

__all__ = ["ClaudeLLM"]
