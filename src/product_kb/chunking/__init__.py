"""Chunking of evidence, artifacts and module descriptions."""

from product_kb.chunking.text_chunker import ChunkConfig, TextChunker, estimate_tokens

__all__ = ["ChunkConfig", "TextChunker", "estimate_tokens"]
