"""Chunker for evidence text, artifact documents and module descriptions."""

import math
import re
from dataclasses import dataclass
from typing import Any

from product_kb.config import settings
from product_kb.content.nodes import DocNode, parse_document, split_sections

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about four characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class ChunkConfig:
    """Configuration for chunking behavior."""

    max_tokens: int = settings.CHUNK_MAX_TOKENS
    overlap_tokens: int = settings.CHUNK_OVERLAP_TOKENS

    @property
    def max_chars(self) -> int:
        return self.max_tokens * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        return self.overlap_tokens * CHARS_PER_TOKEN


class TextChunker:
    """Splits content into bounded, stably ordered chunks.

    Plain text is packed paragraph by paragraph, with a short tail of the
    previous chunk repeated at the start of the next one. Documents are
    split per heading section; sections that are still too large go
    through the plain-text path.
    """

    def __init__(self, config: ChunkConfig | None = None):
        self.config = config or ChunkConfig()

    def chunk(self, content: str | DocNode | dict[str, Any]) -> list[str]:
        """Chunk plain text or a document tree."""
        if isinstance(content, str):
            return self.chunk_text(content)
        return self.chunk_document(parse_document(content))

    def chunk_text(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []

        paragraphs: list[str] = []
        for paragraph in re.split(r"\n\s*\n", text.strip()):
            paragraph = paragraph.strip()
            if paragraph:
                paragraphs.extend(self._split_oversized(paragraph))

        chunks: list[str] = []
        current = ""
        for paragraph in paragraphs:
            candidate = f"{current}\n\n{paragraph}" if current else paragraph
            if len(candidate) <= self.config.max_chars:
                current = candidate
                continue

            chunks.append(current)
            overlap = self._overlap_tail(current)
            if overlap and len(overlap) + 2 + len(paragraph) <= self.config.max_chars:
                current = f"{overlap}\n\n{paragraph}"
            else:
                current = paragraph

        if current:
            chunks.append(current)
        return chunks

    def chunk_document(self, doc: DocNode) -> list[str]:
        chunks: list[str] = []
        for section in split_sections(doc):
            if len(section.text) <= self.config.max_chars:
                chunks.append(section.text)
            else:
                chunks.extend(self.chunk_text(section.text))
        return chunks

    def _split_oversized(self, paragraph: str) -> list[str]:
        """Break a paragraph longer than one chunk on sentence, then word, boundaries."""
        limit = self.config.max_chars
        if len(paragraph) <= limit:
            return [paragraph]

        pieces: list[str] = []
        current = ""
        for sentence in re.split(r"(?<=[.!?])\s+", paragraph):
            for word in self._hard_wrap(sentence, limit):
                candidate = f"{current} {word}" if current else word
                if len(candidate) <= limit:
                    current = candidate
                else:
                    pieces.append(current)
                    current = word
        if current:
            pieces.append(current)
        return pieces

    @staticmethod
    def _hard_wrap(sentence: str, limit: int) -> list[str]:
        if len(sentence) <= limit:
            return [sentence]
        words: list[str] = []
        for word in sentence.split():
            while len(word) > limit:
                words.append(word[:limit])
                word = word[limit:]
            if word:
                words.append(word)
        return words

    def _overlap_tail(self, chunk: str) -> str:
        """Last ``overlap_tokens`` worth of the chunk, starting on a word boundary."""
        size = self.config.overlap_chars
        if size <= 0 or len(chunk) <= size:
            return ""
        tail = chunk[-size:]
        space = tail.find(" ")
        if 0 <= space < len(tail) - 1:
            tail = tail[space + 1:]
        return tail.strip()
