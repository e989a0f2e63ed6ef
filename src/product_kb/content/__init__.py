"""Artifact content tree: validation and text extraction."""

from product_kb.content.nodes import (
    DocNode,
    NodeKind,
    Section,
    extract_text,
    parse_document,
    split_sections,
    text_to_document,
)

__all__ = [
    "DocNode",
    "NodeKind",
    "Section",
    "extract_text",
    "parse_document",
    "split_sections",
    "text_to_document",
]
