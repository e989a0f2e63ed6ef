"""Artifact content tree.

Artifacts store rich-text content as a tree of typed nodes. The tree is
validated when it enters the system (API request or service call), so the
chunker and summarizers can rely on its shape instead of probing loose
dictionaries.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from product_kb.exceptions import ContentValidationError


class NodeKind(str, Enum):
    """Node types understood by the knowledge base."""

    DOC = "doc"
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    TEXT = "text"
    BULLET_LIST = "bullet_list"
    ORDERED_LIST = "ordered_list"
    LIST_ITEM = "list_item"
    TASK_LIST = "task_list"
    TASK_ITEM = "task_item"
    BLOCKQUOTE = "blockquote"
    CODE_BLOCK = "code_block"
    HARD_BREAK = "hard_break"
    HORIZONTAL_RULE = "horizontal_rule"


# Kinds whose children are inline text rather than blocks
INLINE_CONTAINERS = {NodeKind.PARAGRAPH, NodeKind.HEADING, NodeKind.CODE_BLOCK}
# Kinds that never have children
LEAF_KINDS = {NodeKind.TEXT, NodeKind.HARD_BREAK, NodeKind.HORIZONTAL_RULE}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _normalize_kind(value: Any) -> Any:
    """Accept editor camelCase names (``bulletList``) as well as snake_case."""
    if isinstance(value, str):
        return _CAMEL_RE.sub("_", value).lower()
    return value


class DocNode(BaseModel):
    """A node of the artifact content tree."""

    model_config = ConfigDict(extra="ignore")

    type: NodeKind
    content: list["DocNode"] = Field(default_factory=list)
    text: str | None = None
    attrs: dict[str, Any] = Field(default_factory=dict)
    marks: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        return _normalize_kind(value)

    @model_validator(mode="after")
    def check_shape(self) -> "DocNode":
        if self.type == NodeKind.TEXT:
            if not self.text:
                raise ValueError("text node requires non-empty text")
            if self.content:
                raise ValueError("text node cannot have children")
            return self

        if self.text is not None:
            raise ValueError(f"{self.type.value} node cannot carry text")
        if self.type in LEAF_KINDS and self.content:
            raise ValueError(f"{self.type.value} node cannot have children")
        if self.type == NodeKind.DOC:
            return self

        if self.type in INLINE_CONTAINERS:
            for child in self.content:
                if child.type not in (NodeKind.TEXT, NodeKind.HARD_BREAK):
                    raise ValueError(
                        f"{self.type.value} node may only contain inline nodes, got {child.type.value}"
                    )
        elif any(child.type == NodeKind.TEXT for child in self.content):
            raise ValueError(f"{self.type.value} node cannot contain bare text")

        if self.type == NodeKind.HEADING:
            level = self.attrs.get("level", 1)
            if not isinstance(level, int) or not 1 <= level <= 6:
                raise ValueError("heading level must be an integer between 1 and 6")
        return self

    @property
    def heading_level(self) -> int:
        return int(self.attrs.get("level", 1))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage, dropping empty optional fields."""
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


def parse_document(data: Any) -> DocNode:
    """Validate raw content and return the document tree.

    Raises:
        ContentValidationError: If the data is not a well-formed ``doc`` tree
    """
    if isinstance(data, DocNode):
        node = data
    else:
        try:
            node = DocNode.model_validate(data)
        except ValidationError as e:
            raise ContentValidationError(f"Invalid artifact content: {e.errors()[0]['msg']}") from e

    if node.type != NodeKind.DOC:
        raise ContentValidationError(f"Artifact content root must be 'doc', got '{node.type.value}'")
    return node


def text_to_document(text: str) -> DocNode:
    """Convert plain text (blank-line separated paragraphs) into a document."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    return DocNode(
        type=NodeKind.DOC,
        content=[
            DocNode(type=NodeKind.PARAGRAPH, content=[DocNode(type=NodeKind.TEXT, text=p)])
            for p in paragraphs
        ],
    )


def _inline_text(node: DocNode) -> str:
    parts = []
    for child in node.content:
        if child.type == NodeKind.TEXT:
            parts.append(child.text or "")
        elif child.type == NodeKind.HARD_BREAK:
            parts.append("\n")
    return "".join(parts)


def _render(node: DocNode) -> str:
    if node.type == NodeKind.TEXT:
        return node.text or ""
    if node.type in (NodeKind.HARD_BREAK, NodeKind.HORIZONTAL_RULE):
        return ""
    if node.type in INLINE_CONTAINERS:
        return _inline_text(node)
    if node.type in (NodeKind.BULLET_LIST, NodeKind.ORDERED_LIST, NodeKind.TASK_LIST):
        items = [_render(child) for child in node.content]
        return "\n".join(f"- {item}" for item in items if item)
    if node.type in (NodeKind.LIST_ITEM, NodeKind.TASK_ITEM):
        return " ".join(r for r in (_render(child) for child in node.content) if r)

    # doc, blockquote
    return "\n\n".join(r for r in (_render(child) for child in node.content) if r)


def extract_text(node: DocNode) -> str:
    """Flatten a document tree to plain text."""
    return _render(node).strip()


@dataclass
class Section:
    """A heading and the blocks that follow it, up to the next heading."""

    heading: str | None
    level: int
    text: str


def split_sections(doc: DocNode) -> list[Section]:
    """Split a document into heading-delimited sections.

    Content before the first heading forms a section with no heading.
    Each section's text starts with its heading line.
    """
    sections: list[Section] = []
    heading: str | None = None
    level = 0
    body: list[str] = []

    def flush() -> None:
        parts = ([heading] if heading else []) + body
        text = "\n\n".join(p for p in parts if p).strip()
        if text:
            sections.append(Section(heading=heading, level=level, text=text))

    for block in doc.content:
        if block.type == NodeKind.HEADING:
            flush()
            heading = _inline_text(block).strip() or None
            level = block.heading_level
            body = []
        else:
            rendered = _render(block).strip()
            if rendered:
                body.append(rendered)
    flush()

    return sections
