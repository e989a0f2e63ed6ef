"""Context assembly over similarity search."""

from product_kb.search.context import (
    AssembledContext,
    ContextAssembler,
    ResultAllocation,
    allocate,
)
from product_kb.search.sections import SectionConfig, get_section_config

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "ResultAllocation",
    "SectionConfig",
    "allocate",
    "get_section_config",
]
