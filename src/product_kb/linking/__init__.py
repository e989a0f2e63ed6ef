"""Links between evidence, artifacts and codebase modules."""

from product_kb.linking.auto_link import (
    RELATED_TO,
    AutoLinker,
    delete_links_for_source,
    links_for_source,
)

__all__ = ["RELATED_TO", "AutoLinker", "delete_links_for_source", "links_for_source"]
