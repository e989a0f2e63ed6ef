"""Evidence and artifact records."""

from product_kb.documents.service import ArtifactService, EvidenceService, index_and_link

__all__ = ["ArtifactService", "EvidenceService", "index_and_link"]
