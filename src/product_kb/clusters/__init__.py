"""Evidence clustering and section nudges."""

from product_kb.clusters.engine import (
    COMPUTE_STEPS,
    ClusterEngine,
    ComputeResult,
    Nudge,
    remove_evidence_from_clusters,
)
from product_kb.clusters.labeling import ClusterLabeler

__all__ = [
    "COMPUTE_STEPS",
    "ClusterEngine",
    "ClusterLabeler",
    "ComputeResult",
    "Nudge",
    "remove_evidence_from_clusters",
]
