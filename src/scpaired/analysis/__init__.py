"""Analysis module for differential signals and alignment quality."""

from .differential import (
    DifferentialSignal,
    PairedDifferentialEngine,
    cluster_within_group,
    differential,
    rank_by_variance,
)
from .evaluation import (
    AlignmentMetrics,
    condition_mixing_score,
    condition_separability,
    evaluate_embedding,
    label_silhouette,
    within_between_variance_ratio,
)

__all__ = [
    "DifferentialSignal",
    "PairedDifferentialEngine",
    "differential",
    "rank_by_variance",
    "cluster_within_group",
    "condition_separability",
    "condition_mixing_score",
    "within_between_variance_ratio",
    "label_silhouette",
    "evaluate_embedding",
    "AlignmentMetrics",
]
