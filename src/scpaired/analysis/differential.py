"""
Paired differential signal from opposite-direction projections.

Every cell of two conditions A and B is decoded into both native spaces.
Its differential is (projected into B) - (projected into A), which gives a
per-cell, per-feature estimate of the condition effect on that same cell.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import leaves_list, linkage

from scpaired.embeddings.store import EmbeddingStore, projection_tag
from scpaired.errors import DimensionError, MissingProjectionError


@dataclass
class DifferentialSignal:
    """Per-cell differential between two conditions (rows in combined order)."""

    condition_a: str
    condition_b: str
    model_tag: str
    values: np.ndarray  # (n_cells, n_features)
    cells: pd.DataFrame  # condition, cell_id, label
    feature_names: list[str]

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]

    def to_frame(self) -> pd.DataFrame:
        index = pd.MultiIndex.from_frame(self.cells[["condition", "cell_id"]])
        return pd.DataFrame(self.values, index=index, columns=self.feature_names)

    def top_features(self, top_k: int) -> list[str]:
        """Names of the ``top_k`` most variable features."""
        return [self.feature_names[i] for i in rank_by_variance(self, top_k)]

    def mean_by_group(self, group_assignment: Sequence) -> pd.DataFrame:
        """Mean differential per group (groups x features)."""
        groups = np.asarray(group_assignment)
        if len(groups) != self.n_cells:
            raise ValueError(f"{len(groups)} group labels for {self.n_cells} cells")
        frame = pd.DataFrame(self.values, columns=self.feature_names)
        frame["group"] = groups
        return frame.groupby("group", sort=False).mean()


class PairedDifferentialEngine:
    """Derives differential signals from the projections of one trained model."""

    def __init__(self, store: EmbeddingStore, model_tag: str):
        self.store = store
        self.model_tag = model_tag

    def _condition_order(self, condition_a: str, condition_b: str) -> list[str]:
        """The pair in the model's combined order, independent of argument order."""
        if self.model_tag in self.store:
            order = list(pd.unique(self.store.get(self.model_tag).cells["condition"]))
            if condition_a in order and condition_b in order:
                return sorted([condition_a, condition_b], key=order.index)
        return sorted([condition_a, condition_b])

    def differential(self, condition_a: str, condition_b: str) -> DifferentialSignal:
        """Differential signal (in B minus in A) for the cells of A and B.

        Parameters
        ----------
        condition_a : str
            Reference condition
        condition_b : str
            Comparison condition

        Returns
        -------
        DifferentialSignal
            Rows are the cells of both conditions in combined order

        Raises
        ------
        MissingProjectionError
            If A->B, B->A, or the matching self projections were not produced
        """
        if condition_a == condition_b:
            raise ValueError("differential needs two different conditions")

        required = [
            (condition_a, condition_b),
            (condition_b, condition_a),
            (condition_a, condition_a),
            (condition_b, condition_b),
        ]
        missing = [
            projection_tag(self.model_tag, s, t)
            for s, t in required
            if not self.store.has_projection(self.model_tag, s, t)
        ]
        if missing:
            raise MissingProjectionError(
                f"differential({condition_a}, {condition_b}) needs projections {missing}; "
                "train with run_decoder=True first"
            )

        blocks = []
        cells = []
        for source in self._condition_order(condition_a, condition_b):
            in_b = self.store.projection(self.model_tag, source, condition_b)
            in_a = self.store.projection(self.model_tag, source, condition_a)
            blocks.append(np.asarray(in_b.values) - np.asarray(in_a.values))
            cells.append(in_b.cells)

        reference = self.store.projection(self.model_tag, condition_a, condition_b)
        feature_names = reference.feature_names or [
            f"feature_{i}" for i in range(reference.n_dims)
        ]

        return DifferentialSignal(
            condition_a=condition_a,
            condition_b=condition_b,
            model_tag=self.model_tag,
            values=np.vstack(blocks),
            cells=pd.concat(cells, ignore_index=True),
            feature_names=list(feature_names),
        )


def differential(
    store: EmbeddingStore, condition_a: str, condition_b: str, model_tag: str
) -> DifferentialSignal:
    """Shortcut for ``PairedDifferentialEngine(store, model_tag).differential``."""
    return PairedDifferentialEngine(store, model_tag).differential(condition_a, condition_b)


def rank_by_variance(signal: DifferentialSignal | np.ndarray, top_k: int) -> list[int]:
    """Feature indices with the highest variance across cells.

    Parameters
    ----------
    signal : DifferentialSignal or np.ndarray
        Differential signal (n_cells, n_features)
    top_k : int
        Number of features to return

    Returns
    -------
    list of int
        Exactly ``top_k`` indices, by descending sample variance; ties keep
        feature registration order
    """
    values = signal.values if isinstance(signal, DifferentialSignal) else np.asarray(signal)
    n_features = values.shape[1]
    if not 1 <= top_k <= n_features:
        raise DimensionError(f"top_k must be in [1, {n_features}], got {top_k}")

    if values.shape[0] > 1:
        variance = values.var(axis=0, ddof=1)
    else:
        variance = np.zeros(n_features)

    order = np.lexsort((np.arange(n_features), -variance))
    return [int(i) for i in order[:top_k]]


def cluster_within_group(
    signal: DifferentialSignal | np.ndarray,
    group_assignment: Sequence,
    features: Optional[Sequence[int]] = None,
    method: str = "average",
    metric: str = "euclidean",
) -> dict:
    """Hierarchical ordering of cells within each group, for presentation.

    Parameters
    ----------
    signal : DifferentialSignal or np.ndarray
        Differential signal (n_cells, n_features); never modified
    group_assignment : sequence
        Group of each cell (e.g. cell type)
    features : sequence of int, optional
        Feature columns to cluster on (e.g. from ``rank_by_variance``)
    method : str
        scipy linkage method
    metric : str
        Distance metric

    Returns
    -------
    dict
        Group -> cell row indices in dendrogram leaf order; groups in order
        of first appearance
    """
    values = signal.values if isinstance(signal, DifferentialSignal) else np.asarray(signal)
    groups = np.asarray(group_assignment)
    if len(groups) != values.shape[0]:
        raise ValueError(f"{len(groups)} group labels for {values.shape[0]} cells")

    data = values if features is None else values[:, list(features)]

    orderings = {}
    for group in pd.unique(groups):
        idx = np.flatnonzero(groups == group)
        if len(idx) < 3:
            orderings[group] = idx.tolist()
            continue
        z = linkage(data[idx], method=method, metric=metric)
        orderings[group] = idx[leaves_list(z)].tolist()

    return orderings
