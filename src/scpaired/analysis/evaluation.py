"""
Alignment quality of a latent embedding.

Conditions and labels are read here only; training never sees them.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import silhouette_samples, silhouette_score
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import StandardScaler

from scpaired.embeddings.store import EmbeddingResult


def _subsample(
    embedding: np.ndarray, labels: np.ndarray, sample_size: Optional[int], seed: int
) -> tuple[np.ndarray, np.ndarray]:
    if sample_size is not None and len(embedding) > sample_size:
        rng = np.random.default_rng(seed)
        idx = rng.choice(len(embedding), sample_size, replace=False)
        return embedding[idx], labels[idx]
    return embedding, labels


def condition_separability(
    embedding: np.ndarray,
    conditions: np.ndarray,
    test_fraction: float = 0.3,
    seed: int = 42,
) -> float:
    """
    Held-out accuracy of a classifier predicting condition from the embedding.

    Well-aligned conditions should be near chance (1 / n_conditions).

    Parameters
    ----------
    embedding : np.ndarray
        Cell embeddings, shape (n_cells, n_dims)
    conditions : np.ndarray
        Condition of each cell
    test_fraction : float
        Fraction of cells held out for scoring
    seed : int
        Random seed for the split and the classifier

    Returns
    -------
    float
        Test accuracy (lower = better alignment)
    """
    conditions = np.asarray(conditions)
    if len(np.unique(conditions)) < 2:
        return np.nan

    x_train, x_test, y_train, y_test = train_test_split(
        embedding,
        conditions,
        test_size=test_fraction,
        random_state=seed,
        stratify=conditions,
    )
    scaler = StandardScaler().fit(x_train)
    clf = LogisticRegression(max_iter=1000, random_state=seed)
    clf.fit(scaler.transform(x_train), y_train)
    return float(clf.score(scaler.transform(x_test), y_test))


def condition_mixing_score(
    embedding: np.ndarray,
    conditions: np.ndarray,
    sample_size: Optional[int] = 10000,
    seed: int = 42,
) -> float:
    """
    Condition-balanced negative silhouette (higher = better mixing).

    Per-cell silhouettes by condition are averaged within each condition
    first, then across conditions, so every condition weighs the same no
    matter how many cells it has. Subsampling draws an equal share of
    ``sample_size`` from each condition.

    Parameters
    ----------
    embedding : np.ndarray
        Cell embeddings, shape (n_cells, n_dims)
    conditions : np.ndarray
        Condition of each cell
    sample_size : int, optional
        Total cells scored. None = use all.
    seed : int
        Random seed for subsampling

    Returns
    -------
    float
        Negative mean of per-condition mean silhouettes
    """
    conditions = np.asarray(conditions)
    names = np.unique(conditions)
    if len(names) < 2:
        return np.nan

    rng = np.random.default_rng(seed)
    per_condition = None if sample_size is None else max(sample_size // len(names), 1)
    rows = []
    for name in names:
        idx = np.flatnonzero(conditions == name)
        if per_condition is not None and len(idx) > per_condition:
            idx = np.sort(rng.choice(idx, per_condition, replace=False))
        rows.append(idx)
    rows = np.concatenate(rows)
    if len(rows) <= len(names):
        return np.nan

    scores = silhouette_samples(embedding[rows], conditions[rows])
    per_condition_mean = pd.Series(scores).groupby(conditions[rows]).mean()
    return -float(per_condition_mean.mean())


def within_between_variance_ratio(embedding: np.ndarray, conditions: np.ndarray) -> float:
    """
    Pooled within-condition variance over between-condition variance.

    Both terms are per-dimension averages weighted by condition size, the
    two halves of the one-way variance decomposition of the embedding.
    Higher = conditions explain less of the variance. Conditions with a
    single cell are left out; identical condition means give ``inf``.
    """
    grouped = pd.DataFrame(embedding).groupby(np.asarray(conditions))
    sizes = grouped.size()
    sizes = sizes[sizes > 1]
    if len(sizes) < 2:
        return np.nan

    within = grouped.var(ddof=0).loc[sizes.index].mean(axis=1)
    offsets = grouped.mean().loc[sizes.index] - np.asarray(embedding).mean(axis=0)
    between = (offsets**2).mean(axis=1)

    within_var = float(np.average(within, weights=sizes))
    between_var = float(np.average(between, weights=sizes))
    if between_var == 0.0:
        return np.inf
    return within_var / between_var


def label_silhouette(
    embedding: np.ndarray,
    labels: np.ndarray,
    sample_size: Optional[int] = 10000,
    seed: int = 42,
) -> float:
    """Silhouette by cell label (higher = labels stay separated after alignment).

    Cells without a label are ignored.
    """
    labels = pd.Series(labels, dtype=object)
    keep = labels.notna().to_numpy()
    embedding, labels = _subsample(
        embedding[keep], labels[keep].astype(str).to_numpy(), sample_size, seed
    )
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels >= len(labels):
        return np.nan
    return float(silhouette_score(embedding, labels))


@dataclass
class AlignmentMetrics:
    """Alignment metrics of one embedding."""

    tag: str
    separability: float
    mixing_score: float
    variance_ratio: float
    label_silhouette: float

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "condition_separability": self.separability,
            "condition_mixing_score": self.mixing_score,
            "variance_ratio": self.variance_ratio,
            "label_silhouette": self.label_silhouette,
        }


def evaluate_embedding(
    result: EmbeddingResult | list[EmbeddingResult],
    test_fraction: float = 0.3,
    sample_size: int = 10000,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Alignment metrics for one or more stored embeddings.

    Parameters
    ----------
    result : EmbeddingResult or list of EmbeddingResult
        Embeddings to score
    test_fraction : float
        Held-out fraction for the separability classifier
    sample_size : int
        Subsample size for silhouette scores
    seed : int
        Random seed

    Returns
    -------
    pd.DataFrame
        One row of metrics per embedding
    """
    results = [result] if isinstance(result, EmbeddingResult) else list(result)

    rows = []
    for res in results:
        print(f"Computing alignment metrics for {res.tag}...")
        embedding = np.asarray(res.values, dtype=np.float64)
        conditions = res.cells["condition"].to_numpy()

        metrics = AlignmentMetrics(
            tag=res.tag,
            separability=condition_separability(
                embedding, conditions, test_fraction=test_fraction, seed=seed
            ),
            mixing_score=condition_mixing_score(
                embedding, conditions, sample_size=sample_size, seed=seed
            ),
            variance_ratio=within_between_variance_ratio(embedding, conditions),
            label_silhouette=label_silhouette(
                embedding, res.cells["label"].to_numpy(), sample_size=sample_size, seed=seed
            ),
        )
        rows.append(metrics.to_dict())

    return pd.DataFrame(rows)
