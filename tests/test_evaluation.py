"""
Tests for alignment evaluation metrics, including the identical-distribution
end-to-end scenario.
"""

import numpy as np
import pandas as pd
import pytest
from sklearn.metrics import silhouette_samples

from scpaired.analysis import (
    condition_mixing_score,
    condition_separability,
    evaluate_embedding,
    label_silhouette,
    within_between_variance_ratio,
)
from scpaired.data import DatasetRegistry
from scpaired.embeddings import EmbeddingResult
from scpaired.models import AlignmentConfig, AlignmentTrainer


def _two_clouds(offset, n=100, dims=5, seed=0):
    rng = np.random.default_rng(seed)
    embedding = np.vstack([rng.normal(size=(n, dims)), rng.normal(size=(n, dims)) + offset])
    conditions = np.array(["a"] * n + ["b"] * n)
    return embedding, conditions


def test_separability_tracks_condition_offset():
    separated, conditions = _two_clouds(offset=5.0)
    mixed, _ = _two_clouds(offset=0.0)

    assert condition_separability(separated, conditions, seed=0) > 0.95
    assert condition_separability(mixed, conditions, seed=0) < 0.75


def test_mixing_and_variance_ratio_favor_mixed_conditions():
    separated, conditions = _two_clouds(offset=5.0)
    mixed, _ = _two_clouds(offset=0.0)

    assert condition_mixing_score(mixed, conditions) > condition_mixing_score(
        separated, conditions
    )
    assert within_between_variance_ratio(mixed, conditions) > within_between_variance_ratio(
        separated, conditions
    )


def test_variance_ratio_matches_decomposition():
    embedding = np.array([[0.0], [2.0], [4.0], [6.0]])
    conditions = np.array(["a", "a", "b", "b"])

    # Within: each condition has variance 1. Between: means 1 and 5 around 3.
    assert within_between_variance_ratio(embedding, conditions) == pytest.approx(0.25)


def test_variance_ratio_infinite_for_identical_means():
    embedding = np.array([[0.0], [2.0], [2.0], [0.0]])
    assert within_between_variance_ratio(embedding, ["a", "a", "b", "b"]) == np.inf


def test_mixing_score_weighs_conditions_equally():
    rng = np.random.default_rng(3)
    embedding = np.vstack([rng.normal(size=(150, 2)), rng.normal(size=(15, 2)) + 4.0])
    conditions = np.array(["big"] * 150 + ["small"] * 15)

    scores = silhouette_samples(embedding, conditions)
    expected = -np.mean([scores[:150].mean(), scores[150:].mean()])

    assert condition_mixing_score(embedding, conditions, sample_size=None) == pytest.approx(
        expected
    )


def test_mixing_score_subsamples_each_condition():
    embedding, conditions = _two_clouds(offset=5.0, n=100)
    score = condition_mixing_score(embedding, conditions, sample_size=40, seed=0)

    assert np.isfinite(score)
    assert score < -0.5


def test_single_condition_metrics_are_nan():
    embedding = np.random.default_rng(0).normal(size=(20, 3))
    conditions = np.array(["a"] * 20)

    assert np.isnan(condition_separability(embedding, conditions))
    assert np.isnan(condition_mixing_score(embedding, conditions))
    assert np.isnan(within_between_variance_ratio(embedding, conditions))


def test_label_silhouette_ignores_missing_labels():
    embedding, _ = _two_clouds(offset=5.0, n=20)
    labels = np.array(["x"] * 20 + ["y"] * 20, dtype=object)
    labels[:5] = None

    assert label_silhouette(embedding, labels) > 0.5
    assert np.isnan(label_silhouette(embedding, [None] * 40))


def test_evaluate_embedding_one_row_per_result():
    embedding, conditions = _two_clouds(offset=0.0, n=30)
    cells = pd.DataFrame(
        {
            "condition": conditions,
            "cell_id": [f"c{i}" for i in range(60)],
            "label": ["x", "y"] * 30,
        }
    )
    results = [
        EmbeddingResult(tag="one", values=embedding, cells=cells),
        EmbeddingResult(tag="two", values=embedding * 2.0, cells=cells),
    ]

    metrics = evaluate_embedding(results)

    assert list(metrics["tag"]) == ["one", "two"]
    assert {
        "condition_separability",
        "condition_mixing_score",
        "variance_ratio",
        "label_silhouette",
    } <= set(metrics.columns)


def test_identical_conditions_align_near_chance():
    """Two draws from one distribution stay indistinguishable after alignment."""
    rng = np.random.default_rng(7)
    registry = DatasetRegistry()
    for name in ("a", "b"):
        registry.register(name, [f"{name}_{i}" for i in range(100)], rng.normal(size=(100, 50)))

    config = AlignmentConfig(
        steps=30,
        batch_size=32,
        architecture="small",
        latent_dim=8,
        early_stopping=False,
        convergence_window=0,
        log_every=100,
        device="cpu",
    )
    trainer = AlignmentTrainer(registry)
    model = trainer.train("features", config=config)

    embedding = trainer.store.get(model.tag)
    accuracy = condition_separability(
        embedding.values, embedding.cells["condition"].to_numpy(), seed=0
    )
    assert accuracy < 0.7
