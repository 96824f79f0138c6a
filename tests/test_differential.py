"""
Tests for the paired differential engine and its ranking/grouping helpers.
"""

import numpy as np
import pandas as pd
import pytest

from scpaired.analysis import (
    DifferentialSignal,
    PairedDifferentialEngine,
    cluster_within_group,
    differential,
    rank_by_variance,
)
from scpaired.errors import DimensionError, MissingProjectionError
from scpaired.models import AlignmentTrainer


def _signal(values, feature_names=None):
    values = np.asarray(values, dtype=float)
    n_cells, n_features = values.shape
    return DifferentialSignal(
        condition_a="a",
        condition_b="b",
        model_tag="m",
        values=values,
        cells=pd.DataFrame(
            {
                "condition": ["a"] * n_cells,
                "cell_id": [f"c{i}" for i in range(n_cells)],
                "label": [None] * n_cells,
            }
        ),
        feature_names=feature_names or [f"f{j}" for j in range(n_features)],
    )


# ==============================================================================
# Differential
# ==============================================================================

def test_differential_rows_and_values(trained, paired_registry):
    trainer, _ = trained
    store = trainer.store
    signal = differential(store, "young", "old", "run")

    assert signal.values.shape == (120, 12)
    assert list(zip(signal.cells["condition"], signal.cells["cell_id"])) == (
        paired_registry.combined_order()
    )
    np.testing.assert_allclose(
        signal.values[:60],
        store.projection("run", "young", "old").values
        - store.projection("run", "young", "young").values,
    )
    np.testing.assert_allclose(
        signal.values[60:],
        store.projection("run", "old", "old").values
        - store.projection("run", "old", "young").values,
    )


def test_differential_is_antisymmetric(trained):
    """Swapping the conditions negates the signal, rows in the same order."""
    trainer, _ = trained
    engine = PairedDifferentialEngine(trainer.store, "run")

    forward = engine.differential("young", "old")
    backward = engine.differential("old", "young")

    np.testing.assert_array_equal(forward.values, -backward.values)
    pd.testing.assert_frame_equal(forward.cells, backward.cells)


def test_differential_before_decoding_raises(paired_registry, fast_config):
    fast_config.run_decoder = False
    trainer = AlignmentTrainer(paired_registry)
    trainer.train("features", config=fast_config, tag="encoder-only")

    with pytest.raises(MissingProjectionError):
        differential(trainer.store, "young", "old", "encoder-only")


def test_differential_same_condition_rejected(trained):
    trainer, _ = trained
    with pytest.raises(ValueError):
        differential(trainer.store, "young", "young", "run")


def test_signal_frame_and_group_means(trained):
    trainer, _ = trained
    signal = differential(trainer.store, "young", "old", "run")

    frame = signal.to_frame()
    assert frame.shape == (120, 12)
    assert list(frame.columns) == [f"f{j}" for j in range(12)]

    means = signal.mean_by_group(signal.cells["label"])
    assert list(means.index) == ["type_a", "type_b"]
    np.testing.assert_allclose(
        means.loc["type_b"].to_numpy(),
        signal.values[signal.cells["label"].to_numpy() == "type_b"].mean(axis=0),
    )


# ==============================================================================
# Ranking
# ==============================================================================

def test_rank_by_variance_descending():
    rng = np.random.default_rng(0)
    values = rng.normal(size=(50, 4)) * np.array([1.0, 5.0, 0.1, 2.0])

    assert rank_by_variance(values, 4) == [1, 3, 0, 2]
    assert rank_by_variance(values, 2) == [1, 3]


def test_rank_by_variance_ties_keep_feature_order():
    values = np.array([[0.0, 1.0, 0.0, 1.0], [0.0, -1.0, 0.0, -1.0]])

    assert rank_by_variance(values, 4) == [1, 3, 0, 2]
    assert rank_by_variance(_signal(values), 3) == [1, 3, 0]


@pytest.mark.parametrize("top_k", [0, 5, -1])
def test_rank_by_variance_out_of_range(top_k):
    with pytest.raises(DimensionError):
        rank_by_variance(np.ones((3, 4)), top_k)


def test_top_features_by_name():
    signal = _signal([[0.0, 2.0, 1.0], [0.0, -2.0, -1.0]], ["x", "y", "z"])
    assert signal.top_features(2) == ["y", "z"]


# ==============================================================================
# Grouping
# ==============================================================================

def test_cluster_within_group_orders_each_group():
    rng = np.random.default_rng(1)
    values = rng.normal(size=(9, 3))
    groups = ["b", "a", "b", "a", "b", "a", "b", "a", "c"]
    signal = _signal(values)
    original = signal.values.copy()

    ordering = cluster_within_group(signal, groups)

    assert list(ordering) == ["b", "a", "c"]
    assert sorted(ordering["b"]) == [0, 2, 4, 6]
    assert sorted(ordering["a"]) == [1, 3, 5, 7]
    assert ordering["c"] == [8]
    np.testing.assert_array_equal(signal.values, original)


def test_cluster_within_group_keeps_close_cells_adjacent():
    values = np.array([[0.0], [10.0], [0.1], [10.1], [0.2]])
    ordering = cluster_within_group(values, ["g"] * 5)["g"]

    positions = {row: i for i, row in enumerate(ordering)}
    assert abs(positions[1] - positions[3]) == 1


def test_cluster_within_group_on_selected_features():
    values = np.array([[0.0, 100.0], [5.0, 0.0], [0.1, 50.0], [5.1, 25.0]])
    ordering = cluster_within_group(values, ["g"] * 4, features=[0])["g"]

    positions = {row: i for i, row in enumerate(ordering)}
    assert abs(positions[0] - positions[2]) == 1
    assert abs(positions[1] - positions[3]) == 1


def test_cluster_within_group_length_mismatch():
    with pytest.raises(ValueError):
        cluster_within_group(np.ones((3, 2)), ["a", "b"])
