"""
Tests for FeatureSpaceReducer joint representations.
"""

import numpy as np
import pytest

from scpaired.embeddings import FeatureSpaceReducer
from scpaired.errors import ConfigError, DimensionError, SchemaError


def test_joint_pca_shares_components(paired_registry):
    reducer = FeatureSpaceReducer(paired_registry)
    results = reducer.compute_joint_representation("pcs", method="pca", target_dims=5)

    assert results["young"].shape == (60, 5)
    assert results["old"].shape == (60, 5)
    assert paired_registry.has_representation("old", "pcs")
    assert 0.0 < reducer.fitted["pcs"]["variance_explained"] <= 1.0

    # One global fit: scores are centered over all cells, not per condition
    stacked = paired_registry.stack("pcs")
    np.testing.assert_allclose(stacked.mean(axis=0), 0.0, atol=1e-8)


def test_joint_cca_unit_length_loadings(paired_registry):
    reducer = FeatureSpaceReducer(paired_registry)
    results = reducer.compute_joint_representation("cca", method="cca", target_dims=5)

    assert results["young"].shape == (60, 5)
    np.testing.assert_allclose(np.linalg.norm(results["old"], axis=1), 1.0, atol=1e-6)
    singular_values = reducer.fitted["cca"]["singular_values"]
    assert singular_values == sorted(singular_values, reverse=True)


def test_scaled_centers_each_condition(paired_registry):
    reducer = FeatureSpaceReducer(paired_registry)
    results = reducer.compute_joint_representation("scaled", method="scaled", target_dims=None)

    for name in ("young", "old"):
        assert results[name].shape == (60, 12)
        np.testing.assert_allclose(results[name].mean(axis=0), 0.0, atol=1e-8)
        np.testing.assert_allclose(results[name].std(axis=0), 1.0, atol=1e-8)


@pytest.mark.parametrize(
    "method, target_dims",
    [("pca", 13), ("cca", 30), ("scaled", 13), ("pca", 0)],
)
def test_unachievable_dims_rejected(paired_registry, method, target_dims):
    reducer = FeatureSpaceReducer(paired_registry)
    with pytest.raises(DimensionError):
        reducer.compute_joint_representation("out", method=method, target_dims=target_dims)
    assert not paired_registry.has_representation("young", "out")


def test_cca_needs_two_conditions(make_registry):
    registry = make_registry({"a": 0.0, "b": 0.5, "c": 1.0})
    with pytest.raises(ConfigError):
        FeatureSpaceReducer(registry).compute_joint_representation("cca", method="cca", target_dims=3)


def test_unknown_method_rejected(paired_registry):
    with pytest.raises(ConfigError):
        FeatureSpaceReducer(paired_registry).compute_joint_representation("x", method="umap")


def test_missing_source_representation_rejected(paired_registry):
    with pytest.raises(ConfigError):
        FeatureSpaceReducer(paired_registry).compute_joint_representation(
            "x", method="pca", target_dims=2, source_repr="pcs"
        )


def test_precomputed_representation_passthrough(paired_registry):
    reducer = FeatureSpaceReducer(paired_registry)
    reducer.add_representation("young", "custom", np.ones((60, 2)))

    assert paired_registry.representation("young", "custom").shape == (60, 2)


@pytest.mark.parametrize("repr_name", ["features", "pcs"])
def test_existing_representation_name_rejected(paired_registry, repr_name):
    reducer = FeatureSpaceReducer(paired_registry)
    reducer.compute_joint_representation("pcs", method="pca", target_dims=3)
    before = {
        name: paired_registry.representation(name, repr_name).copy()
        for name in paired_registry.conditions
    }

    with pytest.raises(SchemaError):
        reducer.compute_joint_representation(repr_name, method="scaled", target_dims=None)

    for name, matrix in before.items():
        np.testing.assert_array_equal(paired_registry.representation(name, repr_name), matrix)
    assert reducer.fitted["pcs"]["method"] == "pca"


def test_name_taken_by_one_condition_rejected(paired_registry):
    paired_registry.add_representation("old", "joint", np.zeros((60, 2)))

    with pytest.raises(SchemaError):
        FeatureSpaceReducer(paired_registry).compute_joint_representation(
            "joint", method="pca", target_dims=2
        )
    assert not paired_registry.has_representation("young", "joint")
