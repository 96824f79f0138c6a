"""
Tests for per-condition feature scaling.
"""

import numpy as np

from scpaired.data import FeatureNormalizer


def test_normalizer_inverse_restores_native_scale():
    rng = np.random.default_rng(0)
    features = rng.normal(loc=5.0, scale=3.0, size=(40, 4))
    normalizer = FeatureNormalizer().fit(features)

    normalized = normalizer.transform(features)
    np.testing.assert_allclose(normalized.mean(axis=0), 0.0, atol=1e-5)
    np.testing.assert_allclose(normalizer.inverse_transform(normalized), features, atol=1e-4)


def test_constant_feature_maps_to_zero():
    features = np.column_stack([np.full(10, 7.0), np.arange(10.0)])
    normalized = FeatureNormalizer().fit_transform(features)

    assert np.all(np.isfinite(normalized))
    np.testing.assert_array_equal(normalized[:, 0], 0.0)


def test_disabled_normalizer_is_identity():
    features = np.arange(12.0).reshape(4, 3)
    normalizer = FeatureNormalizer(enabled=False).fit(features)

    np.testing.assert_array_equal(normalizer.transform(features), features)


def test_state_dict_rebuilds_normalizer():
    """Checkpoints persist normalizers through state_dict only."""
    features = np.random.default_rng(1).normal(size=(20, 3))
    normalizer = FeatureNormalizer().fit(features)

    rebuilt = FeatureNormalizer.from_state_dict(normalizer.state_dict())

    np.testing.assert_array_equal(rebuilt.transform(features), normalizer.transform(features))
    assert not hasattr(FeatureNormalizer, "save")
