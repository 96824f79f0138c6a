"""
Pytest configuration and synthetic data fixtures for scpaired tests.
"""
import os
import sys

import numpy as np
import pandas as pd
import pytest

# Add src directory to Python path so tests can import scpaired without installing
src_path = os.path.abspath(os.path.join(os.path.dirname(__file__), "../src"))
sys.path.insert(0, src_path)

from scpaired.data import DatasetRegistry  # noqa: E402
from scpaired.models import AlignmentConfig, AlignmentTrainer  # noqa: E402


def make_condition_table(
    n_cells: int, n_features: int, shift: float = 0.0, seed: int = 0, prefix: str = "cell"
) -> tuple[list[str], pd.DataFrame, np.ndarray]:
    """Gaussian cells with two label groups that differ in the first feature."""
    rng = np.random.default_rng(seed)
    values = rng.normal(size=(n_cells, n_features)) + shift
    labels = np.array(["type_a", "type_b"] * (n_cells // 2) + ["type_a"] * (n_cells % 2))
    values[labels == "type_b", 0] += 3.0
    cell_ids = [f"{prefix}_{i}" for i in range(n_cells)]
    features = pd.DataFrame(values, columns=[f"f{j}" for j in range(n_features)])
    return cell_ids, features, labels


# ==============================================================================
# Registry Fixtures
# ==============================================================================

@pytest.fixture
def make_registry():
    """
    Factory for registries of Gaussian conditions.

    Usage in tests:
        def test_something(make_registry):
            registry = make_registry({"young": 0.0, "old": 1.0}, n_cells=40)
    """

    def _make(shifts: dict[str, float], n_cells: int = 60, n_features: int = 12, seed: int = 0):
        registry = DatasetRegistry()
        for i, (name, shift) in enumerate(shifts.items()):
            cell_ids, features, labels = make_condition_table(
                n_cells, n_features, shift=shift, seed=seed + i, prefix=name
            )
            registry.register(name, cell_ids, features, labels=labels)
        return registry

    return _make


@pytest.fixture
def paired_registry(make_registry):
    """Two conditions, the second shifted by +1 in every feature."""
    return make_registry({"young": 0.0, "old": 1.0})


# ==============================================================================
# Training Fixtures
# ==============================================================================

@pytest.fixture
def fast_config():
    """Small CPU configuration that trains in well under a second."""
    return AlignmentConfig(
        steps=20,
        batch_size=16,
        architecture="small",
        latent_dim=4,
        early_stopping=False,
        convergence_window=0,
        log_every=10,
        device="cpu",
        run_decoder=True,
    )


@pytest.fixture
def trained(paired_registry, fast_config):
    """Trainer whose store holds one decoded model tagged "run"."""
    trainer = AlignmentTrainer(paired_registry)
    model = trainer.train("features", decoder_repr="features", config=fast_config, tag="run")
    return trainer, model
