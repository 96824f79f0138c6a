"""Per-condition feature scaling and torch datasets for alignment training."""

import numpy as np
import torch
from torch.utils.data import Dataset


class FeatureNormalizer:
    """Z-score normalizer fitted on one condition.

    Constant features keep std 1 so they map to zero rather than NaN.
    An unfitted-but-disabled normalizer (``enabled=False``) is the identity.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.mean: np.ndarray | None = None
        self.std: np.ndarray | None = None

    def fit(self, features: np.ndarray) -> "FeatureNormalizer":
        features = np.asarray(features, dtype=np.float64)
        if self.enabled:
            self.mean = features.mean(axis=0)
            self.std = features.std(axis=0)
        else:
            self.mean = np.zeros(features.shape[1])
            self.std = np.ones(features.shape[1])

        self.std[self.std < 1e-8] = 1.0
        return self

    def transform(self, features: np.ndarray) -> np.ndarray:
        if self.mean is None:
            raise ValueError("Normalizer not fitted. Call fit() first.")
        features = np.asarray(features, dtype=np.float64)
        return ((features - self.mean) / self.std).astype(np.float32)

    def fit_transform(self, features: np.ndarray) -> np.ndarray:
        return self.fit(features).transform(features)

    def inverse_transform(self, normalized: np.ndarray) -> np.ndarray:
        """Map normalized values back to the condition's native scale."""
        if self.mean is None:
            raise ValueError("Normalizer not fitted. Call fit() first.")
        return np.asarray(normalized, dtype=np.float64) * self.std + self.mean

    def state_dict(self) -> dict:
        return {"enabled": self.enabled, "mean": self.mean, "std": self.std}

    @classmethod
    def from_state_dict(cls, state: dict) -> "FeatureNormalizer":
        normalizer = cls(enabled=state["enabled"])
        normalizer.mean = state["mean"]
        normalizer.std = state["std"]
        return normalizer


class ConditionDataset(Dataset):
    """Cells of one condition as torch tensors.

    ``features`` is the (normalized) encoder input. ``targets``, when given,
    is the (normalized) decoder representation the decoder reconstructs.
    """

    def __init__(self, features: np.ndarray, targets: np.ndarray | None = None):
        self.features = torch.from_numpy(np.ascontiguousarray(features, dtype=np.float32))
        self.targets = (
            torch.from_numpy(np.ascontiguousarray(targets, dtype=np.float32))
            if targets is not None
            else None
        )
        if self.targets is not None and len(self.targets) != len(self.features):
            raise ValueError("features and targets must have the same number of cells")

    def __len__(self) -> int:
        return len(self.features)

    def __getitem__(self, idx: int) -> dict:
        sample = {"features": self.features[idx]}
        if self.targets is not None:
            sample["targets"] = self.targets[idx]
        return sample
