"""Joint feature-space reductions across conditions.

Three methods are available for ``compute_joint_representation``:

1. ``pca`` - global z-scoring over all conditions stacked, then one PCA fit
   shared by every condition.
2. ``cca`` - canonical correlation between exactly two conditions. Each
   cell profile is standardized, and the SVD of the cell-by-cell
   cross-product gives loadings for the cells of both conditions at once.
3. ``scaled`` - per-condition centering and scaling of every feature, which
   removes location and scale shifts between conditions without reducing.

Results are written back into the registry as named representations so the
trainer can select them as encoder input.
"""

from typing import Literal

import numpy as np
from scipy import linalg
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler, normalize
from sklearn.utils.extmath import svd_flip

from scpaired.data.registry import DEFAULT_REPRESENTATION, DatasetRegistry
from scpaired.errors import ConfigError, DimensionError, SchemaError

JOINT_METHODS = ("pca", "cca", "scaled")


def centerscale_by_condition(registry: DatasetRegistry, source_repr: str) -> dict[str, np.ndarray]:
    """Center and scale each condition independently using StandardScaler.

    Parameters
    ----------
    registry : DatasetRegistry
        Registry holding the conditions
    source_repr : str
        Representation to scale

    Returns
    -------
    dict
        Condition name -> scaled matrix
    """
    return {
        name: StandardScaler().fit_transform(registry.representation(name, source_repr))
        for name in registry.conditions
    }


def _standardize_cells(matrix: np.ndarray) -> np.ndarray:
    """Z-score every cell profile across features."""
    centered = matrix - matrix.mean(axis=1, keepdims=True)
    std = centered.std(axis=1, ddof=1, keepdims=True)
    std[std < 1e-12] = 1.0
    return centered / std


def joint_pca(
    matrices: list[np.ndarray],
    target_dims: int,
    random_state: int = 42,
) -> tuple[list[np.ndarray], PCA]:
    """Fit one PCA on all conditions stacked.

    Parameters
    ----------
    matrices : list of np.ndarray
        Per-condition matrices sharing columns
    target_dims : int
        Number of components
    random_state : int
        Random seed for the PCA solver

    Returns
    -------
    reduced : list of np.ndarray
        Per-condition component scores
    pca : PCA
        Fitted PCA model
    """
    stacked = StandardScaler().fit_transform(np.vstack(matrices))
    rank = np.linalg.matrix_rank(stacked)
    if target_dims > rank:
        raise DimensionError(f"target_dims={target_dims} exceeds input rank {rank}")

    pca = PCA(n_components=target_dims, random_state=random_state)
    scores = pca.fit_transform(stacked)

    reduced = []
    start = 0
    for matrix in matrices:
        reduced.append(scores[start : start + len(matrix)])
        start += len(matrix)
    return reduced, pca


def joint_cca(
    matrix_a: np.ndarray,
    matrix_b: np.ndarray,
    target_dims: int,
    l2_normalize: bool = True,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Canonical correlation vectors for the cells of two conditions.

    Parameters
    ----------
    matrix_a, matrix_b : np.ndarray
        Cells x features for each condition (same features)
    target_dims : int
        Number of canonical vectors
    l2_normalize : bool
        Scale each cell's loading vector to unit length

    Returns
    -------
    loadings_a : np.ndarray
        (n_cells_a, target_dims)
    loadings_b : np.ndarray
        (n_cells_b, target_dims)
    singular_values : np.ndarray
        (target_dims,)
    """
    a = _standardize_cells(matrix_a)
    b = _standardize_cells(matrix_b)
    cross = a @ b.T / max(a.shape[1] - 1, 1)

    rank = np.linalg.matrix_rank(cross)
    if target_dims > rank:
        raise DimensionError(f"target_dims={target_dims} exceeds cross-product rank {rank}")

    u, s, vt = linalg.svd(cross, full_matrices=False)
    u, vt = svd_flip(u, vt)
    loadings_a = u[:, :target_dims]
    loadings_b = vt[:target_dims].T

    if l2_normalize:
        loadings_a = normalize(loadings_a)
        loadings_b = normalize(loadings_b)

    return loadings_a, loadings_b, s[:target_dims]


class FeatureSpaceReducer:
    """Computes and registers alternate representations of each condition."""

    def __init__(self, registry: DatasetRegistry, random_state: int = 42):
        self.registry = registry
        self.random_state = random_state
        self.fitted: dict[str, dict] = {}

    def add_representation(self, condition_name: str, repr_name: str, matrix: np.ndarray) -> None:
        """Register a precomputed representation for one condition."""
        self.registry.add_representation(condition_name, repr_name, matrix)

    def compute_joint_representation(
        self,
        repr_name: str,
        method: Literal["pca", "cca", "scaled"] = "pca",
        target_dims: int | None = 50,
        source_repr: str = DEFAULT_REPRESENTATION,
    ) -> dict[str, np.ndarray]:
        """Reduce all registered conditions jointly.

        Parameters
        ----------
        repr_name : str
            Name under which results are stored for each condition
        method : {'pca', 'cca', 'scaled'}
            Joint reduction method
        target_dims : int
            Output dimensionality (ignored by 'scaled' unless too large)
        source_repr : str
            Representation to reduce

        Returns
        -------
        dict
            Condition name -> reduced matrix, also written to the registry

        Raises
        ------
        DimensionError
            If target_dims exceeds the rank of the input
        ConfigError
            For unknown methods, missing inputs, or CCA on != 2 conditions
        SchemaError
            If any condition already has a representation called repr_name
        """
        if method not in JOINT_METHODS:
            raise ConfigError(f"Unknown method: {method}. Use one of {JOINT_METHODS}")

        conditions = self.registry.conditions
        if not conditions:
            raise ConfigError("No conditions registered")
        for name in conditions:
            if not self.registry.has_representation(name, source_repr):
                raise ConfigError(f"Condition {name} has no representation {source_repr!r}")
            if self.registry.has_representation(name, repr_name):
                raise SchemaError(f"Condition {name} already has a representation {repr_name!r}")

        matrices = [self.registry.representation(name, source_repr) for name in conditions]
        n_features = matrices[0].shape[1]
        if any(m.shape[1] != n_features for m in matrices):
            raise ConfigError(f"Representation {source_repr!r} width differs across conditions")

        if target_dims is not None and target_dims < 1:
            raise DimensionError(f"target_dims must be >= 1, got {target_dims}")

        if method == "pca":
            if target_dims is None:
                raise DimensionError("target_dims is required for pca")
            reduced, pca = joint_pca(matrices, target_dims, random_state=self.random_state)
            results = dict(zip(conditions, reduced))
            config = {
                "method": "pca",
                "target_dims": target_dims,
                "variance_explained": float(pca.explained_variance_ratio_.sum()),
            }

        elif method == "cca":
            if len(conditions) != 2:
                raise ConfigError(f"cca needs exactly two conditions, found {len(conditions)}")
            if target_dims is None:
                raise DimensionError("target_dims is required for cca")
            loadings_a, loadings_b, singular_values = joint_cca(
                matrices[0], matrices[1], target_dims
            )
            results = {conditions[0]: loadings_a, conditions[1]: loadings_b}
            config = {
                "method": "cca",
                "target_dims": target_dims,
                "singular_values": singular_values.tolist(),
            }

        else:
            if target_dims is not None and target_dims > n_features:
                raise DimensionError(
                    f"target_dims={target_dims} exceeds the {n_features} available features"
                )
            results = centerscale_by_condition(self.registry, source_repr)
            config = {"method": "scaled", "target_dims": n_features}

        for name, matrix in results.items():
            self.registry.add_representation(name, repr_name, matrix)

        config["source_repr"] = source_repr
        self.fitted[repr_name] = config
        print(f"Computed {method} representation {repr_name!r} ({config['target_dims']} dims)")
        return results
