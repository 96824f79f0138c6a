"""Registry of per-condition single-cell matrices.

Conditions are appended in a fixed order that every downstream artifact
(embeddings, projections, differential signals) follows. The combined
ordering is backed by an explicit offset table built at registration time,
so it never depends on container iteration order.

Each condition owns a table of named representations. The registered
matrix itself is stored under ``DEFAULT_REPRESENTATION``; reduced or
precomputed views are added by the feature-space reducer.
"""

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from scpaired.errors import SchemaError

DEFAULT_REPRESENTATION = "features"


@dataclass
class Condition:
    """One experimental condition (e.g. "young", "old")."""

    name: str
    cell_ids: list[str]
    labels: np.ndarray | None = None
    representations: dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)


@dataclass(frozen=True)
class ConditionHandle:
    """Read-only reference to a registered condition."""

    name: str
    index: int
    start: int
    stop: int

    @property
    def n_cells(self) -> int:
        return self.stop - self.start

    @property
    def rows(self) -> slice:
        """Rows of this condition inside any combined matrix."""
        return slice(self.start, self.stop)


class DatasetRegistry:
    """Append-only collection of conditions sharing one feature set."""

    def __init__(self):
        self._conditions: dict[str, Condition] = {}
        self._handles: list[ConditionHandle] = []
        self._feature_names: list[str] | None = None
        self._n_cells = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        condition_name: str,
        cell_ids: Sequence[str],
        feature_matrix: pd.DataFrame | np.ndarray,
        labels: Sequence | None = None,
        feature_names: Sequence[str] | None = None,
    ) -> ConditionHandle:
        """Register a condition.

        Args:
            condition_name: Unique condition name
            cell_ids: Cell identifiers, one per matrix row
            feature_matrix: Cells x features matrix. DataFrame columns are
                used as feature names.
            labels: Optional per-cell labels (evaluation only)
            feature_names: Column names when ``feature_matrix`` is an array

        Returns:
            Handle with the condition's position in the combined order

        Raises:
            SchemaError: if names, shapes, or feature sets are inconsistent
        """
        if condition_name in self._conditions:
            raise SchemaError(f"Condition already registered: {condition_name}")

        if isinstance(feature_matrix, pd.DataFrame):
            if feature_names is None:
                feature_names = [str(c) for c in feature_matrix.columns]
            matrix = feature_matrix.to_numpy(dtype=np.float64)
        else:
            matrix = np.asarray(feature_matrix, dtype=np.float64)

        if matrix.ndim != 2:
            raise SchemaError(f"Feature matrix must be 2-D, got shape {matrix.shape}")
        if not np.all(np.isfinite(matrix)):
            raise SchemaError(f"Feature matrix for {condition_name} contains NaN or Inf")

        if feature_names is None:
            feature_names = [f"feature_{i}" for i in range(matrix.shape[1])]
        feature_names = [str(f) for f in feature_names]
        if len(feature_names) != matrix.shape[1]:
            raise SchemaError(
                f"{len(feature_names)} feature names for {matrix.shape[1]} columns"
            )
        if len(set(feature_names)) != len(feature_names):
            raise SchemaError("Feature names must be unique")

        cell_ids = [str(c) for c in cell_ids]
        if len(cell_ids) != matrix.shape[0]:
            raise SchemaError(
                f"{len(cell_ids)} cell ids for {matrix.shape[0]} rows in {condition_name}"
            )
        if len(set(cell_ids)) != len(cell_ids):
            raise SchemaError(f"Duplicate cell ids in {condition_name}")

        if labels is not None:
            labels = np.asarray(labels)
            if len(labels) != len(cell_ids):
                raise SchemaError(
                    f"{len(labels)} labels for {len(cell_ids)} cells in {condition_name}"
                )

        matrix = self._align_features(condition_name, matrix, feature_names)

        condition = Condition(
            name=condition_name,
            cell_ids=cell_ids,
            labels=labels,
            representations={DEFAULT_REPRESENTATION: matrix},
        )
        handle = ConditionHandle(
            name=condition_name,
            index=len(self._handles),
            start=self._n_cells,
            stop=self._n_cells + condition.n_cells,
        )

        self._conditions[condition_name] = condition
        self._handles.append(handle)
        self._n_cells = handle.stop
        return handle

    def _align_features(
        self, condition_name: str, matrix: np.ndarray, feature_names: list[str]
    ) -> np.ndarray:
        """Reorder columns to the registry's feature order."""
        if self._feature_names is None:
            self._feature_names = feature_names
            return matrix

        if set(feature_names) != set(self._feature_names):
            missing = sorted(set(self._feature_names) - set(feature_names))
            extra = sorted(set(feature_names) - set(self._feature_names))
            raise SchemaError(
                f"Features of {condition_name} disagree with registered conditions "
                f"(missing {len(missing)}: {missing[:5]}, extra {len(extra)}: {extra[:5]})"
            )

        if feature_names == self._feature_names:
            return matrix

        position = {name: i for i, name in enumerate(feature_names)}
        order = [position[name] for name in self._feature_names]
        return matrix[:, order]

    def add_representation(self, condition_name: str, repr_name: str, matrix: np.ndarray) -> None:
        """Store a new named representation of a condition's cells.

        Representations are never replaced; pick a fresh name instead.
        """
        condition = self.condition(condition_name)
        if repr_name in condition.representations:
            raise SchemaError(
                f"Representation {repr_name!r} already exists for {condition_name}"
            )
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise SchemaError(f"Representation must be 2-D, got shape {matrix.shape}")
        if matrix.shape[0] != condition.n_cells:
            raise SchemaError(
                f"Representation {repr_name!r} has {matrix.shape[0]} rows, "
                f"{condition_name} has {condition.n_cells} cells"
            )
        if not np.all(np.isfinite(matrix)):
            raise SchemaError(f"Representation {repr_name!r} contains NaN or Inf")
        condition.representations[repr_name] = matrix

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def conditions(self) -> list[str]:
        """Condition names in registration order."""
        return [h.name for h in self._handles]

    @property
    def feature_names(self) -> list[str]:
        return list(self._feature_names or [])

    @property
    def n_cells(self) -> int:
        return self._n_cells

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, condition_name: str) -> bool:
        return condition_name in self._conditions

    def condition(self, condition_name: str) -> Condition:
        try:
            return self._conditions[condition_name]
        except KeyError:
            raise SchemaError(f"Unknown condition: {condition_name}") from None

    def handle(self, condition_name: str) -> ConditionHandle:
        self.condition(condition_name)
        return next(h for h in self._handles if h.name == condition_name)

    def offsets(self, condition_name: str) -> slice:
        """Rows of a condition inside combined matrices."""
        return self.handle(condition_name).rows

    def has_representation(self, condition_name: str, repr_name: str) -> bool:
        return repr_name in self.condition(condition_name).representations

    def representation(self, condition_name: str, repr_name: str) -> np.ndarray:
        condition = self.condition(condition_name)
        if repr_name not in condition.representations:
            raise KeyError(f"No representation {repr_name!r} for condition {condition_name}")
        return condition.representations[repr_name]

    def representations(self, condition_name: str) -> list[str]:
        return list(self.condition(condition_name).representations)

    def labels(self, condition_name: str) -> np.ndarray | None:
        return self.condition(condition_name).labels

    def combined_order(self) -> list[tuple[str, str]]:
        """Canonical (condition, cell_id) order for every combined artifact."""
        order = []
        for handle in self._handles:
            order.extend((handle.name, cell_id) for cell_id in self._conditions[handle.name].cell_ids)
        return order

    def cell_metadata(self, conditions: Sequence[str] | None = None) -> pd.DataFrame:
        """Per-cell metadata (condition, cell_id, label) in combined order.

        Args:
            conditions: Restrict to these conditions (kept in registry order)
        """
        keep = set(self.conditions if conditions is None else conditions)
        frames = []
        for handle in self._handles:
            if handle.name not in keep:
                continue
            condition = self._conditions[handle.name]
            labels = condition.labels if condition.labels is not None else [None] * condition.n_cells
            frames.append(
                pd.DataFrame(
                    {
                        "condition": handle.name,
                        "cell_id": condition.cell_ids,
                        "label": list(labels),
                    }
                )
            )
        if not frames:
            return pd.DataFrame(columns=["condition", "cell_id", "label"])
        return pd.concat(frames, ignore_index=True)

    def stack(self, repr_name: str, conditions: Sequence[str] | None = None) -> np.ndarray:
        """Stack one representation across conditions in combined order."""
        names = self.conditions if conditions is None else [
            c for c in self.conditions if c in set(conditions)
        ]
        return np.vstack([self.representation(name, repr_name) for name in names])
