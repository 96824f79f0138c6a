"""Tagged store for alignment outputs.

A trained model writes one latent embedding and, when decoding is enabled,
one cross-projection per ordered (source, target) condition pair. Artifacts
are immutable: a tag can be written once. Every artifact carries the
registry's combined cell order so it can be re-merged with metadata.

On-disk layout written by ``EmbeddingStore.save``::

    {directory}/
    ├── store.json                # tag order
    └── {percent-encoded tag}/     # one folder per tag, see artifact_folder
        ├── values.npy            # (n_cells, n_dims), dtype as stored
        ├── cells.parquet         # condition, cell_id, label
        └── manifest.json         # kind, tag, dims, source/target
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote

import numpy as np
import pandas as pd

from scpaired.errors import DuplicateTagError


def projection_tag(model_tag: str, source: str, target: str) -> str:
    """Tag of the projection of ``source`` cells into ``target``'s space."""
    return f"{model_tag}/{source}2{target}"


def artifact_folder(tag: str) -> str:
    """Directory name for ``tag``; distinct tags never share a folder.

    Every character outside letters, digits, "_", "-" and "~" is
    percent-encoded, dots included, so "a/b" and "a__b" stay apart and no
    tag maps to "." or "..".
    """
    return quote(tag, safe="").replace(".", "%2E")


@dataclass
class EmbeddingResult:
    """Latent coordinates for every registered cell, in combined order."""

    tag: str
    values: np.ndarray  # (n_cells, latent_dim)
    cells: pd.DataFrame  # condition, cell_id, label
    config: dict = field(default_factory=dict)

    kind = "embedding"

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_dims(self) -> int:
        return self.values.shape[1]

    @property
    def model_tag(self) -> str:
        return self.tag

    def rows(self, condition: str) -> np.ndarray:
        """Row indices of one condition."""
        return np.flatnonzero(self.cells["condition"].to_numpy() == condition)

    def to_frame(self) -> pd.DataFrame:
        index = pd.MultiIndex.from_frame(self.cells[["condition", "cell_id"]])
        columns = [f"latent_{i}" for i in range(self.n_dims)]
        return pd.DataFrame(self.values, index=index, columns=columns)


@dataclass
class CrossProjectionResult:
    """Cells of ``source`` decoded into ``target``'s native feature space."""

    tag: str
    model_tag: str
    source: str
    target: str
    values: np.ndarray  # (n_source_cells, n_features)
    cells: pd.DataFrame  # condition, cell_id, label of the source cells
    feature_names: list[str] = field(default_factory=list)
    config: dict = field(default_factory=dict)

    kind = "projection"

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_dims(self) -> int:
        return self.values.shape[1]

    def to_frame(self) -> pd.DataFrame:
        index = pd.MultiIndex.from_frame(self.cells[["condition", "cell_id"]])
        columns = self.feature_names or [f"feature_{i}" for i in range(self.n_dims)]
        return pd.DataFrame(self.values, index=index, columns=columns)


Artifact = Union[EmbeddingResult, CrossProjectionResult]


class EmbeddingStore:
    """Write-once mapping from tag to embedding or projection."""

    def __init__(self):
        self._artifacts: dict[str, Artifact] = {}
        self._lock = threading.Lock()

    def put(self, artifact: Artifact) -> None:
        """Store an artifact under its tag.

        Raises:
            DuplicateTagError: if the tag is already taken
            ValueError: if the tag is empty
        """
        if not artifact.tag:
            raise ValueError("Artifact tag must be a non-empty string")
        with self._lock:
            if artifact.tag in self._artifacts:
                raise DuplicateTagError(f"Tag already written: {artifact.tag}")
            artifact.values.setflags(write=False)
            self._artifacts[artifact.tag] = artifact

    def get(self, tag: str) -> Artifact:
        try:
            return self._artifacts[tag]
        except KeyError:
            raise KeyError(f"No artifact tagged {tag!r}") from None

    def __contains__(self, tag: str) -> bool:
        return tag in self._artifacts

    def __len__(self) -> int:
        return len(self._artifacts)

    def list_tags(self, model_tag: Optional[str] = None) -> list[str]:
        """Tags in insertion order, optionally only those of one trained model."""
        if model_tag is None:
            return list(self._artifacts)
        return [tag for tag, artifact in self._artifacts.items() if artifact.model_tag == model_tag]

    def has_model(self, model_tag: str) -> bool:
        """Whether any artifact was produced under ``model_tag``."""
        return any(a.model_tag == model_tag for a in self._artifacts.values())

    def has_projection(self, model_tag: str, source: str, target: str) -> bool:
        return projection_tag(model_tag, source, target) in self._artifacts

    def projection(self, model_tag: str, source: str, target: str) -> CrossProjectionResult:
        return self.get(projection_tag(model_tag, source, target))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, directory: Union[str, Path]) -> None:
        """Save every artifact in a standardized directory layout."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        for tag, artifact in self._artifacts.items():
            out = directory / artifact_folder(tag)
            out.mkdir(parents=True, exist_ok=True)

            np.save(out / "values.npy", np.asarray(artifact.values))
            cells = artifact.cells.copy()
            cells["label"] = [None if pd.isna(v) else str(v) for v in cells["label"]]
            cells.to_parquet(out / "cells.parquet")

            manifest = {
                "kind": artifact.kind,
                "tag": tag,
                "model_tag": artifact.model_tag,
                "n_cells": artifact.n_cells,
                "n_dims": artifact.n_dims,
                "dtype": str(np.asarray(artifact.values).dtype),
                "created": datetime.now().isoformat(),
                "config": artifact.config,
                "files": {"values": "values.npy", "cells": "cells.parquet"},
            }
            if isinstance(artifact, CrossProjectionResult):
                manifest["source"] = artifact.source
                manifest["target"] = artifact.target
                manifest["feature_names"] = artifact.feature_names

            with open(out / "manifest.json", "w") as f:
                json.dump(manifest, f, indent=2)

        with open(directory / "store.json", "w") as f:
            json.dump({"tags": list(self._artifacts)}, f, indent=2)

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "EmbeddingStore":
        """Load a store written by ``save``."""
        directory = Path(directory)
        with open(directory / "store.json") as f:
            tags = json.load(f)["tags"]

        store = cls()
        for tag in tags:
            folder = directory / artifact_folder(tag)
            with open(folder / "manifest.json") as f:
                manifest = json.load(f)
            values = np.load(folder / "values.npy")
            cells = pd.read_parquet(folder / "cells.parquet")

            if manifest["kind"] == "projection":
                artifact = CrossProjectionResult(
                    tag=tag,
                    model_tag=manifest["model_tag"],
                    source=manifest["source"],
                    target=manifest["target"],
                    values=values,
                    cells=cells,
                    feature_names=manifest.get("feature_names", []),
                    config=manifest.get("config", {}),
                )
            else:
                artifact = EmbeddingResult(
                    tag=tag, values=values, cells=cells, config=manifest.get("config", {})
                )
            store.put(artifact)

        return store
