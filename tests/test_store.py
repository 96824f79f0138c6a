"""
Tests for EmbeddingStore: immutability, lookup, and persistence.
"""

import numpy as np
import pandas as pd
import pytest

from scpaired.embeddings import (
    CrossProjectionResult,
    EmbeddingResult,
    EmbeddingStore,
    artifact_folder,
    projection_tag,
)
from scpaired.errors import DuplicateTagError


def _cells(condition, n, labels=True):
    return pd.DataFrame(
        {
            "condition": condition,
            "cell_id": [f"{condition}_{i}" for i in range(n)],
            "label": [f"t{i % 2}" for i in range(n)] if labels else [None] * n,
        }
    )


def _populated_store():
    store = EmbeddingStore()
    cells = pd.concat([_cells("a", 3), _cells("b", 2, labels=False)], ignore_index=True)
    store.put(EmbeddingResult(tag="m", values=np.arange(10.0).reshape(5, 2), cells=cells))
    store.put(
        CrossProjectionResult(
            tag=projection_tag("m", "a", "b"),
            model_tag="m",
            source="a",
            target="b",
            values=np.ones((3, 4)),
            cells=_cells("a", 3),
            feature_names=["w", "x", "y", "z"],
        )
    )
    return store


def test_projection_tag_format():
    assert projection_tag("aligned-cca", "young", "old") == "aligned-cca/young2old"


def test_tags_are_write_once():
    store = _populated_store()
    with pytest.raises(DuplicateTagError):
        store.put(EmbeddingResult(tag="m", values=np.zeros((5, 2)), cells=_cells("a", 5)))

    # Still the original artifact
    assert store.get("m").values[4, 1] == 9.0


def test_stored_values_are_read_only():
    store = _populated_store()
    with pytest.raises(ValueError):
        store.get("m").values[0, 0] = 100.0


def test_lookup_by_model():
    store = _populated_store()

    assert store.list_tags() == ["m", "m/a2b"]
    assert store.list_tags(model_tag="m") == ["m", "m/a2b"]
    assert store.list_tags(model_tag="other") == []
    assert store.has_model("m")
    assert store.has_projection("m", "a", "b")
    assert not store.has_projection("m", "b", "a")
    assert store.projection("m", "a", "b").n_cells == 3

    with pytest.raises(KeyError):
        store.get("m/b2a")


def test_to_frame_carries_cell_index():
    store = _populated_store()
    frame = store.get("m").to_frame()

    assert list(frame.columns) == ["latent_0", "latent_1"]
    assert frame.index.names == ["condition", "cell_id"]
    assert frame.loc[("b", "b_1"), "latent_1"] == 9.0

    projection = store.projection("m", "a", "b").to_frame()
    assert list(projection.columns) == ["w", "x", "y", "z"]


def test_save_load(tmp_path):
    store = _populated_store()
    store.save(tmp_path / "store")

    loaded = EmbeddingStore.load(tmp_path / "store")

    assert loaded.list_tags() == store.list_tags()
    np.testing.assert_allclose(loaded.get("m").values, store.get("m").values)
    assert list(loaded.get("m").cells["cell_id"]) == list(store.get("m").cells["cell_id"])
    assert loaded.get("m").cells["label"].isna().sum() == 2

    projection = loaded.projection("m", "a", "b")
    assert (projection.source, projection.target) == ("a", "b")
    assert projection.feature_names == ["w", "x", "y", "z"]


def test_save_load_keeps_dtype(tmp_path):
    store = EmbeddingStore()
    values = np.array([[1.0 + 1e-12, 2.0], [3.0, 4.0]])
    store.put(EmbeddingResult(tag="exact", values=values, cells=_cells("a", 2)))
    store.put(
        EmbeddingResult(
            tag="single", values=np.ones((2, 2), dtype=np.float32), cells=_cells("a", 2)
        )
    )
    store.save(tmp_path / "store")

    loaded = EmbeddingStore.load(tmp_path / "store")

    assert loaded.get("exact").values.dtype == np.float64
    np.testing.assert_array_equal(loaded.get("exact").values, values)
    assert loaded.get("single").values.dtype == np.float32


def test_similar_tags_get_distinct_folders(tmp_path):
    tags = ["a/b", "a__b", "a%2Fb", "..", "a.b"]
    store = EmbeddingStore()
    for i, tag in enumerate(tags):
        store.put(
            EmbeddingResult(tag=tag, values=np.full((2, 1), float(i)), cells=_cells("a", 2))
        )

    assert len({artifact_folder(tag) for tag in tags}) == len(tags)
    assert all("/" not in artifact_folder(tag) for tag in tags)
    assert artifact_folder("..") not in (".", "..")

    store.save(tmp_path / "store")
    loaded = EmbeddingStore.load(tmp_path / "store")

    assert loaded.list_tags() == tags
    for i, tag in enumerate(tags):
        assert loaded.get(tag).values[0, 0] == float(i)


def test_empty_tag_rejected():
    artifact = EmbeddingResult(tag="", values=np.zeros((2, 1)), cells=_cells("a", 2))
    with pytest.raises(ValueError):
        EmbeddingStore().put(artifact)
