"""Joint representations and the tagged embedding store.

Example Usage:
    from scpaired.embeddings import FeatureSpaceReducer, EmbeddingStore

    reducer = FeatureSpaceReducer(registry)
    reducer.compute_joint_representation("cca", method="cca", target_dims=20)

    store = EmbeddingStore()
    ...  # trainer writes "aligned-cca", "aligned-cca/young2old", ...
    store.get("aligned-cca/young2old").to_frame()
"""

from scpaired.embeddings.reduce import (
    JOINT_METHODS,
    FeatureSpaceReducer,
    centerscale_by_condition,
    joint_cca,
    joint_pca,
)
from scpaired.embeddings.store import (
    CrossProjectionResult,
    EmbeddingResult,
    EmbeddingStore,
    artifact_folder,
    projection_tag,
)

__all__ = [
    # Reducer
    "JOINT_METHODS",
    "FeatureSpaceReducer",
    "centerscale_by_condition",
    "joint_cca",
    "joint_pca",
    # Store
    "EmbeddingStore",
    "EmbeddingResult",
    "CrossProjectionResult",
    "projection_tag",
    "artifact_folder",
]
