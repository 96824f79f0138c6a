"""scPaired: cross-condition alignment and paired differential analysis of single cells."""

__version__ = "0.1.0"

from scpaired import analysis, data, embeddings, models

__all__ = ["analysis", "data", "embeddings", "models"]
