"""Condition registry and feature utilities."""

from scpaired.data.features import ConditionDataset, FeatureNormalizer
from scpaired.data.registry import (
    DEFAULT_REPRESENTATION,
    Condition,
    ConditionHandle,
    DatasetRegistry,
)

__all__ = [
    "DEFAULT_REPRESENTATION",
    "Condition",
    "ConditionHandle",
    "DatasetRegistry",
    "FeatureNormalizer",
    "ConditionDataset",
]
