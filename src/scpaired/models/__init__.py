"""Alignment networks, training, and trained-model container."""

from scpaired.models.alignment import AlignmentModel
from scpaired.models.config import AlignmentConfig, WandbConfig
from scpaired.models.losses import (
    association_loss,
    mmd_loss,
    reconstruction_loss,
    similarity_target,
    transition_probabilities,
)
from scpaired.models.networks import (
    ARCHITECTURES,
    AlignmentNetwork,
    ConditionBatchNorm,
    Decoder,
    Encoder,
)
from scpaired.models.training import (
    AlignmentTrainer,
    EarlyStopping,
    TrainingHistory,
    loss_plateaued,
)

__all__ = [
    # Networks
    "ARCHITECTURES",
    "AlignmentNetwork",
    "Encoder",
    "ConditionBatchNorm",
    "Decoder",
    # Objective
    "association_loss",
    "mmd_loss",
    "reconstruction_loss",
    "similarity_target",
    "transition_probabilities",
    # Training
    "AlignmentConfig",
    "WandbConfig",
    "AlignmentTrainer",
    "AlignmentModel",
    "TrainingHistory",
    "EarlyStopping",
    "loss_plateaued",
]
