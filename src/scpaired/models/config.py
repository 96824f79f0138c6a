"""Configuration dataclasses for alignment training."""

from dataclasses import asdict, dataclass, field, fields
from typing import Any

import torch


@dataclass
class WandbConfig:
    """Configuration for Weights & Biases logging."""

    enabled: bool = False
    project: str = "scpaired-alignment"
    entity: str | None = None  # Your wandb team/username
    name: str | None = None  # Run name (auto-generated if None)
    tags: list[str] = field(default_factory=list)
    notes: str = ""
    log_latent_space: bool = True  # Log latent space statistics at the end


@dataclass
class AlignmentConfig:
    """Configuration for one alignment training run."""

    # Optimization
    steps: int = 1000
    decoder_steps: int | None = None  # None = same as steps
    batch_size: int = 128
    learning_rate: float = 1e-3

    # Network
    architecture: str = "medium"  # small | medium | large
    latent_dim: int = 32
    dropout: float = 0.1
    batch_norm: bool = True

    # Inputs
    standardize: bool = True  # z-score encoder input per condition

    # Phases
    run_encoder: bool = True
    run_decoder: bool = False

    # Objective
    walker_weight: float = 1.0
    visit_weight: float = 0.1
    mmd_weight: float = 1.0
    kernel_bandwidth: float = 1.0

    # Early stopping; disable for reduced inputs whose small loss scale
    # trips the absolute tolerance too soon
    early_stopping: bool = True
    early_stopping_patience: int = 5
    early_stopping_min_delta: float = 1e-3
    eval_every: int = 50  # steps per early-stopping interval

    # Convergence warning
    convergence_window: int = 100  # 0 disables the check
    convergence_tol: float = 0.0

    # Logging
    log_every: int = 100  # print every N steps

    # Reproducibility / placement
    seed: int = 0
    device: str = "cuda" if torch.cuda.is_available() else "cpu"

    # Warm start from a previous AlignmentModel (copied, never mutated)
    init_from: Any = None

    wandb: WandbConfig = field(default_factory=WandbConfig)

    @property
    def n_decoder_steps(self) -> int:
        return self.steps if self.decoder_steps is None else self.decoder_steps

    def to_dict(self) -> dict:
        """Serializable view (warm-start model excluded)."""
        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("init_from", "wandb")
        }
        data["wandb"] = asdict(self.wandb)
        data["init_from"] = getattr(self.init_from, "tag", None)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AlignmentConfig":
        data = dict(data)
        data.pop("init_from", None)
        wandb = WandbConfig(**data.pop("wandb", {}))
        return cls(**data, wandb=wandb)
