"""Training loop for cross-condition alignment.

Training runs in two phases:

1. Encoder phase. One shared encoder embeds minibatches of every condition;
   association losses between every ordered pair of conditions pull
   functionally similar cells together without reading labels.
2. Decoder phase (optional). The encoder is frozen and one decoder per
   condition learns to reconstruct that condition's decoder representation
   from latent coordinates.

When training finishes, the trainer writes the latent embedding of all
cells and every directed cross-projection into the embedding store.
"""

import copy
import itertools
import json
import multiprocessing
import time
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import torch
import torch.nn as nn
from torch.optim import Adam
from torch.utils.data import DataLoader, RandomSampler

from scpaired.data.features import ConditionDataset, FeatureNormalizer
from scpaired.data.registry import DEFAULT_REPRESENTATION, DatasetRegistry
from scpaired.embeddings.store import (
    CrossProjectionResult,
    EmbeddingResult,
    EmbeddingStore,
    projection_tag,
)
from scpaired.errors import ConfigError, ConvergenceWarning
from scpaired.models.alignment import AlignmentModel
from scpaired.models.config import AlignmentConfig
from scpaired.models.losses import association_loss, reconstruction_loss, similarity_target
from scpaired.models.networks import ARCHITECTURES, AlignmentNetwork

try:
    import wandb

    WANDB_AVAILABLE = True
except ImportError:
    WANDB_AVAILABLE = False


@dataclass
class TrainingHistory:
    """Per-step loss tracker."""

    encoder_loss: list[float] = field(default_factory=list)
    walker_loss: list[float] = field(default_factory=list)
    visit_loss: list[float] = field(default_factory=list)
    mmd_loss: list[float] = field(default_factory=list)
    decoder_loss: list[float] = field(default_factory=list)
    phase_times: dict[str, float] = field(default_factory=dict)
    stopped_early: dict[str, bool] = field(default_factory=dict)
    plateaued: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "encoder_loss": self.encoder_loss,
            "walker_loss": self.walker_loss,
            "visit_loss": self.visit_loss,
            "mmd_loss": self.mmd_loss,
            "decoder_loss": self.decoder_loss,
            "phase_times": self.phase_times,
            "stopped_early": self.stopped_early,
            "plateaued": self.plateaued,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingHistory":
        history = cls()
        for key, value in data.items():
            setattr(history, key, value)
        return history

    def save(self, path: str | Path) -> None:
        """Save history to JSON file."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str | Path) -> "TrainingHistory":
        """Load history from JSON file."""
        with open(path) as f:
            return cls.from_dict(json.load(f))


class EarlyStopping:
    """Stops a phase once its interval-mean loss stops improving.

    Per-step losses go in through ``update``. Every ``interval`` steps the
    mean of the finished interval is compared with the best interval mean so
    far; ``patience`` intervals in a row without a decrease of at least
    ``min_delta`` end the phase.
    """

    def __init__(self, interval: int, patience: int = 5, min_delta: float = 0.0):
        self.interval = interval
        self.patience = patience
        self.min_delta = min_delta
        self.interval_means: list[float] = []
        self.best = float("inf")
        self.stale_intervals = 0
        self._current: list[float] = []

    def update(self, loss: float) -> bool:
        """Record one step's loss; True once the phase should stop."""
        self._current.append(loss)
        if len(self._current) < self.interval:
            return False

        mean = float(np.mean(self._current))
        self._current = []
        self.interval_means.append(mean)
        if mean < self.best - self.min_delta:
            self.best = mean
            self.stale_intervals = 0
        else:
            self.stale_intervals += 1
        return self.stale_intervals >= self.patience


def loss_plateaued(losses: list[float], window: int, tol: float = 0.0) -> bool:
    """Whether the trailing window failed to lower the loss.

    Compares the mean of the last ``window`` losses with the mean of the
    ``window`` losses before it. Too short a history never plateaus.
    """
    if window < 1 or len(losses) < 2 * window:
        return False
    recent = float(np.mean(losses[-window:]))
    previous = float(np.mean(losses[-2 * window : -window]))
    return recent >= previous - tol


# =============================================================================
# Weights & Biases Utilities
# =============================================================================


def init_wandb(
    config: AlignmentConfig,
    model: nn.Module,
    tag: str,
    n_cells: dict[str, int],
) -> bool:
    """Initialize a Weights & Biases run; False when disabled or unavailable."""
    if not WANDB_AVAILABLE or not config.wandb.enabled:
        return False

    wandb_config = config.to_dict()
    wandb_config.pop("wandb")
    wandb_config.update(
        {
            "tag": tag,
            "n_cells": n_cells,
            "n_parameters": sum(p.numel() for p in model.parameters()),
        }
    )

    wandb.init(
        project=config.wandb.project,
        entity=config.wandb.entity,
        name=config.wandb.name or tag,
        tags=config.wandb.tags,
        notes=config.wandb.notes,
        config=wandb_config,
    )
    return True


def log_wandb_metrics(step: int, phase: str, metrics: dict[str, float]) -> None:
    if not WANDB_AVAILABLE:
        return
    wandb.log({f"{phase}/{k}": v for k, v in metrics.items()} | {"step": step})


def log_wandb_latent_space(embedding: np.ndarray, conditions: np.ndarray) -> None:
    """Log latent statistics per condition."""
    if not WANDB_AVAILABLE:
        return
    stats = {
        "latent_space/mean": float(np.mean(embedding)),
        "latent_space/std": float(np.std(embedding)),
    }
    for name in np.unique(conditions):
        stats[f"latent_space/{name}_centroid_norm"] = float(
            np.linalg.norm(embedding[conditions == name].mean(axis=0))
        )
    wandb.log(stats)


def finish_wandb() -> None:
    """Finish wandb run."""
    if WANDB_AVAILABLE and wandb.run is not None:
        wandb.finish()


# =============================================================================
# Training
# =============================================================================


def _batch_loader(
    dataset: ConditionDataset, batch_size: int, n_batches: int, generator: torch.Generator
) -> DataLoader:
    """Loader yielding exactly ``n_batches`` batches sampled with replacement."""
    sampler = RandomSampler(
        dataset, replacement=True, num_samples=batch_size * n_batches, generator=generator
    )
    return DataLoader(dataset, batch_size=batch_size, sampler=sampler, num_workers=0)


def train_encoder_step(
    network: AlignmentNetwork,
    batches: list[dict],
    optimizer: torch.optim.Optimizer,
    config: AlignmentConfig,
) -> dict[str, float]:
    """One optimization step of the association objective.

    ``batches`` holds one minibatch per condition, in registry order; the
    position selects the condition's normalization statistics.
    """
    device = config.device
    optimizer.zero_grad()

    latents = []
    targets = []
    for condition_idx, batch in enumerate(batches):
        x = batch["features"].to(device)
        latents.append(network.encode(x, condition_idx))
        targets.append(similarity_target(x, bandwidth=config.kernel_bandwidth))

    total = 0.0
    parts = {"walker_loss": 0.0, "visit_loss": 0.0, "mmd_loss": 0.0}
    pairs = list(itertools.permutations(range(len(batches)), 2))
    for a, b in pairs:
        losses = association_loss(
            latents[a],
            latents[b],
            targets[a],
            walker_weight=config.walker_weight,
            visit_weight=config.visit_weight,
            mmd_weight=config.mmd_weight,
        )
        total = total + losses["loss"]
        for key in parts:
            parts[key] += losses[key].item()

    loss = total / len(pairs)
    loss.backward()
    optimizer.step()

    return {"loss": loss.item()} | {key: value / len(pairs) for key, value in parts.items()}


def train_decoder_step(
    network: AlignmentNetwork,
    batches: list[dict],
    optimizer: torch.optim.Optimizer,
    config: AlignmentConfig,
) -> dict[str, float]:
    """One optimization step of every condition's decoder on frozen latents."""
    device = config.device
    optimizer.zero_grad()

    total = 0.0
    for condition_idx, batch in enumerate(batches):
        with torch.no_grad():
            z = network.encode(batch["features"].to(device), condition_idx)
        recon = network.decode(z, condition_idx)
        total = total + reconstruction_loss(recon, batch["targets"].to(device))

    loss = total / len(batches)
    loss.backward()
    optimizer.step()
    return {"loss": loss.item()}


def _train_in_process(
    registry: DatasetRegistry, run: dict[str, Any]
) -> tuple[AlignmentModel, list, list[tuple[str, type]]]:
    """Worker for ``AlignmentTrainer.train_many``.

    Runs in its own process, so the global torch RNG and any wandb run belong
    to this training run alone. Returns the model, everything it stored, and
    the warnings it raised.
    """
    store = EmbeddingStore()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        model = AlignmentTrainer(registry, store).train(**run)
    artifacts = [store.get(tag) for tag in store.list_tags()]
    return model, artifacts, [(str(w.message), w.category) for w in caught]


class AlignmentTrainer:
    """Trains alignment models on a registry and records their outputs."""

    def __init__(self, registry: DatasetRegistry, store: EmbeddingStore | None = None):
        self.registry = registry
        self.store = store if store is not None else EmbeddingStore()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        encoder_repr: str,
        decoder_repr: str | None,
        config: AlignmentConfig,
        tag: str,
    ) -> None:
        """Reject inconsistent configurations before any optimization."""
        conditions = self.registry.conditions
        if len(conditions) < 2:
            raise ConfigError(f"Alignment needs at least two conditions, found {len(conditions)}")

        if config.steps < 1 and config.run_encoder:
            raise ConfigError(f"steps must be >= 1, got {config.steps}")
        if config.run_decoder and config.n_decoder_steps < 1:
            raise ConfigError(f"decoder_steps must be >= 1, got {config.n_decoder_steps}")
        if config.batch_size < 2:
            raise ConfigError(f"batch_size must be >= 2, got {config.batch_size}")
        if config.log_every < 1 or config.eval_every < 1:
            raise ConfigError("log_every and eval_every must be >= 1")
        if config.architecture not in ARCHITECTURES:
            raise ConfigError(
                f"Unknown architecture: {config.architecture}. Use one of {list(ARCHITECTURES)}"
            )
        if not config.run_encoder and config.init_from is None:
            raise ConfigError("run_encoder=False requires init_from with a trained encoder")
        if config.run_decoder and decoder_repr is None:
            raise ConfigError("run_decoder=True requires decoder_repr")

        for name in conditions:
            if not self.registry.has_representation(name, encoder_repr):
                raise ConfigError(f"Encoder representation {encoder_repr!r} missing for {name}")
            if decoder_repr is not None and not self.registry.has_representation(
                name, decoder_repr
            ):
                raise ConfigError(f"Decoder representation {decoder_repr!r} missing for {name}")

        widths = {self.registry.representation(c, encoder_repr).shape[1] for c in conditions}
        if len(widths) != 1:
            raise ConfigError(f"Encoder representation {encoder_repr!r} width differs: {widths}")
        if decoder_repr is not None:
            widths = {self.registry.representation(c, decoder_repr).shape[1] for c in conditions}
            if len(widths) != 1:
                raise ConfigError(
                    f"Decoder representation {decoder_repr!r} width differs: {widths}"
                )

        init = config.init_from
        if init is not None:
            if not isinstance(init, AlignmentModel):
                raise ConfigError("init_from must be an AlignmentModel")
            if init.conditions != conditions:
                raise ConfigError(
                    f"Warm-start conditions {init.conditions} differ from registry {conditions}"
                )
            input_dim = self.registry.representation(conditions[0], encoder_repr).shape[1]
            if init.network.input_dim != input_dim or init.latent_dim != config.latent_dim:
                raise ConfigError("Warm-start encoder shape does not match this run")
            if init.config.architecture != config.architecture:
                raise ConfigError("Warm-start architecture does not match this run")
            if init.config.batch_norm != config.batch_norm:
                raise ConfigError("Warm-start batch_norm setting does not match this run")

        if self.store.has_model(tag) or tag in self.store:
            raise ConfigError(f"Tag already used in the store: {tag}")

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _build_network(
        self, input_dim: int, output_dim: int | None, config: AlignmentConfig
    ) -> AlignmentNetwork:
        network = AlignmentNetwork(
            input_dim=input_dim,
            n_conditions=len(self.registry),
            output_dim=output_dim,
            latent_dim=config.latent_dim,
            hidden_dims=ARCHITECTURES[config.architecture],
            dropout=config.dropout,
            batch_norm=config.batch_norm,
        )

        init = config.init_from
        if init is not None:
            state = copy.deepcopy(init.network.state_dict())
            network.encoder.load_state_dict(
                {k[len("encoder.") :]: v for k, v in state.items() if k.startswith("encoder.")}
            )
            if (
                output_dim is not None
                and init.has_decoders
                and init.network.output_dim == output_dim
            ):
                network.decoders.load_state_dict(
                    {
                        k[len("decoders.") :]: v
                        for k, v in state.items()
                        if k.startswith("decoders.")
                    }
                )
        return network

    def train(
        self,
        encoder_repr: str,
        decoder_repr: str | None = None,
        config: AlignmentConfig | None = None,
        tag: str | None = None,
    ) -> AlignmentModel:
        """Train an alignment model and store its embedding and projections.

        Args:
            encoder_repr: Representation fed to the encoder
            decoder_repr: Representation the decoders reconstruct (native space)
            config: Training configuration
            tag: Store tag for this run. Default: "aligned-{encoder_repr}"

        Returns:
            Trained AlignmentModel

        Raises:
            ConfigError: on inconsistent configuration, before training starts
        """
        if config is None:
            config = AlignmentConfig(run_decoder=decoder_repr is not None)
        tag = tag or f"aligned-{encoder_repr}"
        self.validate(encoder_repr, decoder_repr, config, tag)

        conditions = self.registry.conditions
        run_decoder = config.run_decoder and decoder_repr is not None
        device = config.device

        torch.manual_seed(config.seed)
        generator = torch.Generator().manual_seed(config.seed)

        # Per-condition scaling of encoder inputs and decoder targets
        input_normalizers = {}
        output_normalizers = {}
        encoder_inputs = {}
        decoder_targets = {}
        for name in conditions:
            matrix = self.registry.representation(name, encoder_repr)
            input_normalizers[name] = FeatureNormalizer(enabled=config.standardize).fit(matrix)
            encoder_inputs[name] = input_normalizers[name].transform(matrix)
            if run_decoder:
                target = self.registry.representation(name, decoder_repr)
                output_normalizers[name] = FeatureNormalizer().fit(target)
                decoder_targets[name] = output_normalizers[name].transform(target)

        input_dim = encoder_inputs[conditions[0]].shape[1]
        output_dim = decoder_targets[conditions[0]].shape[1] if run_decoder else None

        network = self._build_network(input_dim, output_dim, config).to(device)
        history = TrainingHistory()
        n_cells = {name: len(encoder_inputs[name]) for name in conditions}

        use_wandb = init_wandb(config, network, tag, n_cells)

        print(f"Training {tag} on {device}")
        for name in conditions:
            print(f"  {name}: {n_cells[name]:,} cells")
        print(f"  Encoder input: {encoder_repr} ({input_dim} dims)")
        if run_decoder:
            print(f"  Decoder target: {decoder_repr} ({output_dim} dims)")
        print(f"  Architecture: {config.architecture} {ARCHITECTURES[config.architecture]}")
        print()

        steps_run = decoder_steps_run = 0
        try:
            if config.run_encoder:
                steps_run, stopped = self._run_encoder_phase(
                    network, encoder_inputs, config, generator, history, use_wandb
                )
                history.stopped_early["encoder"] = stopped
                history.plateaued["encoder"] = not stopped and loss_plateaued(
                    history.encoder_loss, config.convergence_window, config.convergence_tol
                )

            if run_decoder:
                datasets = [
                    ConditionDataset(encoder_inputs[name], decoder_targets[name])
                    for name in conditions
                ]
                decoder_steps_run, stopped = self._run_decoder_phase(
                    network, datasets, config, generator, history, use_wandb
                )
                history.stopped_early["decoder"] = stopped
                history.plateaued["decoder"] = not stopped and loss_plateaued(
                    history.decoder_loss, config.convergence_window, config.convergence_tol
                )

            plateaued = [phase for phase, flat in history.plateaued.items() if flat]
            model = AlignmentModel(
                network=network,
                conditions=conditions,
                encoder_repr=encoder_repr,
                decoder_repr=decoder_repr if run_decoder else None,
                input_normalizers=input_normalizers,
                output_normalizers=output_normalizers,
                config=copy.copy(config),
                history=history,
                tag=tag,
                converged=not plateaued,
                steps_run=steps_run,
                decoder_steps_run=decoder_steps_run,
                feature_names=self.registry.feature_names
                if (run_decoder and decoder_repr == DEFAULT_REPRESENTATION)
                else [],
            )
            embedding = self._write_outputs(model)

            if use_wandb and config.wandb.log_latent_space:
                log_wandb_latent_space(
                    embedding.values, embedding.cells["condition"].to_numpy()
                )
        finally:
            if use_wandb:
                finish_wandb()

        if plateaued:
            warnings.warn(
                f"{tag}: {' and '.join(plateaued)} loss did not decrease over the last "
                f"{config.convergence_window} steps; the result may be suboptimal",
                ConvergenceWarning,
                stacklevel=2,
            )

        return model

    def _run_encoder_phase(
        self,
        network: AlignmentNetwork,
        encoder_inputs: dict[str, np.ndarray],
        config: AlignmentConfig,
        generator: torch.Generator,
        history: TrainingHistory,
        use_wandb: bool,
    ) -> tuple[int, bool]:
        """Optimize the encoder; returns (steps run, stopped early)."""
        loaders = [
            _batch_loader(ConditionDataset(x), config.batch_size, config.steps, generator)
            for x in encoder_inputs.values()
        ]
        network.encoder.train()
        optimizer = Adam(network.encoder.parameters(), lr=config.learning_rate)
        early_stopping = EarlyStopping(
            config.eval_every,
            patience=config.early_stopping_patience,
            min_delta=config.early_stopping_min_delta,
        )

        phase_start = time.time()
        stopped = False
        step = 0
        for step, batches in enumerate(zip(*loaders), start=1):
            metrics = train_encoder_step(network, list(batches), optimizer, config)
            history.encoder_loss.append(metrics["loss"])
            history.walker_loss.append(metrics["walker_loss"])
            history.visit_loss.append(metrics["visit_loss"])
            history.mmd_loss.append(metrics["mmd_loss"])

            if step % config.log_every == 0:
                print(
                    f"Encoder step {step:5d}/{config.steps} | "
                    f"Loss: {metrics['loss']:.4f} "
                    f"(W:{metrics['walker_loss']:.4f} V:{metrics['visit_loss']:.4f} "
                    f"MMD:{metrics['mmd_loss']:.4f})"
                )
                if use_wandb:
                    log_wandb_metrics(step, "encoder", metrics)

            if config.early_stopping and early_stopping.update(metrics["loss"]):
                print(f"\nEarly stopping encoder at step {step}")
                stopped = True
                break

        history.phase_times["encoder"] = time.time() - phase_start
        return step, stopped

    def _run_decoder_phase(
        self,
        network: AlignmentNetwork,
        datasets: list[ConditionDataset],
        config: AlignmentConfig,
        generator: torch.Generator,
        history: TrainingHistory,
        use_wandb: bool,
    ) -> tuple[int, bool]:
        """Optimize per-condition decoders on a frozen encoder."""
        n_steps = config.n_decoder_steps
        loaders = [_batch_loader(ds, config.batch_size, n_steps, generator) for ds in datasets]

        network.encoder.eval()
        network.encoder.requires_grad_(False)
        network.decoders.train()
        optimizer = Adam(network.decoders.parameters(), lr=config.learning_rate)
        early_stopping = EarlyStopping(
            config.eval_every,
            patience=config.early_stopping_patience,
            min_delta=config.early_stopping_min_delta,
        )

        phase_start = time.time()
        stopped = False
        step = 0
        for step, batches in enumerate(zip(*loaders), start=1):
            metrics = train_decoder_step(network, list(batches), optimizer, config)
            history.decoder_loss.append(metrics["loss"])

            if step % config.log_every == 0:
                print(f"Decoder step {step:5d}/{n_steps} | Recon: {metrics['loss']:.4f}")
                if use_wandb:
                    log_wandb_metrics(step, "decoder", metrics)

            if config.early_stopping and early_stopping.update(metrics["loss"]):
                print(f"\nEarly stopping decoders at step {step}")
                stopped = True
                break

        network.encoder.requires_grad_(True)
        history.phase_times["decoder"] = time.time() - phase_start
        return step, stopped

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def _write_outputs(self, model: AlignmentModel) -> EmbeddingResult:
        """Store the embedding and every directed projection of ``model``."""
        conditions = model.conditions
        cells = self.registry.cell_metadata()

        embedding = EmbeddingResult(
            tag=model.tag,
            values=np.vstack(
                [
                    model.encode(name, self.registry.representation(name, model.encoder_repr))
                    for name in conditions
                ]
            ),
            cells=cells,
            config={
                "encoder_repr": model.encoder_repr,
                "decoder_repr": model.decoder_repr,
                "conditions": conditions,
                "steps_run": model.steps_run,
                "converged": model.converged,
            },
        )

        projections = []
        if model.has_decoders:
            for source, target in itertools.product(conditions, conditions):
                matrix = self.registry.representation(source, model.encoder_repr)
                projections.append(
                    CrossProjectionResult(
                        tag=projection_tag(model.tag, source, target),
                        model_tag=model.tag,
                        source=source,
                        target=target,
                        values=model.project(source, target, matrix),
                        cells=self.registry.cell_metadata([source]),
                        feature_names=model.feature_names,
                        config={"decoder_repr": model.decoder_repr},
                    )
                )

        self.store.put(embedding)
        for projection in projections:
            self.store.put(projection)

        print(f"Stored {model.tag} (+{len(projections)} projections)")
        return embedding

    def train_many(
        self,
        runs: list[dict[str, Any]],
        max_workers: int | None = None,
    ) -> list[AlignmentModel]:
        """Train independent runs in parallel worker processes.

        Each run is a dict of ``train`` keyword arguments and must use its own
        tag. Every run is validated here before any worker starts. Workers are
        spawned fresh, so each run seeds and consumes its own torch RNG and
        gives the same result as a sequential ``train`` with that config.
        Outputs are written to this trainer's store in the order of ``runs``
        and warnings raised in a worker are re-raised here.

        Returns:
            Models in the order of ``runs``
        """
        runs = [dict(run) for run in runs]
        for run in runs:
            run.setdefault("tag", None)
            run["tag"] = run["tag"] or f"aligned-{run['encoder_repr']}"
            if run.get("config") is None:
                run["config"] = AlignmentConfig(run_decoder=run.get("decoder_repr") is not None)

        tags = [run["tag"] for run in runs]
        if len(set(tags)) != len(tags):
            raise ConfigError(f"Concurrent runs need distinct tags, got {tags}")
        for run in runs:
            self.validate(run["encoder_repr"], run.get("decoder_repr"), run["config"], run["tag"])

        context = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(max_workers=max_workers, mp_context=context) as ex:
            futures = [ex.submit(_train_in_process, self.registry, run) for run in runs]
            outputs = [future.result() for future in futures]

        models = []
        for model, artifacts, caught in outputs:
            for artifact in artifacts:
                self.store.put(artifact)
            for message, category in caught:
                warnings.warn(message, category, stacklevel=2)
            models.append(model)
        return models
