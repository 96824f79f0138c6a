"""Trained alignment model: encoder, per-condition decoders, and scalers."""

from pathlib import Path

import numpy as np
import torch

from scpaired.data.features import FeatureNormalizer
from scpaired.models.config import AlignmentConfig
from scpaired.models.networks import ARCHITECTURES, AlignmentNetwork


class AlignmentModel:
    """Result of one training run.

    Holds the trained network together with the per-condition input and
    output normalizers needed to map raw representations in and native
    feature values out. The model is not trained further; a new run that
    warm-starts from it copies its parameters.
    """

    def __init__(
        self,
        network: AlignmentNetwork,
        conditions: list[str],
        encoder_repr: str,
        decoder_repr: str | None,
        input_normalizers: dict[str, FeatureNormalizer],
        output_normalizers: dict[str, FeatureNormalizer],
        config: AlignmentConfig,
        history=None,
        tag: str | None = None,
        converged: bool = True,
        steps_run: int = 0,
        decoder_steps_run: int = 0,
        feature_names: list[str] | None = None,
    ):
        self.network = network
        self.conditions = list(conditions)
        self.encoder_repr = encoder_repr
        self.decoder_repr = decoder_repr
        self.input_normalizers = input_normalizers
        self.output_normalizers = output_normalizers
        self.config = config
        self.history = history
        self.tag = tag
        self.converged = converged
        self.steps_run = steps_run
        self.decoder_steps_run = decoder_steps_run
        self.feature_names = feature_names or []

        self.network.eval()
        for param in self.network.parameters():
            param.requires_grad_(False)

    @property
    def has_decoders(self) -> bool:
        return self.network.has_decoders

    @property
    def latent_dim(self) -> int:
        return self.network.latent_dim

    def _index(self, condition: str) -> int:
        try:
            return self.conditions.index(condition)
        except ValueError:
            raise KeyError(f"Condition {condition!r} not part of this model") from None

    def _to_tensor(self, matrix: np.ndarray) -> torch.Tensor:
        device = next(self.network.parameters()).device
        return torch.tensor(matrix, dtype=torch.float32, device=device)

    @torch.no_grad()
    def encode(self, condition: str, matrix: np.ndarray, batch_size: int = 1024) -> np.ndarray:
        """Encode cells of ``condition`` to latent coordinates.

        Args:
            condition: Condition the cells were measured under
            matrix: Cells in the encoder representation (n_cells, input_dim)
            batch_size: Batch size for encoding

        Returns:
            Latent embeddings (n_cells, latent_dim)
        """
        condition_idx = self._index(condition)
        normalized = self.input_normalizers[condition].transform(matrix)

        self.network.eval()
        embeddings_list = []
        for i in range(0, len(normalized), batch_size):
            x = self._to_tensor(normalized[i : i + batch_size])
            embeddings_list.append(self.network.encode(x, condition_idx).cpu().numpy())

        if not embeddings_list:
            return np.zeros((0, self.latent_dim), dtype=np.float32)
        return np.vstack(embeddings_list)

    @torch.no_grad()
    def project(
        self, source: str, target: str, matrix: np.ndarray, batch_size: int = 1024
    ) -> np.ndarray:
        """Project cells of ``source`` into the native feature space of ``target``.

        Returns:
            Projected features (n_cells, n_features), in target's scale
        """
        if not self.has_decoders:
            raise RuntimeError("Model was trained without decoders")
        target_idx = self._index(target)

        latent = self.encode(source, matrix, batch_size=batch_size)
        projected_list = []
        for i in range(0, len(latent), batch_size):
            z = self._to_tensor(latent[i : i + batch_size])
            projected_list.append(self.network.decode(z, target_idx).cpu().numpy())

        if not projected_list:
            return np.zeros((0, self.network.output_dim))
        return self.output_normalizers[target].inverse_transform(np.vstack(projected_list))

    def state_dict(self) -> dict:
        """Copy of the network parameters."""
        return {k: v.detach().clone() for k, v in self.network.state_dict().items()}

    def save(self, path: str | Path) -> None:
        """Save a checkpoint that ``load`` can rebuild the model from."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(
            {
                "model_state_dict": self.network.state_dict(),
                "config": self.config.to_dict(),
                "conditions": self.conditions,
                "encoder_repr": self.encoder_repr,
                "decoder_repr": self.decoder_repr,
                "input_dim": self.network.input_dim,
                "output_dim": self.network.output_dim,
                "input_normalizers": {
                    k: v.state_dict() for k, v in self.input_normalizers.items()
                },
                "output_normalizers": {
                    k: v.state_dict() for k, v in self.output_normalizers.items()
                },
                "history": self.history.to_dict() if self.history is not None else None,
                "tag": self.tag,
                "converged": self.converged,
                "steps_run": self.steps_run,
                "decoder_steps_run": self.decoder_steps_run,
                "feature_names": self.feature_names,
            },
            path,
        )

    @classmethod
    def load(cls, path: str | Path, device: str = "cpu") -> "AlignmentModel":
        """Load a model saved with ``save``."""
        from scpaired.models.training import TrainingHistory

        checkpoint = torch.load(path, map_location=device, weights_only=False)
        config = AlignmentConfig.from_dict(checkpoint["config"])
        config.device = device

        network = AlignmentNetwork(
            input_dim=checkpoint["input_dim"],
            n_conditions=len(checkpoint["conditions"]),
            output_dim=checkpoint["output_dim"],
            latent_dim=config.latent_dim,
            hidden_dims=ARCHITECTURES[config.architecture],
            dropout=config.dropout,
            batch_norm=config.batch_norm,
        )
        network.load_state_dict(checkpoint["model_state_dict"])
        network.to(device)

        history = None
        if checkpoint.get("history") is not None:
            history = TrainingHistory.from_dict(checkpoint["history"])

        return cls(
            network=network,
            conditions=checkpoint["conditions"],
            encoder_repr=checkpoint["encoder_repr"],
            decoder_repr=checkpoint["decoder_repr"],
            input_normalizers={
                k: FeatureNormalizer.from_state_dict(v)
                for k, v in checkpoint["input_normalizers"].items()
            },
            output_normalizers={
                k: FeatureNormalizer.from_state_dict(v)
                for k, v in checkpoint["output_normalizers"].items()
            },
            config=config,
            history=history,
            tag=checkpoint["tag"],
            converged=checkpoint["converged"],
            steps_run=checkpoint["steps_run"],
            decoder_steps_run=checkpoint["decoder_steps_run"],
            feature_names=checkpoint["feature_names"],
        )
