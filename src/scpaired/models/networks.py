"""Encoder and per-condition decoder networks.

The encoder is shared by all conditions, so every cell lands in one latent
space. Each condition owns its own decoder, which maps latent vectors into
that condition's native feature space. Decoding a cell of condition A with
the decoder of condition B gives its projection into B.

Architecture:
    Encoder: representation -> latent (shared weights, per-condition normalization)
    Decoders: latent -> features of condition k (one network per condition)
"""

import torch
import torch.nn as nn
from torch import Tensor

ARCHITECTURES: dict[str, list[int]] = {
    "small": [128, 64],
    "medium": [256, 128],
    "large": [512, 256, 128],
}


def _mlp(input_dim: int, hidden_dims: list[int], dropout: float, batch_norm: bool) -> nn.Sequential:
    layers = []
    prev_dim = input_dim
    for hidden_dim in hidden_dims:
        layers.extend(
            [
                nn.Linear(prev_dim, hidden_dim),
                nn.BatchNorm1d(hidden_dim) if batch_norm else nn.Identity(),
                nn.ReLU(),
                nn.Dropout(dropout),
            ]
        )
        prev_dim = hidden_dim
    return nn.Sequential(*layers)


class ConditionBatchNorm(nn.Module):
    """BatchNorm1d with separate statistics and affine parameters per condition.

    Cells of one condition are normalized with that condition's statistics
    both in training (batch statistics) and in eval mode (running statistics).
    """

    def __init__(self, num_features: int, n_conditions: int):
        super().__init__()
        self.norms = nn.ModuleList([nn.BatchNorm1d(num_features) for _ in range(n_conditions)])

    def forward(self, x: Tensor, condition: int) -> Tensor:
        return self.norms[condition](x)


class Encoder(nn.Module):
    """MLP encoder mapping a representation to the shared latent space.

    Linear weights are shared by every condition. With ``batch_norm`` each
    hidden layer normalizes per condition, which removes location and scale
    shifts between conditions at every depth.
    """

    def __init__(
        self,
        input_dim: int,
        hidden_dims: list[int],
        latent_dim: int,
        dropout: float = 0.1,
        batch_norm: bool = True,
        n_conditions: int = 1,
    ):
        """Initialize encoder.

        Args:
            input_dim: Width of the encoder representation
            hidden_dims: List of hidden layer dimensions
            latent_dim: Dimension of latent space
            dropout: Dropout probability
            batch_norm: Per-condition BatchNorm1d after each hidden linear layer
            n_conditions: Number of conditions with their own normalization
        """
        super().__init__()
        dims = [input_dim] + list(hidden_dims)
        self.batch_norm = batch_norm
        self.linears = nn.ModuleList([nn.Linear(i, o) for i, o in zip(dims[:-1], dims[1:])])
        self.norms = nn.ModuleList(
            [ConditionBatchNorm(d, n_conditions) for d in hidden_dims] if batch_norm else []
        )
        self.activation = nn.ReLU()
        self.dropout = nn.Dropout(dropout)
        self.fc_out = nn.Linear(dims[-1], latent_dim)

    def forward(self, x: Tensor, condition: int = 0) -> Tensor:
        for i, linear in enumerate(self.linears):
            x = linear(x)
            if self.batch_norm:
                x = self.norms[i](x, condition)
            x = self.dropout(self.activation(x))
        return self.fc_out(x)


class Decoder(nn.Module):
    """MLP decoder for one target condition."""

    def __init__(
        self,
        latent_dim: int,
        hidden_dims: list[int],
        output_dim: int,
        dropout: float = 0.1,
    ):
        """Initialize decoder.

        Args:
            latent_dim: Dimension of latent space
            hidden_dims: Hidden layer dimensions (reversed from encoder)
            output_dim: Width of the target condition's native space
            dropout: Dropout probability
        """
        super().__init__()
        self.hidden = _mlp(latent_dim, hidden_dims, dropout, batch_norm=True)
        self.fc_out = nn.Linear(hidden_dims[-1] if hidden_dims else latent_dim, output_dim)

    def forward(self, z: Tensor) -> Tensor:
        return self.fc_out(self.hidden(z))


class AlignmentNetwork(nn.Module):
    """Shared encoder plus one independently parameterized decoder per condition."""

    def __init__(
        self,
        input_dim: int,
        n_conditions: int,
        output_dim: int | None = None,
        latent_dim: int = 32,
        hidden_dims: list[int] | None = None,
        dropout: float = 0.1,
        batch_norm: bool = True,
    ):
        """Initialize the network.

        Args:
            input_dim: Width of the encoder representation
            n_conditions: Number of registered conditions
            output_dim: Width of the decoder representation. None disables decoders.
            latent_dim: Dimension of latent space
            hidden_dims: Hidden layer dimensions. Default: ARCHITECTURES["medium"]
            dropout: Dropout probability
            batch_norm: Per-condition batch normalization in the encoder
        """
        super().__init__()

        if hidden_dims is None:
            hidden_dims = ARCHITECTURES["medium"]

        self.input_dim = input_dim
        self.output_dim = output_dim
        self.latent_dim = latent_dim
        self.n_conditions = n_conditions

        self.encoder = Encoder(
            input_dim, hidden_dims, latent_dim, dropout, batch_norm, n_conditions=n_conditions
        )
        if output_dim is not None:
            self.decoders = nn.ModuleList(
                [
                    Decoder(latent_dim, hidden_dims[::-1], output_dim, dropout)
                    for _ in range(n_conditions)
                ]
            )
        else:
            self.decoders = nn.ModuleList()

    @property
    def has_decoders(self) -> bool:
        return len(self.decoders) > 0

    def encode(self, x: Tensor, condition: int) -> Tensor:
        """Encode cells of condition index ``condition``."""
        return self.encoder(x, condition)

    def decode(self, z: Tensor, target: int) -> Tensor:
        """Decode latents into the space of condition index ``target``."""
        return self.decoders[target](z)

    def forward(
        self, x: Tensor, condition: int, target: int | None = None
    ) -> dict[str, Tensor]:
        z = self.encode(x, condition)
        output = {"z": z}
        if target is not None:
            output["recon"] = self.decode(z, target)
        return output

    @torch.no_grad()
    def project(self, x: Tensor, source: int, target: int) -> Tensor:
        """Encode cells of condition ``source`` and decode them into ``target``."""
        self.eval()
        return self.decode(self.encode(x, source), target)
