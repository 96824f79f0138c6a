"""Unsupervised association losses for cross-condition alignment.

A "walker" steps from a cell of condition A to a cell of condition B with
probability given by a softmax over negative squared latent distances, then
steps back to A. Without labels, the round trip should land on cells that
were similar to the start cell in input space; the visit term asks every cell
of B to be reachable so that no region of B is ignored.

Distance-based transitions depend on where B sits relative to A, so a
condition-wide offset in latent space is penalized. The MMD term compares the
two latent minibatches as distributions and pulls their overall shapes
together.
"""

import math

import torch
import torch.nn.functional as F
from torch import Tensor

EPS = 1e-8

MMD_SCALES = (0.5, 1.0, 2.0)


def squared_distances(a: Tensor, b: Tensor) -> Tensor:
    """Pairwise squared Euclidean distances, differentiable at zero."""
    d2 = (a * a).sum(dim=1, keepdim=True) + (b * b).sum(dim=1) - 2.0 * a @ b.T
    return torch.clamp(d2, min=0.0)


def similarity_target(x: Tensor, bandwidth: float = 1.0) -> Tensor:
    """Row-normalized Gaussian kernel over input-space distances.

    Args:
        x: Encoder inputs of one condition (batch_size, input_dim)
        bandwidth: Multiplier on the median squared distance

    Returns:
        (batch_size, batch_size) row-stochastic target matrix
    """
    dists = squared_distances(x, x)
    n = dists.shape[0]
    off_diagonal = dists[~torch.eye(n, dtype=torch.bool, device=x.device)]
    scale = off_diagonal.median() if off_diagonal.numel() > 0 else dists.new_tensor(1.0)
    scale = torch.clamp(scale * bandwidth, min=EPS)
    kernel = torch.exp(-dists / scale)
    return kernel / kernel.sum(dim=1, keepdim=True)


def transition_probabilities(z_a: Tensor, z_b: Tensor) -> tuple[Tensor, Tensor]:
    """Walker transition matrices A->B and B->A."""
    logits = -squared_distances(z_a, z_b) / math.sqrt(z_a.shape[1])
    return F.softmax(logits, dim=1), F.softmax(logits.T, dim=1)


def walker_loss(p_ab: Tensor, p_ba: Tensor, target: Tensor) -> Tensor:
    """Cross-entropy between round-trip probabilities and the target."""
    p_aba = p_ab @ p_ba
    return -(target * torch.log(p_aba + EPS)).sum(dim=1).mean()


def visit_loss(p_ab: Tensor) -> Tensor:
    """Cross-entropy between the mean visit distribution over B and uniform."""
    p_visit = p_ab.mean(dim=0)
    return -torch.log(p_visit + EPS).mean()


def mmd_loss(z_a: Tensor, z_b: Tensor, scales: tuple[float, ...] = MMD_SCALES) -> Tensor:
    """Squared MMD between two latent minibatches under a multi-scale RBF kernel.

    The base bandwidth is the median pooled squared distance, computed
    without gradient; ``scales`` multiply it.
    """
    n_a = z_a.shape[0]
    pooled = torch.cat([z_a, z_b], dim=0)
    d2 = squared_distances(pooled, pooled)

    with torch.no_grad():
        n = d2.shape[0]
        off_diagonal = d2[~torch.eye(n, dtype=torch.bool, device=d2.device)]
        bandwidth = torch.clamp(off_diagonal.median(), min=EPS)

    kernel = sum(torch.exp(-d2 / (bandwidth * s)) for s in scales)
    k_aa = kernel[:n_a, :n_a].mean()
    k_bb = kernel[n_a:, n_a:].mean()
    k_ab = kernel[:n_a, n_a:].mean()
    return k_aa + k_bb - 2.0 * k_ab


def association_loss(
    z_a: Tensor,
    z_b: Tensor,
    target_a: Tensor,
    walker_weight: float = 1.0,
    visit_weight: float = 0.1,
    mmd_weight: float = 1.0,
) -> dict[str, Tensor]:
    """Association loss for walks starting in A.

    Args:
        z_a: Latents of condition A (n_a, latent_dim)
        z_b: Latents of condition B (n_b, latent_dim)
        target_a: Round-trip target from ``similarity_target`` (n_a, n_a)
        walker_weight: Weight of the round-trip term
        visit_weight: Weight of the visit term
        mmd_weight: Weight of the distribution-matching term

    Returns:
        Dictionary with 'loss', 'walker_loss', 'visit_loss', 'mmd_loss'
    """
    p_ab, p_ba = transition_probabilities(z_a, z_b)
    walker = walker_loss(p_ab, p_ba, target_a)
    visit = visit_loss(p_ab)
    mmd = mmd_loss(z_a, z_b)
    return {
        "loss": walker_weight * walker + visit_weight * visit + mmd_weight * mmd,
        "walker_loss": walker,
        "visit_loss": visit,
        "mmd_loss": mmd,
    }


def reconstruction_loss(recon: Tensor, target: Tensor) -> Tensor:
    """Reconstruction loss (MSE)."""
    return F.mse_loss(recon, target, reduction="mean")
