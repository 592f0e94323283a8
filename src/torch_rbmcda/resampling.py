"""Weight management and resampling of the particle set."""

from __future__ import annotations

import logging
from typing import Sequence

import torch

from .particle import Particle

logger = logging.getLogger(__name__)


def particle_weights(particles: Sequence[Particle], smoothed=False) -> torch.Tensor:
    """Weights of the particles as a float64 tensor of shape ``(Np,)``."""
    if smoothed:
        return torch.tensor([particle.smoothed_weight for particle in particles], dtype=torch.float64)
    return torch.tensor([particle.weight for particle in particles], dtype=torch.float64)


def normalize_weights(particles: Sequence[Particle]) -> None:
    """Normalize the weights of the particles in place, so that they sum to one.

    If the weights vanished (or are not finite), they are reset to uniform: the set carries no
    information about which particle is better.
    """
    total = sum(particle.weight for particle in particles)
    if not 0 < total < float("inf"):
        logger.warning("Degenerated particle weights (sum=%s). Resetting them to uniform.", total)
        for particle in particles:
            particle.weight = 1 / len(particles)
        return

    for particle in particles:
        particle.weight /= total


def effective_sample_size(weights: torch.Tensor) -> float:
    """Effective number of particles ``Neff = 1 / sum(w_i^2)`` for normalized weights.

    It ranges from 1 (a single particle carries all the mass) to Np (uniform weights).
    """
    return 1.0 / torch.sum(weights**2).item()


def needs_resampling(particles: Sequence[Particle]) -> bool:
    """Whether the particle set is degenerated: ``Neff < Np / 4``."""
    return effective_sample_size(particle_weights(particles)) < len(particles) / 4


def best_index(particles: Sequence[Particle], smoothed=False) -> int:
    """Index of the particle with the highest (smoothed) weight. Ties resolve to the first one."""
    return int(torch.argmax(particle_weights(particles, smoothed)).item())


def resample_to_best(particles: Sequence[Particle]) -> list[Particle]:
    """Replace every particle by a copy of the highest weighted one.

    All the weights (current and smoothed) are reset to ``1 / Np``. Each copy is independent (deep copy).

    Returns:
        list[Particle]: The new particle set.
    """
    n_particles = len(particles)
    best = particles[best_index(particles)]

    resampled = []
    for _ in range(n_particles):
        particle = best.clone()
        particle.weight = 1 / n_particles
        particle.smoothed_weight = 1 / n_particles
        resampled.append(particle)

    return resampled


def stratified_resample(weights: torch.Tensor, generator: torch.Generator | None = None) -> torch.Tensor:
    """Stratified resampling of normalized weights.

    The unit interval is split into ``n`` strata of equal size, one uniform point is drawn inside each of them,
    and each point selects the particle whose cumulative weight interval contains it.

    Args:
        weights (torch.Tensor): Normalized weights.
            Shape: ``(n,)``
        generator (torch.Generator | None): Random source.

    Returns:
        torch.Tensor: Indices of the selected particles (sorted).
            Shape: ``(n,)``, dtype: int64
    """
    n = weights.shape[0]
    points = (torch.arange(n, dtype=torch.float64) + torch.rand(n, generator=generator, dtype=torch.float64)) / n
    cumulative = torch.cumsum(weights.to(torch.float64), dim=0)
    cumulative[-1] = 1.0  # Prevent floating errors to select an out of bounds index
    return torch.searchsorted(cumulative, points, right=True)


def smooth_weights(particles: Sequence[Particle], coefficient: float) -> None:
    """One-pole smoothing of the weights over time (in place).

    ``smoothed = coefficient * smoothed + (1 - coefficient) * weight``
    """
    for particle in particles:
        particle.smoothed_weight = coefficient * particle.smoothed_weight + (1 - coefficient) * particle.weight
