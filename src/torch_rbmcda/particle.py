"""Targets and particles (Monte Carlo samples).

A particle is one hypothesis of the full multi-target state: how many targets exist, where they are and
which id they carry. It owns its targets exclusively. Copies are always deep (`Particle.clone`), so that
two particles never share a target or a tensor.
"""

from __future__ import annotations

import dataclasses
from typing import Iterable

import torch

from .kalman_filter import GaussianState


@dataclasses.dataclass
class Target:
    """A tracked target inside a particle.

    Attributes:
        target_id (int): Unique id of the target within its particle, in ``[0, max_active_targets)``.
        state (GaussianState): Position/velocity estimate ``[x, y, z, vx, vy, vz]``.
            Shape (mean): ``(6, 1)``
            Shape (covariance): ``(6, 6)``
        age (int): Number of ticks since the target was born.
    """

    target_id: int
    state: GaussianState
    age: int = 0

    @property
    def position(self) -> torch.Tensor:
        """Estimated position. Shape: ``(3,)``"""
        return self.state.mean[:3, 0]

    @property
    def velocity(self) -> torch.Tensor:
        """Estimated velocity. Shape: ``(3,)``"""
        return self.state.mean[3:, 0]

    @property
    def position_variance(self) -> torch.Tensor:
        """Variance of the position estimate on each axis. Shape: ``(3,)``"""
        return self.state.covariance.diagonal()[:3]

    def clone(self) -> Target:
        return Target(self.target_id, self.state.clone(), self.age)


@dataclasses.dataclass
class Particle:
    """Weighted hypothesis of the multi-target state.

    Attributes:
        weight (float): Current importance weight.
        smoothed_weight (float): Weight smoothed over time by a one-pole filter. It is used to select the
            reported particle, and holds the previous weight when smoothing is enabled.
        prior_weight (float): Weight given at creation (``1 / Np``), restored by `reset`.
        targets (list[Target]): Targets in insertion order.
        elapsed_ticks (int): Ticks elapsed since the last prediction step of this particle (i.e. since its
            last processed observation).
    """

    weight: float
    smoothed_weight: float
    prior_weight: float
    targets: list[Target] = dataclasses.field(default_factory=list)
    elapsed_ticks: int = 0

    @classmethod
    def create(cls, weight: float) -> Particle:
        """Create a particle without any target."""
        return cls(weight, weight, weight)

    @property
    def n_targets(self) -> int:
        return len(self.targets)

    @property
    def target_ids(self) -> list[int]:
        return [target.target_id for target in self.targets]

    def clone(self) -> Particle:
        """Deep copy of the particle (targets and their tensors are copied)."""
        return Particle(
            self.weight,
            self.smoothed_weight,
            self.prior_weight,
            [target.clone() for target in self.targets],
            self.elapsed_ticks,
        )

    def free_id(self, max_targets: int) -> int | None:
        """Smallest id of ``[0, max_targets)`` that is not used by a target, or None if all are taken."""
        used = set(self.target_ids)
        for target_id in range(max_targets):
            if target_id not in used:
                return target_id
        return None

    def add_target(self, state: GaussianState, max_targets: int) -> Target:
        """Append a newborn target with the smallest free id.

        Args:
            state (GaussianState): Initial state of the target (owned by the particle from now on).
            max_targets (int): Size of the id pool.

        Returns:
            Target: The new target.

        Raises:
            ValueError: If the particle already holds ``max_targets`` targets.
        """
        target_id = self.free_id(max_targets)
        if target_id is None:
            raise ValueError(f"Cannot add a target: the particle already holds {max_targets} targets.")

        target = Target(target_id, state)
        self.targets.append(target)
        return target

    def remove_targets(self, indices: Iterable[int]) -> list[Target]:
        """Remove the targets at the given indices.

        The remaining targets keep their relative order (ordered compaction, not swap-remove).

        Returns:
            list[Target]: The removed targets.
        """
        indices = set(indices)
        removed = [target for k, target in enumerate(self.targets) if k in indices]
        self.targets = [target for k, target in enumerate(self.targets) if k not in indices]
        return removed

    def reset(self) -> None:
        """Drop every target and restore the prior weight."""
        self.targets = []
        self.weight = self.prior_weight
        self.smoothed_weight = self.prior_weight
        self.elapsed_ticks = 0
