"""Multi-target 3D tracker (RBMCDA).

The tracker composes, for each observation of a tick, the update step (data association), the prediction step
(deaths and Kalman predictions) and the resampling. The reported tracks are the targets of the particle with the
highest (smoothed) weight.

The tracker is synchronous and not reentrant: concurrent calls from several threads require external locking.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable, Sequence

import torch

from . import association, prediction, resampling
from .config import TrackerConfig
from .discretization import constant_velocity_kalman_filter
from .particle import Particle

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class TrackEstimate:
    """Estimate of a tracked target, as reported by the tracker.

    Attributes:
        target_id (int): Id of the target, in ``[0, max_active_targets)``. Ids are reused once freed.
        position (tuple[float, float, float]): Estimated position (unit vector in direction-only tracking).
        velocity (tuple[float, float, float]): Estimated velocity.
        variance (tuple[float, float, float]): Variance of the position estimate on each axis.
    """

    target_id: int
    position: tuple[float, float, float]
    velocity: tuple[float, float, float]
    variance: tuple[float, float, float]


class Tracker3D:
    """Rao-Blackwellized Monte Carlo Data Association tracker of 3D targets.

    Each particle samples the association of every observation (clutter, existing target or new target) and the
    births/deaths of targets, while each target state is filtered in closed form by a constant velocity Kalman
    filter.

    Usage:
    ```python
        tracker = Tracker3D(TrackerConfig(n_particles=30), generator=torch.Generator().manual_seed(0))

        for observations in stream:  # One (possibly empty) list of (x, y, z) per tick
            positions, ids = tracker.step(observations)
    ```

    Attributes:
        config (TrackerConfig): Parameters of the tracker (immutable).
        kalman_filter (KalmanFilter): Discretized constant velocity model shared by every target.
        generator (torch.Generator | None): Random source of all the draws. Seed it for reproducible tracking.
            If None, the global torch generator is used.
    """

    def __init__(self, config: TrackerConfig | None = None, *, generator: torch.Generator | None = None) -> None:
        self.config = config if config is not None else TrackerConfig()
        self.generator = generator
        self.kalman_filter = constant_velocity_kalman_filter(
            self.config.measurement_noise_std,
            self.config.noise_spectral_density,
            self.config.dt,
            dtype=self.config.dtype,
        )

        self._particles: list[Particle] = []
        self._n_ticks = 0
        self.reset()

        logger.debug(
            "Tracker created with %d particles and up to %d targets",
            self.config.n_particles,
            self.config.max_active_targets,
        )

    @property
    def particles(self) -> tuple[Particle, ...]:
        """Current particle set (read-only view, the particles must not be modified)."""
        return tuple(self._particles)

    @property
    def n_ticks(self) -> int:
        """Number of processed ticks since creation (or the last reset)."""
        return self._n_ticks

    def weights(self) -> torch.Tensor:
        """Normalized weights of the particles. Shape: ``(Np,)``"""
        return resampling.particle_weights(self._particles)

    def reset(self) -> None:
        """Forget every target: back to ``Np`` empty particles of weight ``1 / Np``."""
        self._particles = [Particle.create(1 / self.config.n_particles) for _ in range(self.config.n_particles)]
        self._n_ticks = 0

    def best_particle(self) -> Particle:
        """Particle with the highest smoothed weight (the current weight when smoothing is disabled)."""
        return self._particles[resampling.best_index(self._particles, smoothed=True)]

    def step(
        self, observations: Iterable[Sequence[float]] | torch.Tensor
    ) -> tuple[list[tuple[float, float, float]], list[int]]:
        """Process the observations of a tick.

        For each observation, in order: update step on every particle, prediction step over the ticks elapsed
        since the previous processed observation, resampling if the set is degenerated, and weight smoothing.
        A tick without observations only runs the prediction step.

        Non-finite observations are ignored.

        Args:
            observations (Iterable[Sequence[float]] | torch.Tensor): Observed positions (or directions) of
                the tick.
                Shape: ``(n, 3)`` (n may be 0)

        Returns:
            list[tuple[float, float, float]]: Positions of the reported targets, in the insertion order of the
                best particle.
            list[int]: Ids of the reported targets.

        Raises:
            ValueError: If the observations cannot be interpreted as a ``(n, 3)`` array.
        """
        observations = self._prepare(observations)

        self._n_ticks += 1
        for particle in self._particles:
            particle.elapsed_ticks += 1

        if not observations.shape[0]:
            prediction.predict(self._particles, self.kalman_filter, self.config, self.generator)

        for observation in observations:
            self._particles = association.update(
                self._particles, observation[:, None], self.kalman_filter, self.config, self.generator
            )
            prediction.predict(self._particles, self.kalman_filter, self.config, self.generator)

            if resampling.needs_resampling(self._particles):
                logger.debug("Tick %d: resampling to the best particle", self._n_ticks)
                self._particles = resampling.resample_to_best(self._particles)

            resampling.smooth_weights(self._particles, self.config.weight_smoothing)

        estimates = self.estimates()
        return [estimate.position for estimate in estimates], [estimate.target_id for estimate in estimates]

    def estimates(self) -> list[TrackEstimate]:
        """Targets of the best particle, in insertion order."""
        estimates = []
        for target in self.best_particle().targets:
            position = target.position
            if self.config.unit_vectors:
                position = position / torch.linalg.vector_norm(position).clamp_min(1e-12)

            estimates.append(
                TrackEstimate(
                    target.target_id,
                    tuple(position.tolist()),
                    tuple(target.velocity.tolist()),
                    tuple(target.position_variance.tolist()),
                )
            )
        return estimates

    def _prepare(self, observations: Iterable[Sequence[float]] | torch.Tensor) -> torch.Tensor:
        """Convert the observations into a ``(n, 3)`` tensor, dropping non-finite rows."""
        if isinstance(observations, torch.Tensor):
            observations = observations.to(self.config.dtype)
        else:
            observations = torch.tensor(
                [[float(value) for value in observation] for observation in observations], dtype=self.config.dtype
            )

        if observations.numel() == 0:
            return observations.reshape(0, 3)
        if observations.ndim != 2 or observations.shape[1] != 3:
            raise ValueError(f"Observations must have a shape (n, 3). Found {tuple(observations.shape)}")

        valid = torch.isfinite(observations).all(dim=1)
        if not valid.all():
            logger.warning("Tick %d: ignoring %d non-finite observation(s)", self._n_ticks + 1, (~valid).sum().item())
            observations = observations[valid]

        if self.config.unit_vectors:
            observations = observations / torch.linalg.vector_norm(observations, dim=1, keepdim=True).clamp_min(1e-12)

        return observations
