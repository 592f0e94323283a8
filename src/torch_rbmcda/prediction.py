"""Prediction step: target deaths and Kalman predictions.

Each target of each particle is either alive or dead. The only transition is alive -> dead, evaluated at every
prediction step:

- The lifetime of a target is Gamma distributed: the older the target, the more likely it dies
  (it models sources leaving the scene).
- With ``force_kill_targets``, a target closer than ``force_kill_distance`` to an older target always dies
  (it prevents duplicated tracks of a single source).

Survivors are advanced by the Kalman prediction.
"""

from __future__ import annotations

import logging
from typing import Sequence

import torch

from .config import TrackerConfig
from .kalman_filter import KalmanFilter
from .particle import Particle, Target
from .probability import death_probability

logger = logging.getLogger(__name__)


def is_duplicate(targets: Sequence[Target], index: int, distance: float) -> bool:
    """Check whether a target duplicates an older one.

    The target at ``index`` is a duplicate if another target is closer than ``distance`` and has been alive
    for longer. For targets of the same age, the first one in insertion order is kept.

    Args:
        targets (Sequence[Target]): Targets of a particle
        index (int): Index of the tested target
        distance (float): Distance under which two targets are considered duplicated

    Returns:
        bool: True if the target should be killed
    """
    target = targets[index]
    for k, other in enumerate(targets):
        if k == index:
            continue

        # Strict order on (age, insertion): a close pair of equal ages loses only its later target, never both
        older = other.age > target.age or (other.age == target.age and k < index)
        if older and torch.linalg.vector_norm(target.position - other.position).item() < distance:
            return True
    return False


def predict_particle(
    particle: Particle,
    kalman_filter: KalmanFilter,
    config: TrackerConfig,
    ticks: int,
    generator: torch.Generator | None = None,
) -> list[int]:
    """Apply the death model and the Kalman prediction to every target of a particle (in place).

    Args:
        particle (Particle): Particle to advance. Its targets are modified in place.
        kalman_filter (KalmanFilter): Filter holding the one-tick transition model.
        config (TrackerConfig): Tracker parameters (death model and force kill policy).
        ticks (int): Number of ticks elapsed since the last prediction. With 0 ticks, no time
            elapses: death probabilities are null (only force kills may happen) and states are unchanged.
        generator (torch.Generator | None): Random source for the death draws.

    Returns:
        list[int]: Ids of the targets that died.
    """
    dead: list[int] = []
    age_step = ticks * config.dt

    for j, target in enumerate(particle.targets):
        if dead and not config.allow_multi_death:
            break

        p_death = death_probability(target.age * config.dt, age_step, config.death_shape, config.death_scale)

        if config.force_kill_targets and is_duplicate(particle.targets, j, config.force_kill_distance):
            p_death = 1.0

        # One draw per evaluated target, even when p_death is 0 or 1
        if torch.rand((), generator=generator, dtype=torch.float64).item() < p_death:
            dead.append(j)

    dead_ids = [target.target_id for target in particle.remove_targets(dead)]

    for target in particle.targets:
        target.state = kalman_filter.predict_many(target.state, ticks)
        target.age += ticks

    if dead_ids:
        logger.debug("Targets %s died", dead_ids)

    return dead_ids


def predict(
    particles: Sequence[Particle],
    kalman_filter: KalmanFilter,
    config: TrackerConfig,
    generator: torch.Generator | None = None,
) -> None:
    """Prediction step over all the particles (in place).

    Each particle is advanced by its own number of elapsed ticks, which is then reset.

    Args:
        particles (Sequence[Particle]): Particle set.
        kalman_filter (KalmanFilter): Filter holding the one-tick transition model.
        config (TrackerConfig): Tracker parameters.
        generator (torch.Generator | None): Random source for the death draws.
    """
    for particle in particles:
        predict_particle(particle, kalman_filter, config, particle.elapsed_ticks, generator)
        particle.elapsed_ticks = 0
