"""Update step: data association of a new observation.

For each particle, every way of explaining the observation is enumerated as an `Event`:

1. Clutter: the observation is noise, the particle is unchanged.
2. Match: the observation comes from the j-th target, which is updated by the Kalman filter.
3. Birth: the observation comes from a new target (only if the particle is not full).

One event is drawn from the importance distribution (proportional to ``prior * likelihood``) and committed.
Events hold full candidate copies of the particle: the input particle is never modified, and nothing is
committed before the draw succeeded.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Sequence

import torch

from .config import TrackerConfig
from .kalman_filter import GaussianState, KalmanFilter
from .particle import Particle
from .probability import EPS, categorical_sample
from .resampling import normalize_weights

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    """Association hypotheses of an observation."""

    CLUTTER = "clutter"
    MATCH = "match"
    BIRTH = "birth"


@dataclasses.dataclass
class Event:
    """A data association hypothesis for one observation and one particle.

    Attributes:
        kind (EventKind): Kind of association.
        prior (float): Prior probability of the association.
        likelihood (float): Likelihood of the observation under this association.
        particle (Particle): Candidate particle if the event is selected.
        target_index (int | None): Index of the matched (or newborn) target in the candidate particle.
            None for clutter.
    """

    kind: EventKind
    prior: float
    likelihood: float
    particle: Particle
    target_index: int | None = None

    @property
    def importance(self) -> float:
        """Unnormalized mass of the event in the importance distribution."""
        return self.prior * self.likelihood


def enumerate_events(
    particle: Particle, observation: torch.Tensor, kalman_filter: KalmanFilter, config: TrackerConfig
) -> list[Event]:
    """Enumerate all the association hypotheses of an observation for a particle.

    Priors:
        - clutter: ``(1 - birth_prior) * noise_likelihood``
        - match to each of the n targets: ``(1 - birth_prior) * (1 - noise_likelihood) / n``
        - birth: ``birth_prior`` (only when ``n < max_active_targets``)

    Args:
        particle (Particle): Current particle (not modified).
        observation (torch.Tensor): Observed position (column vector).
            Shape: ``(3, 1)``
        kalman_filter (KalmanFilter): Filter of the targets.
        config (TrackerConfig): Tracker parameters.

    Returns:
        list[Event]: Clutter event first, then one match per target in order, then the birth event if any.
    """
    events = [
        Event(
            EventKind.CLUTTER,
            (1 - config.birth_prior) * config.noise_likelihood,
            config.clutter_density,
            particle.clone(),
        )
    ]

    if particle.n_targets:
        match_prior = (1 - config.birth_prior) * (1 - config.noise_likelihood) / particle.n_targets
        for j, target in enumerate(particle.targets):
            state, likelihood = kalman_filter.update_with_likelihood(target.state, observation)
            candidate = particle.clone()
            candidate.targets[j].state = state
            events.append(Event(EventKind.MATCH, match_prior, likelihood, candidate, j))

    if particle.n_targets < config.max_active_targets:
        prior_state = GaussianState(config.prior_mean_tensor(), config.prior_covariance_tensor())
        state, likelihood = kalman_filter.update_with_likelihood(prior_state, observation)
        candidate = particle.clone()
        candidate.add_target(state, config.max_active_targets)
        events.append(Event(EventKind.BIRTH, config.birth_prior, likelihood, candidate, candidate.n_targets - 1))

    return events


def update_particle(
    particle: Particle,
    observation: torch.Tensor,
    kalman_filter: KalmanFilter,
    config: TrackerConfig,
    generator: torch.Generator | None = None,
) -> Particle:
    """Associate an observation to a particle.

    One event is drawn from the importance distribution ``q(e) ∝ prior(e) * likelihood(e)``. The weight of the
    committed particle is multiplied by ``likelihood * prior / q(e)``.

    Args:
        particle (Particle): Current particle (not modified).
        observation (torch.Tensor): Observed position (column vector).
            Shape: ``(3, 1)``
        kalman_filter (KalmanFilter): Filter of the targets.
        config (TrackerConfig): Tracker parameters.
        generator (torch.Generator | None): Random source of the draw.

    Returns:
        Particle: The particle of the selected event, with its updated (unnormalized) weight.

    Raises:
        DegenerateDistributionError: If every event has a null importance (e.g. ``noise_likelihood = 0`` and
            all the likelihoods underflow). Configurations with a positive clutter prior never raise.
    """
    events = enumerate_events(particle, observation, kalman_filter, config)
    importances = torch.tensor([event.importance for event in events], dtype=torch.float64)

    selected = categorical_sample(importances, generator)
    event = events[selected]

    importance_probability = importances[selected].item() / (importances.sum().item() + EPS)
    committed = event.particle
    committed.weight = particle.weight * event.likelihood * event.prior / (importance_probability + EPS)

    if event.kind is EventKind.BIRTH:
        logger.debug("Target %d born", committed.targets[event.target_index].target_id)

    return committed


def update(
    particles: Sequence[Particle],
    observation: torch.Tensor,
    kalman_filter: KalmanFilter,
    config: TrackerConfig,
    generator: torch.Generator | None = None,
) -> list[Particle]:
    """Update step of the whole particle set for one observation.

    Weights are renormalized across the set afterwards.

    Args:
        particles (Sequence[Particle]): Current particle set (not modified).
        observation (torch.Tensor): Observed position (column vector).
            Shape: ``(3, 1)``
        kalman_filter (KalmanFilter): Filter of the targets.
        config (TrackerConfig): Tracker parameters.
        generator (torch.Generator | None): Random source.

    Returns:
        list[Particle]: The new particle set, with normalized weights.
    """
    updated = [update_particle(particle, observation, kalman_filter, config, generator) for particle in particles]
    normalize_weights(updated)
    return updated
