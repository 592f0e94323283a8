"""Configuration of the tracker.

The configuration is immutable: a tracker is built from it once, and changing any parameter requires
building a new tracker.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Any, Mapping, Sequence

import torch

MAX_PARTICLES = 100
MAX_ACTIVE_TARGETS = 100

_DEFAULT_PRIOR_MEAN = (1.0, 0.0, 0.0, 0.0, 0.0, 0.0)  # In front of the listener, not moving
_DEFAULT_PRIOR_VARIANCES = (4.0, 4.0, 4.0, 1e-3, 1e-3, 1e-3)


@dataclasses.dataclass(frozen=True)
class TrackerConfig:
    """Parameters of the tracker.

    Attributes:
        n_particles (int): Number of Monte Carlo samples ``Np``. The more complex the distribution, the more
            particles are required (and the slower the tracker).
        max_active_targets (int): Maximum number of simultaneous targets. Target ids are drawn from
            ``[0, max_active_targets)``.
        noise_likelihood (float): Prior probability that an observation is clutter. In [0, 1].
        measurement_noise_std (float): Measurement noise standard deviation (same unit as observations).
        noise_spectral_density (float): Spectral density of the white noise acceleration. It controls the
            smoothness of the tracks.
        allow_multi_death (bool): Allow several targets of a particle to die in the same prediction step.
        birth_prior (float): Prior probability that an observation belongs to a new target. In [0, 1].
        death_shape (float): Shape (alpha) of the Gamma distributed target lifetime.
        death_scale (float): Scale (beta, in seconds) of the Gamma distributed target lifetime.
        dt (float): Time between two ticks in seconds (hop length of the analysis frames).
        weight_smoothing (float): Coefficient of the one-pole filter smoothing the weights over ticks. The
            reported particle is the one with the highest smoothed weight. 0 disables the smoothing. In [0, 1).
        force_kill_targets (bool): Kill any target closer than ``force_kill_distance`` to an older target.
        force_kill_distance (float): Distance under which two targets are considered duplicated.
        prior_mean (tuple[float, ...]): Prior mean of newborn targets ``[x, y, z, vx, vy, vz]``.
        prior_covariance (tuple[tuple[float, ...], ...] | tuple[float, ...]): Prior covariance of newborn
            targets. Either a 6x6 diagonal matrix or its 6 diagonal variances.
        clutter_density (float): Likelihood of an observation under the clutter hypothesis. For clutter
            uniformly distributed on the unit sphere, it is 1 / (4π).
        unit_vectors (bool): Direction-only tracking: observations are normalised to unit vectors and so
            are the reported positions.
        dtype (torch.dtype): Dtype of all the tensors of the tracker.
    """

    n_particles: int = 20
    max_active_targets: int = 4
    noise_likelihood: float = 0.2
    measurement_noise_std: float = 0.1
    noise_spectral_density: float = 1e-3
    allow_multi_death: bool = True
    birth_prior: float = 0.5
    death_shape: float = 20.0
    death_scale: float = 1.0
    dt: float = 128 / 48000
    weight_smoothing: float = 0.5
    force_kill_targets: bool = True
    force_kill_distance: float = 0.2
    prior_mean: tuple[float, ...] = _DEFAULT_PRIOR_MEAN
    prior_covariance: tuple[Any, ...] = _DEFAULT_PRIOR_VARIANCES
    clutter_density: float = 1 / (4 * math.pi)
    unit_vectors: bool = False
    dtype: torch.dtype = torch.float64

    def __post_init__(self) -> None:
        # Freeze sequences given as lists or tensors
        object.__setattr__(self, "prior_mean", tuple(float(value) for value in _as_list(self.prior_mean)))
        object.__setattr__(self, "prior_covariance", _freeze_covariance(self.prior_covariance))
        self.validate()

    def validate(self) -> None:
        """Check the parameters.

        Raises:
            ValueError: If any parameter is out of its supported range.
        """
        for name in ("n_particles", "max_active_targets"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer. Found {value!r}")

        if not 1 <= self.n_particles <= MAX_PARTICLES:
            raise ValueError(f"n_particles must be an integer in [1, {MAX_PARTICLES}]. Found {self.n_particles}")
        if not 1 <= self.max_active_targets <= MAX_ACTIVE_TARGETS:
            raise ValueError(
                f"max_active_targets must be an integer in [1, {MAX_ACTIVE_TARGETS}]. Found {self.max_active_targets}"
            )

        for name in ("noise_likelihood", "birth_prior"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1]. Found {value}")

        # An empty particle could explain an observation neither as clutter nor as a new target
        if self.noise_likelihood == 0 and self.birth_prior == 0:
            raise ValueError("noise_likelihood and birth_prior cannot both be 0.")

        for name in ("measurement_noise_std", "death_shape", "death_scale", "dt", "clutter_density"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(f"{name} must be positive. Found {value}")

        for name in ("noise_spectral_density", "force_kill_distance"):
            value = getattr(self, name)
            if not value >= 0:
                raise ValueError(f"{name} must be non-negative. Found {value}")

        if not 0.0 <= self.weight_smoothing < 1.0:
            raise ValueError(f"weight_smoothing must be in [0, 1). Found {self.weight_smoothing}")

        if len(self.prior_mean) != 6:
            raise ValueError(f"prior_mean must have 6 values (position and velocity). Found {len(self.prior_mean)}")

        covariance = self.prior_covariance_tensor()
        if not torch.equal(covariance, torch.diag(covariance.diagonal())):
            raise ValueError("prior_covariance must be diagonal.")
        if (covariance.diagonal() < 0).any():
            raise ValueError("prior_covariance must have non-negative variances.")

    def prior_mean_tensor(self) -> torch.Tensor:
        """Prior mean of newborn targets. Shape: ``(6, 1)``"""
        return torch.tensor(self.prior_mean, dtype=self.dtype)[:, None]

    def prior_covariance_tensor(self) -> torch.Tensor:
        """Prior covariance of newborn targets. Shape: ``(6, 6)``"""
        return torch.tensor(self.prior_covariance, dtype=self.dtype)

    @classmethod
    def from_dict(cls, parameters: Mapping[str, Any]) -> TrackerConfig:
        """Build a configuration from plain values (e.g. a parsed yaml/json file).

        Missing keys take their default value. ``dtype`` may be given by name (``"float32"``).

        Raises:
            ValueError: For unknown keys or invalid values.
        """
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = set(parameters) - known
        if unknown:
            raise ValueError(f"Unknown tracker parameters: {sorted(unknown)}")

        parameters = dict(parameters)
        if isinstance(parameters.get("dtype"), str):
            parameters["dtype"] = getattr(torch, parameters["dtype"])

        return cls(**parameters)

    def to_dict(self) -> dict[str, Any]:
        """Plain values of the configuration (inverse of `from_dict`)."""
        parameters = {field.name: getattr(self, field.name) for field in dataclasses.fields(self)}
        parameters["dtype"] = str(self.dtype).removeprefix("torch.")
        parameters["prior_mean"] = list(self.prior_mean)
        parameters["prior_covariance"] = [list(row) for row in self.prior_covariance]
        return parameters


def _as_list(values: Any) -> list:
    if isinstance(values, torch.Tensor):
        return values.tolist()
    return list(values)


def _freeze_covariance(covariance: Any) -> tuple[tuple[float, ...], ...]:
    """Convert a covariance (6 variances or a 6x6 matrix) into a 6x6 tuple of tuples."""
    rows = _as_list(covariance)
    if len(rows) != 6:
        raise ValueError(f"prior_covariance must be a 6x6 matrix or 6 variances. Found {len(rows)} rows")

    if all(not isinstance(row, Sequence) for row in rows):
        return tuple(tuple(float(rows[i]) if i == j else 0.0 for j in range(6)) for i in range(6))

    matrix = tuple(tuple(float(value) for value in row) for row in rows)
    if any(len(row) != 6 for row in matrix):
        raise ValueError("prior_covariance must be a 6x6 matrix or 6 variances.")
    return matrix
