"""Torch-RBMCDA: Real-time multi-target 3D tracking with Rao-Blackwellized particle filtering.

torch-rbmcda turns a noisy stream of 3D observations (e.g. the directions of arrival estimated by a
sound source localizer) into a stable set of persistent tracks, each with a position and a unique id.

Key features
------------
- **Rao-Blackwellized Monte Carlo Data Association**: particles sample which target (or clutter, or a newborn
  target) produced each observation, while the continuous target states are filtered in closed form.
- **Births and deaths**: targets appear with the observations and disappear following a Gamma distributed
  lifetime. Duplicated tracks of a same source can be forcibly killed.
- **Deterministic**: every random draw comes from an injectable ``torch.Generator``.

Background
----------
The algorithm follows the RBMCDA method of Simo Särkkä, Aki Vehtari and Jouko Lampinen
(*Rao-Blackwellized particle filter for multiple target tracking*, Information Fusion, 2007), and its use for
tracking sound events by Sharath Adavanne, Archontis Politis, Joonas Nikunen and Tuomas Virtanen.

Getting started
---------------
The core API consists of:
- :class:`~torch_rbmcda.TrackerConfig` holding all the parameters of the tracker.
- :class:`~torch_rbmcda.Tracker3D` with :meth:`~torch_rbmcda.Tracker3D.step` called once per tick with the
  observations of the tick.

Lower level building blocks (Kalman filter, discretization, association, prediction and resampling steps) are
available in their own modules.

Notes on shapes
---------------
Kalman states use column vectors: means have shape ``(6, 1)`` (``x, y, z, vx, vy, vz``) and
covariances ``(6, 6)``. All the computations run in ``float64`` by default.
"""

from .config import TrackerConfig
from .kalman_filter import GaussianState, KalmanFilter
from .particle import Particle, Target
from .probability import DegenerateDistributionError
from .tracker import TrackEstimate, Tracker3D

__all__ = [
    "DegenerateDistributionError",
    "GaussianState",
    "KalmanFilter",
    "Particle",
    "Target",
    "TrackEstimate",
    "Tracker3D",
    "TrackerConfig",
]
__version__ = "0.1.0"
