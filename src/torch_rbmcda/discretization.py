"""Discretization of continuous linear time-invariant models.

Targets are modelled in continuous time by a linear stochastic differential equation:

    dx/dt = F x + L w(t),   w(t) white noise with spectral density Qc

Sampling it every ``dt`` seconds gives the discrete model used by :class:`KalmanFilter`:

    x_{k+1} = A x_k + q_k,   q_k ~ N(0, Q)

with ``A = expm(F dt)`` and ``Q = ∫_0^dt expm(F s) L Qc Lᵀ expm(F s)ᵀ ds``. The integral is computed in closed
form by matrix fraction decomposition. This is done once, when the tracker is built.
"""

from __future__ import annotations

import torch

from .kalman_filter import KalmanFilter


def lti_disc(
    feedback_matrix: torch.Tensor,
    noise_matrix: torch.Tensor | None = None,
    spectral_density: torch.Tensor | None = None,
    dt=1.0,
) -> tuple[torch.Tensor, torch.Tensor]:
    r"""Discretize a continuous LTI model.

    The transition matrix is ``A = expm(F dt)``. The process noise covariance follows the matrix fraction
    decomposition: with

    .. math::

        \Phi = \begin{pmatrix} F & L Q_c L^T \\ 0 & -F^T \end{pmatrix} dt,
        \quad \begin{pmatrix} C \\ D \end{pmatrix} = \exp(\Phi) \begin{pmatrix} 0 \\ I \end{pmatrix}

    then ``Q = C D^{-1}``, obtained by solving ``Dᵀ Qᵀ = Cᵀ`` (no explicit inverse).

    Matrix exponentials are computed with ``torch.linalg.matrix_exp`` (scaling and squaring with Padé
    approximants), which stays accurate when ``F dt`` is poorly scaled.

    Args:
        feedback_matrix (torch.Tensor): Continuous feedback matrix ``F``.
            Shape: ``(N, N)``
        noise_matrix (torch.Tensor | None): Noise effect matrix ``L``. Identity by default.
            Shape: ``(N, M)``
        spectral_density (torch.Tensor | None): Noise spectral density ``Qc``. Zeros by default.
            Shape: ``(M, M)``
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Discrete transition matrix ``A``
            Shape: ``(N, N)``
        torch.Tensor: Discrete process noise covariance ``Q``
            Shape: ``(N, N)``
    """
    dim = feedback_matrix.shape[-1]
    dtype = feedback_matrix.dtype

    if noise_matrix is None:
        noise_matrix = torch.eye(dim, dtype=dtype)
    if spectral_density is None:
        spectral_density = torch.zeros(noise_matrix.shape[-1], noise_matrix.shape[-1], dtype=dtype)

    transition = torch.linalg.matrix_exp(feedback_matrix * dt)

    phi = torch.zeros(2 * dim, 2 * dim, dtype=dtype)
    phi[:dim, :dim] = feedback_matrix
    phi[:dim, dim:] = noise_matrix @ spectral_density @ noise_matrix.mT
    phi[dim:, dim:] = -feedback_matrix.mT

    zero_identity = torch.zeros(2 * dim, dim, dtype=dtype)
    zero_identity[dim:] = torch.eye(dim, dtype=dtype)

    fraction = torch.linalg.matrix_exp(phi * dt) @ zero_identity
    numerator, denominator = fraction[:dim], fraction[dim:]

    process_noise = torch.linalg.solve(denominator.mT, numerator.mT).mT
    process_noise = 0.5 * (process_noise + process_noise.mT)  # Symmetric up to floating errors

    return transition, process_noise


def constant_velocity_model(dim=3, dtype=torch.float64) -> tuple[torch.Tensor, torch.Tensor]:
    """Continuous white noise acceleration model.

    The state is ordered by derivative: positions first, then velocities (``x, y, z, vx, vy, vz`` in 3D).
    Velocities integrate into positions and the accelerations are white noise.

    Example (``dim=1``)::

        F = [[0, 1],     L = [[0],
             [0, 0]]          [1]]

    Args:
        dim (int): Number of spatial dimensions.
            Default: 3
        dtype (torch.dtype): Dtype of the matrices.
            Default: float64

    Returns:
        torch.Tensor: Feedback matrix ``F``
            Shape: ``(2 * dim, 2 * dim)``
        torch.Tensor: Noise effect matrix ``L``
            Shape: ``(2 * dim, dim)``
    """
    feedback_matrix = torch.zeros(2 * dim, 2 * dim, dtype=dtype)
    feedback_matrix[:dim, dim:] = torch.eye(dim, dtype=dtype)

    noise_matrix = torch.zeros(2 * dim, dim, dtype=dtype)
    noise_matrix[dim:] = torch.eye(dim, dtype=dtype)

    return feedback_matrix, noise_matrix


def constant_velocity_kalman_filter(
    measurement_std: float,
    spectral_density: float,
    dt: float,
    *,
    dim=3,
    dtype=torch.float64,
    joseph_update=False,
) -> KalmanFilter:
    """Create the constant velocity Kalman filter used for each target.

    Positions are measured with independent noise on each axis. The process noise is the discretized
    white noise acceleration of `constant_velocity_model`.

    Args:
        measurement_std (float): Measurement noise standard deviation (same unit as the positions).
        spectral_density (float): Spectral density of the white noise acceleration. It controls the
            smoothness of the tracks.
        dt (float): Time step duration.
        dim (int): Number of spatial dimensions.
            Default: 3
        dtype (torch.dtype): Dtype of the filter.
            Default: float64
        joseph_update (bool): Use the Joseph form covariance update.
            Default: False

    Returns:
        KalmanFilter: Filter with a ``(2 * dim)`` state and a ``dim`` measure.
    """
    feedback_matrix, noise_matrix = constant_velocity_model(dim, dtype)
    transition, process_noise = lti_disc(
        feedback_matrix, noise_matrix, spectral_density * torch.eye(dim, dtype=dtype), dt
    )

    measurement_matrix = torch.eye(dim, 2 * dim, dtype=dtype)
    measurement_noise = measurement_std**2 * torch.eye(dim, dtype=dtype)

    return KalmanFilter(
        transition.contiguous(),
        measurement_matrix,
        process_noise.contiguous(),
        measurement_noise,
        joseph_update=joseph_update,
    )
