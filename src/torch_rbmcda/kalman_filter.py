from __future__ import annotations

import dataclasses

import torch
import torch.linalg

from .probability import gaussian_log_pdf

# Note on runtime:
# Each target is filtered on its own (targets are created and destroyed independently in each particle),
# hence matrices are tiny (6x6 states, 3x3 innovations) and explicit inverses are used rather than
# cholesky solves. The innovation precision is computed once in `project` and shared between the
# likelihood evaluation and the Kalman gain.


@dataclasses.dataclass
class GaussianState:
    """Gaussian state for Kalman filtering.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - State/measurement vectors are **column vectors** with shape ``(..., dim, 1)``.
    - For a tracked target, the state is ``[x, y, z, vx, vy, vz]``.

    An optional precision matrix (inverse covariance) can be stored. When present, it is re-used
    by the Mahalanobis distance and the likelihood evaluation.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
            If ``None``, it may be computed lazily by some methods.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        """Return a deep copy of the state.

        Uses ``Tensor.clone()`` on all stored tensors, so that the copy never shares memory with `self`.

        Returns:
            GaussianState: The cloned state
        """
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute squared Mahalanobis distance to a measure.

        Computes:

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance
            Shape: ``(...)``
        """
        diff = self.mean - measure
        if self.precision is None:
            self.precision = self.covariance.inverse()
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of the given measure under the Gaussian distribution.

        For dimension ``dim``:

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood
            Shape: ``(...)``
        """
        if self.precision is None:
            self.precision = self.covariance.inverse()
        return gaussian_log_pdf(measure, self.mean, self.covariance, self.precision)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the likelihood of the given measure under the Gaussian distribution.

        It takes the exponential of the log-likelihood.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Likelihood
            Shape: ``(...)``
        """
        return self.log_likelihood(measure).exp()


class KalmanFilter:
    """Kalman filter of a single tracked target.

    This class estimates the latent state of a linear dynamical system under Gaussian noise:

        x_k = A x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k     + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (position and velocity, ``dim_x = 6``),
    - ``z_k`` is the observed position (``dim_z = 3``),
    - ``A`` is the discrete transition (process) matrix,
    - ``Q`` is the discrete process noise covariance,
    - ``H`` is the measurement matrix (selecting the positions),
    - ``R`` is the measurement noise covariance.

    ``A`` and ``Q`` are usually obtained by discretizing a continuous model once
    (see :func:`~torch_rbmcda.discretization.lti_disc`).

    None of the methods mutate their inputs: committing an updated state is the caller's decision.

    Attributes:
        process_matrix (torch.Tensor): Process/Transition matrix ``A``.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``.
            Shape: ``(dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
            Shape: ``(dim_z, dim_z)``
        joseph_update (bool): If True, use the Joseph form covariance update, which keeps the covariance
            symmetric positive semi-definite at the cost of a slower update.
            Default: False
    """

    def __init__(
        self,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        *,
        joseph_update=False,
    ) -> None:
        # We do not check that any device/dtype/shape are shared (but they should be)
        self.process_matrix = process_matrix
        self.measurement_matrix = measurement_matrix
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.joseph_update = joseph_update

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.measurement_matrix.shape[-2]

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self.process_matrix.dtype

    def predict(self, state: GaussianState) -> GaussianState:
        """Compute the predicted (prior) state.

        From a state x_{k-1} | ... ~ N(mu_{k-1}, P_{k-1}), it applies the process model, leading to
        x_k | ... ~ N(mu_k, P_k) with:

            mu_k = A mu_{k-1}
            P_k = A P_{k-1} Aᵀ + Q

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Returns:
            GaussianState: Predicted prior state on the next time step.
        """
        mean = self.process_matrix @ state.mean
        covariance = self.process_matrix @ state.covariance @ self.process_matrix.mT + self.process_noise

        return GaussianState(mean, covariance)

    def predict_many(self, state: GaussianState, steps: int) -> GaussianState:
        """Apply `predict` ``steps`` times.

        Args:
            state (GaussianState): Current state estimation.
            steps (int): Number of time steps to predict. With 0 steps, a copy of the state is returned.

        Returns:
            GaussianState: Predicted state ``steps`` time steps later.
        """
        if steps <= 0:
            return state.clone()

        for _ in range(steps):
            state = self.predict(state)
        return state

    def project(self, state: GaussianState, *, precompute_precision=True) -> GaussianState:
        """Project a state into measurement space.

        From a state x_k | ... ~ N(mu_k, P_k), it applies the measurement model, leading to
        a Gaussian state over ``z``: z_k | ... ~ N(y_k, S_k) with:

            y_k = H mu_k
            S_k = H P_k Hᵀ + R

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            precompute_precision (bool): If True, compute and store ``S^{-1}`` in the returned state's
                ``precision``. It is then shared by `update` and the likelihood evaluation.
                Default: True

        Returns:
            GaussianState: Projected state in the measurement space.
                Shape (mean): ``(..., dim_z, 1)``
                Shape (covariance): ``(..., dim_z, dim_z)``
        """
        mean = self.measurement_matrix @ state.mean
        covariance = self.measurement_matrix @ state.covariance @ self.measurement_matrix.mT + self.measurement_noise

        return GaussianState(mean, covariance, covariance.inverse() if precompute_precision else None)

    def update(
        self, state: GaussianState, measure: torch.Tensor, *, projection: GaussianState | None = None
    ) -> GaussianState:
        """Update a state estimate using a new measure.

        `update` follows three main steps:
        1. Computing the measure expected distribution z_k | ... ~ N(y_k, S_k) with `project`.
        2. Kalman gain computation: K = P_k Hᵀ S_k^{-1}
        3. Incorporate z_k information in the state:
            mu'_k = mu_k + K (z_k - y_k)
            P'_k = (I - K H) P_k   OR [JOSEPH_UPDATE] P'_k = (I - K H) P_k (I - K H)ᵀ + K R Kᵀ

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor): Measure of the state `z_k` (column vector).
                Shape: ``(..., dim_z, 1)``
            projection (GaussianState | None): Optional precomputed projection from `project`.

        Returns:
            GaussianState: Updated posterior state.
        """
        if projection is None:
            projection = self.project(state)

        residual = measure - projection.mean

        if projection.precision is None:
            # Find K without inversing S but by solving the linear system SK^T = (PH^T)^T
            chol_decomposition, _ = torch.linalg.cholesky_ex(projection.covariance)
            kalman_gain = torch.cholesky_solve(
                self.measurement_matrix @ state.covariance.mT, chol_decomposition
            ).mT
        else:
            kalman_gain = state.covariance @ self.measurement_matrix.mT @ projection.precision

        mean = state.mean + kalman_gain @ residual

        if self.joseph_update:
            factor = torch.eye(self.state_dim, dtype=self.dtype) - kalman_gain @ self.measurement_matrix
            covariance = factor @ state.covariance @ factor.mT + kalman_gain @ self.measurement_noise @ kalman_gain.mT
        else:
            covariance = state.covariance - kalman_gain @ self.measurement_matrix @ state.covariance

        # Remove the asymmetry introduced by floating errors
        covariance = 0.5 * (covariance + covariance.mT)

        return GaussianState(mean, covariance)

    def update_with_likelihood(self, state: GaussianState, measure: torch.Tensor) -> tuple[GaussianState, float]:
        """Update a state and evaluate the likelihood of the measure.

        The likelihood is the predictive density of the measure N(z_k; y_k, S_k), which is the
        quantity weighting a data association hypothesis.

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(dim_x, 1)``
                Shape (covariance): ``(dim_x, dim_x)``
            measure (torch.Tensor): Measure of the state `z_k` (column vector).
                Shape: ``(dim_z, 1)``

        Returns:
            GaussianState: Updated posterior state.
            float: Likelihood of the measure given the prior state.
        """
        projection = self.project(state)
        likelihood = projection.likelihood(measure).item()
        return self.update(state, measure, projection=projection), likelihood

    def __repr__(self) -> str:
        return f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim})"
