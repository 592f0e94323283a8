"""Probability kernel of the tracker.

Pure functions used by the prediction (death model) and update (association)
steps: Gamma distribution CDF through the regularized incomplete gamma
function, multivariate Gaussian density and categorical sampling.

All functions accept python floats or tensors and rely on PyTorch special
functions. Numerical degeneracy (saturated CDFs, near-singular covariances,
vanishing weights) is guarded with small additive epsilons rather than raised,
except for the categorical draw which has an explicit precondition.
"""

from __future__ import annotations

import math

import torch

EPS = 1e-12
"""Guard used in denominators and as the determinant of singular covariances."""

LOG_2PI = math.log(2 * math.pi)


class DegenerateDistributionError(ValueError):
    """Raised when a categorical distribution has no positive probability mass."""


def log_gamma(x: float | torch.Tensor) -> torch.Tensor:
    """Natural logarithm of the Gamma function ``log Γ(x)``."""
    return torch.lgamma(torch.as_tensor(x, dtype=torch.float64))


def regularized_lower_gamma(a: float | torch.Tensor, x: float | torch.Tensor) -> torch.Tensor:
    r"""Regularized lower incomplete gamma function.

    .. math::

        P(a, x) = \frac{\gamma(a, x)}{\Gamma(a)} = \frac{1}{\Gamma(a)} \int_0^x t^{a-1} e^{-t} dt

    Notes:
        ``P(a, x) = 0`` for ``x <= 0`` (``torch.special.gammainc`` is only defined on positive values).

    Args:
        a (float | torch.Tensor): Shape parameter (> 0)
        x (float | torch.Tensor): Upper integration bound

    Returns:
        torch.Tensor: P(a, x) in [0, 1] (float64, broadcasted shape of ``a`` and ``x``)
    """
    a = torch.as_tensor(a, dtype=torch.float64)
    x = torch.as_tensor(x, dtype=torch.float64)
    positive = x > 0
    safe_x = torch.where(positive, x, torch.ones_like(x))
    return torch.where(positive, torch.special.gammainc(a, safe_x), torch.zeros_like(x))


def gamma_cdf(x: float | torch.Tensor, shape: float, scale: float) -> torch.Tensor:
    """Cumulative distribution function of Gamma(shape, scale).

    Args:
        x (float | torch.Tensor): Value(s) at which the CDF is evaluated
        shape (float): Shape parameter alpha (> 0)
        scale (float): Scale parameter beta (> 0)

    Returns:
        torch.Tensor: P(X <= x) for X ~ Gamma(shape, scale)
    """
    return regularized_lower_gamma(shape, torch.as_tensor(x, dtype=torch.float64) / scale)


def death_probability(age: float, elapsed: float, shape: float, scale: float) -> float:
    """Probability that a target alive for ``age`` seconds dies within the next ``elapsed`` seconds.

    The lifetime of a target is modelled as Gamma(shape, scale) distributed. Conditioning on
    the survival up to ``age`` gives::

        p = 1 - (1 - F(age + elapsed)) / (1 - F(age))

    with ``F`` the Gamma CDF. For newborn targets (``age == 0``) this is simply ``F(elapsed)``.

    Old targets saturate the CDF (``F(age) -> 1``): the denominator is guarded with ``EPS``, which
    drives the probability towards 1.

    Args:
        age (float): Time the target has been alive (seconds)
        elapsed (float): Time elapsed since the last prediction (seconds)
        shape (float): Shape alpha of the lifetime distribution
        scale (float): Scale beta of the lifetime distribution

    Returns:
        float: Death probability in [0, 1]
    """
    if elapsed <= 0:
        return 0.0

    cdf_after = gamma_cdf(age + elapsed, shape, scale).item()
    if age <= 0:
        return cdf_after

    cdf_before = gamma_cdf(age, shape, scale).item()
    probability = 1.0 - (1.0 - cdf_after) / (1.0 - cdf_before + EPS)
    return min(max(probability, 0.0), 1.0)


def gaussian_log_pdf(
    x: torch.Tensor, mean: torch.Tensor, covariance: torch.Tensor, precision: torch.Tensor | None = None
) -> torch.Tensor:
    """Log density of a multivariate normal distribution.

    Vectors are column vectors (``(..., dim, 1)``) as in :class:`~torch_rbmcda.GaussianState`.
    The log-determinant is computed with ``slogdet``, so tiny but well-conditioned covariances are exact.
    Singular covariances (non-positive determinant) use ``EPS`` as determinant and yield a (very large but)
    finite density instead of an error.

    Args:
        x (torch.Tensor): Evaluated point(s)
            Shape: ``(..., dim, 1)``
        mean (torch.Tensor): Mean of the distribution
            Shape: ``(..., dim, 1)``
        covariance (torch.Tensor): Covariance of the distribution
            Shape: ``(..., dim, dim)``
        precision (torch.Tensor | None): Optional precomputed inverse covariance
            Shape: ``(..., dim, dim)``

    Returns:
        torch.Tensor: log N(x; mean, covariance)
            Shape: ``(...)``
    """
    if precision is None:
        precision = torch.linalg.pinv(covariance, hermitian=True)

    diff = x - mean
    maha_2 = (diff.mT @ precision @ diff)[..., 0, 0]
    sign, log_abs_det = torch.linalg.slogdet(covariance)
    # Only singular (or numerically indefinite) covariances are floored
    log_det = torch.where(sign > 0, log_abs_det, torch.full_like(log_abs_det, math.log(EPS)))
    dim = covariance.shape[-1]
    return -0.5 * (dim * LOG_2PI + log_det + maha_2)


def gaussian_pdf(
    x: torch.Tensor, mean: torch.Tensor, covariance: torch.Tensor, precision: torch.Tensor | None = None
) -> torch.Tensor:
    """Density of a multivariate normal distribution (see `gaussian_log_pdf`)."""
    return gaussian_log_pdf(x, mean, covariance, precision).exp()


def normalize(weights: torch.Tensor) -> torch.Tensor:
    """Normalize non-negative weights so that they sum to one (guarded with ``EPS``)."""
    return weights / (weights.sum() + EPS)


def categorical_sample(weights: torch.Tensor, generator: torch.Generator | None = None) -> int:
    """Draw an index with probability proportional to ``weights``.

    Precondition:
        ``weights`` must be non-negative, finite and sum to a strictly positive value. This is the
        caller's responsibility: a degenerate distribution raises instead of silently returning an
        arbitrary index.

    Args:
        weights (torch.Tensor): Unnormalized non-negative weights
            Shape: ``(n,)``
        generator (torch.Generator | None): Random source. If None, the global torch generator is used.

    Returns:
        int: Sampled index in [0, n)

    Raises:
        DegenerateDistributionError: if the weights are empty, negative, non-finite or sum to zero.
    """
    weights = torch.as_tensor(weights, dtype=torch.float64)
    if weights.numel() == 0:
        raise DegenerateDistributionError("Cannot sample from an empty categorical distribution.")
    if not torch.isfinite(weights).all() or (weights < 0).any():
        raise DegenerateDistributionError(f"Categorical weights must be finite and non-negative. Found {weights}")

    total = weights.sum()
    if total <= 0:
        raise DegenerateDistributionError("Categorical weights have no positive probability mass.")

    return int(torch.multinomial(weights / total, 1, generator=generator).item())
