import torch

from torch_rbmcda import GaussianState


def _spd_matrix(dim: int) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def test_clone_is_deep_copy():
    mean = torch.randn(6, 1, dtype=torch.float64)
    cov = _spd_matrix(6)
    precision = cov.inverse()

    s = GaussianState(mean, cov, precision)
    c = s.clone()

    assert c is not s
    assert c.precision is not None
    assert torch.equal(c.mean, s.mean)
    assert torch.equal(c.covariance, s.covariance)
    assert torch.equal(c.precision, s.precision)

    c.mean += 1
    c.covariance *= 2

    assert torch.equal(s.mean, mean)
    assert not torch.equal(c.covariance, s.covariance)


def test_mahalanobis_of_the_mean_is_null():
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))

    assert s.mahalanobis_squared(s.mean).item() == 0
    assert s.precision is not None  # Lazily computed


def test_mahalanobis_with_identity_covariance_is_euclidean():
    s = GaussianState(torch.zeros(3, 1, dtype=torch.float64), torch.eye(3, dtype=torch.float64))
    measure = torch.tensor([[1.0], [2.0], [2.0]], dtype=torch.float64)

    assert torch.isclose(s.mahalanobis_squared(measure), torch.tensor(9.0, dtype=torch.float64))


def test_likelihood_matches_torch_distributions():
    s = GaussianState(torch.randn(3, 1, dtype=torch.float64), _spd_matrix(3))
    measure = torch.randn(3, 1, dtype=torch.float64)

    expected = torch.distributions.MultivariateNormal(s.mean[:, 0], s.covariance).log_prob(measure[:, 0])

    assert torch.allclose(s.log_likelihood(measure), expected)
    assert torch.allclose(s.likelihood(measure), expected.exp())
