import pytest
import torch

from torch_rbmcda import Tracker3D, TrackerConfig


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture
def generator() -> torch.Generator:
    return torch.Generator().manual_seed(0)


@pytest.fixture
def config() -> TrackerConfig:
    return TrackerConfig(
        n_particles=50,
        max_active_targets=2,
        noise_likelihood=0.2,
        measurement_noise_std=0.1,
        noise_spectral_density=1e-3,
        birth_prior=0.9,
        death_shape=20.0,
        death_scale=1.0,
        dt=0.1,
        weight_smoothing=0.5,
        force_kill_targets=True,
        force_kill_distance=0.2,
    )


@pytest.fixture
def tracker(config: TrackerConfig, generator: torch.Generator) -> Tracker3D:
    return Tracker3D(config, generator=generator)
