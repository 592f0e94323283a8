import pytest
import torch

from torch_rbmcda.config import TrackerConfig
from torch_rbmcda.discretization import constant_velocity_kalman_filter
from torch_rbmcda.kalman_filter import GaussianState
from torch_rbmcda.particle import Particle
from torch_rbmcda.prediction import is_duplicate, predict, predict_particle


def _state(position) -> GaussianState:
    mean = torch.tensor([*position, 0.5, 0.0, 0.0], dtype=torch.float64)[:, None]
    return GaussianState(mean, 0.1 * torch.eye(6, dtype=torch.float64))


def _particle(positions, ages=None, max_targets: int = 4) -> Particle:
    particle = Particle.create(1.0)
    for k, position in enumerate(positions):
        target = particle.add_target(_state(position), max_targets)
        if ages is not None:
            target.age = ages[k]
    return particle


@pytest.fixture
def kf():
    return constant_velocity_kalman_filter(0.1, 1e-3, 0.1)


# Lifetime of a few ms: targets die at the first prediction with 1 tick (p = 1 - exp(-10))
SHORT_LIFE = {"death_shape": 1.0, "death_scale": 0.01, "dt": 0.1, "force_kill_targets": False}

# Lifetime of ~20s: no natural death within a few ticks
LONG_LIFE = {"death_shape": 20.0, "death_scale": 1.0, "dt": 0.1}

FAR_APART = [(1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0)]


def test_predict_once_per_tick(kf, generator):
    config = TrackerConfig(**LONG_LIFE)
    particle = _particle(FAR_APART)
    expected = [kf.predict(target.state) for target in particle.targets]

    dead = predict_particle(particle, kf, config, 1, generator)

    assert dead == []
    for target, state in zip(particle.targets, expected):
        assert torch.allclose(target.state.mean, state.mean)
        assert torch.allclose(target.state.covariance, state.covariance)
        assert target.age == 1


def test_predict_several_ticks(kf, generator):
    config = TrackerConfig(**LONG_LIFE)
    particle = _particle(FAR_APART)
    expected = [kf.predict_many(target.state, 3) for target in particle.targets]

    predict_particle(particle, kf, config, 3, generator)

    for target, state in zip(particle.targets, expected):
        assert torch.allclose(target.state.mean, state.mean)
        assert torch.allclose(target.state.covariance, state.covariance)
        assert target.age == 3
    assert particle.targets[0].position[0].item() == pytest.approx(1.0 + 3 * 0.1 * 0.5)


def test_no_elapsed_tick_leaves_targets_unchanged(kf, generator):
    config = TrackerConfig(**SHORT_LIFE)
    particle = _particle(FAR_APART, ages=[50, 50, 50])
    expected = particle.clone()

    dead = predict_particle(particle, kf, config, 0, generator)

    # Without elapsed time, even very old targets cannot die naturally
    assert dead == []
    for target, initial in zip(particle.targets, expected.targets):
        assert torch.equal(target.state.mean, initial.state.mean)
        assert torch.equal(target.state.covariance, initial.state.covariance)
        assert target.age == 50


def test_targets_die_with_short_lifetime(kf, generator):
    config = TrackerConfig(**SHORT_LIFE, allow_multi_death=True)
    particle = _particle(FAR_APART)

    dead = predict_particle(particle, kf, config, 1, generator)

    assert dead == [0, 1, 2]
    assert particle.n_targets == 0


def test_single_death_per_prediction(kf, generator):
    config = TrackerConfig(**SHORT_LIFE, allow_multi_death=False)
    particle = _particle(FAR_APART)

    dead = predict_particle(particle, kf, config, 1, generator)

    assert dead == [0]
    assert particle.target_ids == [1, 2]
    # Survivors are still predicted
    assert all(target.age == 1 for target in particle.targets)


def test_force_kill_the_younger_duplicate(kf, generator):
    config = TrackerConfig(**LONG_LIFE, force_kill_targets=True, force_kill_distance=0.2)
    particle = _particle([(1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (1.05, 0.0, 0.0)], ages=[2, 3, 8])

    dead = predict_particle(particle, kf, config, 1, generator)

    assert dead == [0]
    assert particle.target_ids == [1, 2]


def test_force_kill_tie_kills_the_later_target(kf, generator):
    config = TrackerConfig(**LONG_LIFE, force_kill_targets=True, force_kill_distance=0.2)
    particle = _particle([(1.0, 0.0, 0.0), (1.0, 0.1, 0.0)], ages=[4, 4])

    dead = predict_particle(particle, kf, config, 1, generator)

    assert dead == [1]
    assert particle.target_ids == [0]


def test_force_kill_without_elapsed_tick(kf, generator):
    config = TrackerConfig(**LONG_LIFE, force_kill_targets=True, force_kill_distance=0.2)
    particle = _particle([(1.0, 0.0, 0.0), (1.0, 0.0, 0.05)])

    dead = predict_particle(particle, kf, config, 0, generator)

    assert dead == [1]


def test_no_force_kill_when_disabled(kf, generator):
    config = TrackerConfig(**LONG_LIFE, force_kill_targets=False)
    particle = _particle([(1.0, 0.0, 0.0), (1.0, 0.0, 0.0)])

    assert predict_particle(particle, kf, config, 1, generator) == []
    assert particle.n_targets == 2


def test_is_duplicate():
    particle = _particle([(1.0, 0.0, 0.0), (1.1, 0.0, 0.0), (0.0, 1.0, 0.0)], ages=[1, 5, 1])

    assert is_duplicate(particle.targets, 0, 0.2)
    assert not is_duplicate(particle.targets, 1, 0.2)
    assert not is_duplicate(particle.targets, 2, 0.2)
    assert not is_duplicate(particle.targets, 0, 0.05)


def test_predict_consumes_elapsed_ticks(kf, generator):
    config = TrackerConfig(**LONG_LIFE)
    first = _particle(FAR_APART[:1])
    second = _particle(FAR_APART[:1])
    first.elapsed_ticks = 2
    second.elapsed_ticks = 0

    predict([first, second], kf, config, generator)

    assert first.elapsed_ticks == second.elapsed_ticks == 0
    assert first.targets[0].age == 2
    assert second.targets[0].age == 0
    assert first.targets[0].position[0].item() == pytest.approx(1.0 + 2 * 0.1 * 0.5)
    assert second.targets[0].position[0].item() == pytest.approx(1.0)


def test_death_draws_are_reproducible(kf):
    config = TrackerConfig(death_shape=1.0, death_scale=0.2, dt=0.1, force_kill_targets=False)

    results = []
    for _ in range(2):
        generator = torch.Generator().manual_seed(42)
        results.append([predict_particle(_particle(FAR_APART), kf, config, 1, generator) for _ in range(20)])

    assert results[0] == results[1]
