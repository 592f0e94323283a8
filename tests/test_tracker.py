import dataclasses
import math

import pytest
import torch

from torch_rbmcda import Tracker3D, TrackerConfig
from torch_rbmcda.probability import gamma_cdf

A = (1.0, 0.0, 0.0)
B = (0.0, 1.0, 0.0)


def _random_directions(generator: torch.Generator, n: int) -> torch.Tensor:
    directions = torch.randn(n, 3, generator=generator, dtype=torch.float64)
    return directions / torch.linalg.vector_norm(directions, dim=1, keepdim=True)


def test_initial_state(tracker: Tracker3D, config: TrackerConfig):
    assert len(tracker.particles) == config.n_particles
    assert tracker.n_ticks == 0
    assert torch.allclose(tracker.weights(), torch.full((config.n_particles,), 1 / config.n_particles).double())
    assert tracker.estimates() == []


def test_default_configuration():
    tracker = Tracker3D()

    assert tracker.config == TrackerConfig()
    assert tracker.step([A]) is not None


def test_invariants_on_a_random_stream(tracker: Tracker3D, config: TrackerConfig):
    stream_generator = torch.Generator().manual_seed(12)

    for _ in range(40):
        n = int(torch.randint(0, 4, (), generator=stream_generator))
        positions, ids = tracker.step(_random_directions(stream_generator, n))

        assert len(positions) == len(ids) <= config.max_active_targets
        assert tracker.weights().sum().item() == pytest.approx(1.0)
        for particle in tracker.particles:
            assert particle.n_targets <= config.max_active_targets
            assert len(set(particle.target_ids)) == particle.n_targets
            assert all(0 <= target_id < config.max_active_targets for target_id in particle.target_ids)

    assert tracker.n_ticks == 40


def test_empty_tick_predicts_once(tracker: Tracker3D):
    for _ in range(3):
        tracker.step([A])
    before = [particle.clone() for particle in tracker.particles]
    weights = tracker.weights()

    positions, ids = tracker.step([])

    assert torch.equal(tracker.weights(), weights)
    for particle, previous in zip(tracker.particles, before):
        assert particle.target_ids == previous.target_ids
        assert particle.elapsed_ticks == 0
        for target, old in zip(particle.targets, previous.targets):
            predicted = tracker.kalman_filter.predict(old.state)
            assert torch.allclose(target.state.mean, predicted.mean)
            assert torch.allclose(target.state.covariance, predicted.covariance)
            assert target.age == old.age + 1

    assert ids == [target.target_id for target in tracker.best_particle().targets]


def test_single_stationary_source(tracker: Tracker3D, config: TrackerConfig):
    for tick in range(20):
        positions, ids = tracker.step([A])

        if tick >= 5:
            assert len(ids) == 1
            distance = math.dist(positions[0], A)
            assert distance < config.measurement_noise_std


def test_two_separated_sources(config: TrackerConfig, generator: torch.Generator):
    tracker = Tracker3D(dataclasses.replace(config, max_active_targets=4), generator=generator)

    assignments = []
    for tick in range(30):
        positions, ids = tracker.step([A, B])

        if tick >= 10:
            assert len(ids) == 2
            # Map each id to its closest source
            assignments.append(
                {
                    target_id: min((A, B), key=lambda source, position=position: math.dist(source, position))
                    for target_id, position in zip(ids, positions)
                }
            )

    assert all(assignment == assignments[0] for assignment in assignments)
    assert set(assignments[0].values()) == {A, B}


def test_target_death_without_observations(config: TrackerConfig, generator: torch.Generator):
    # Gamma(20, 0.05) lifetime: ~1s on average, 0.1s per tick
    config = dataclasses.replace(config, death_scale=0.05, n_particles=20)
    tracker = Tracker3D(config, generator=generator)

    for _ in range(5):
        _, ids = tracker.step([A])
    assert len(ids) == 1

    n_empty_ticks = 40
    age = (5 + n_empty_ticks) * config.dt
    assert gamma_cdf(age, config.death_shape, config.death_scale).item() > 0.99

    for _ in range(n_empty_ticks):
        _, ids = tracker.step([])

    assert ids == []
    assert all(particle.n_targets == 0 for particle in tracker.particles)


def test_duplicated_observations_are_merged(config: TrackerConfig, generator: torch.Generator):
    config = dataclasses.replace(config, max_active_targets=4, force_kill_distance=0.05)
    tracker = Tracker3D(config, generator=generator)

    for tick in range(20):
        _, ids = tracker.step([A, (1.0, 0.01, 0.0)])

        if tick >= 5:
            assert len(ids) == 1
            assert all(particle.n_targets <= 1 for particle in tracker.particles)


def test_estimates(tracker: Tracker3D):
    for _ in range(10):
        positions, ids = tracker.step([A])

    (estimate,) = tracker.estimates()

    assert estimate.target_id == ids[0]
    assert estimate.position == positions[0]
    assert len(estimate.velocity) == 3
    assert all(0 < variance < 0.01 for variance in estimate.variance)
    assert all(abs(speed) < 0.1 for speed in estimate.velocity)


def test_tensor_observations(config: TrackerConfig):
    first = Tracker3D(config, generator=torch.Generator().manual_seed(5))
    second = Tracker3D(config, generator=torch.Generator().manual_seed(5))

    for _ in range(5):
        expected = first.step([A, B])
        assert second.step(torch.tensor([A, B])) == expected


def test_reproducibility(config: TrackerConfig):
    stream = [_random_directions(torch.Generator().manual_seed(k), k % 3) for k in range(20)]

    outputs = []
    for _ in range(2):
        tracker = Tracker3D(config, generator=torch.Generator().manual_seed(7))
        outputs.append([tracker.step(observations) for observations in stream])

    assert outputs[0] == outputs[1]


def test_non_finite_observations_are_ignored(config: TrackerConfig, caplog):
    first = Tracker3D(config, generator=torch.Generator().manual_seed(3))
    second = Tracker3D(config, generator=torch.Generator().manual_seed(3))

    for _ in range(5):
        expected = first.step([A])
        assert second.step([(float("nan"), 0.0, 0.0), A, (0.0, float("inf"), 0.0)]) == expected

    assert "non-finite" in caplog.text


@pytest.mark.parametrize("observations", [torch.zeros(2, 2), torch.zeros(3), [[1.0, 0.0, 0.0, 0.0]]])
def test_invalid_observations(tracker: Tracker3D, observations):
    with pytest.raises(ValueError):
        tracker.step(observations)


def test_unit_vectors(config: TrackerConfig, generator: torch.Generator):
    tracker = Tracker3D(dataclasses.replace(config, unit_vectors=True), generator=generator)

    for _ in range(10):
        positions, ids = tracker.step([(0.0, 3.0, 0.0)])

    assert len(ids) == 1
    assert math.isclose(math.hypot(*positions[0]), 1.0)
    assert math.dist(positions[0], B) < 0.05


def test_reset(tracker: Tracker3D, config: TrackerConfig):
    for _ in range(5):
        tracker.step([A, B])

    tracker.reset()

    assert tracker.n_ticks == 0
    assert tracker.estimates() == []
    assert all(particle.n_targets == 0 for particle in tracker.particles)
    assert torch.allclose(tracker.weights(), torch.full((config.n_particles,), 1 / config.n_particles).double())
    assert tracker.step([]) == ([], [])
