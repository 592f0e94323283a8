"""Example tracking two moving sound sources from noisy directions of arrival"""

import argparse
import logging
import math

import matplotlib.pyplot as plt
import torch
import tqdm.auto as tqdm

import torch_rbmcda


def simulate_directions(
    n: int, noise: float, clutter: float, dropout: float, generator: torch.Generator
) -> tuple[torch.Tensor, list[torch.Tensor]]:
    """Simulate the directions of arrival of two sources on the horizontal plane.

    The first source rotates slowly around the listener, the second one is static and only active
    during the second half of the sequence.

    Args:
        n (int): Number of ticks
        noise (float): Gaussian noise standard deviation on each axis of the observed directions
        clutter (float): Probability to observe a spurious direction at each tick
        dropout (float): Probability that an active source is not observed at a tick
        generator (torch.Generator): Random source

    Returns:
        torch.Tensor: True azimuths of the sources (nan when inactive)
            Shape: (n, 2)
        list[torch.Tensor]: Observed directions at each tick
            Shape: (m_t, 3)
    """
    t = torch.arange(n, dtype=torch.float64)
    azimuths = torch.stack((0.5 * torch.pi * torch.sin(2 * torch.pi * t / n), torch.full_like(t, 2.0)), dim=1)
    azimuths[: n // 2, 1] = torch.nan

    observations = []
    for k in range(n):
        directions = []
        for azimuth in azimuths[k]:
            if torch.isnan(azimuth) or torch.rand((), generator=generator) < dropout:
                continue
            direction = torch.stack((azimuth.cos(), azimuth.sin(), torch.zeros_like(azimuth)))
            directions.append(direction + noise * torch.randn(3, generator=generator, dtype=torch.float64))

        if torch.rand((), generator=generator) < clutter:
            direction = torch.randn(3, generator=generator, dtype=torch.float64)
            directions.append(direction / direction.norm())

        observations.append(torch.stack(directions) if directions else torch.empty(0, 3, dtype=torch.float64))

    return azimuths, observations


def main(n: int, noise: float, clutter: float, dropout: float, particles: int, seed: int):
    config = torch_rbmcda.TrackerConfig(
        n_particles=particles,
        max_active_targets=4,
        measurement_noise_std=max(noise, 0.02),
        noise_spectral_density=1e-2,
        dt=0.1,
        death_shape=2.0,
        death_scale=1.0,
        unit_vectors=True,
    )
    tracker = torch_rbmcda.Tracker3D(config, generator=torch.Generator().manual_seed(seed))

    azimuths, observations = simulate_directions(n, noise, clutter, dropout, torch.Generator().manual_seed(seed + 1))

    tracks: dict[int, list[tuple[int, float]]] = {}
    for k, directions in enumerate(tqdm.tqdm(observations)):
        positions, ids = tracker.step(directions)
        for target_id, (x, y, _) in zip(ids, positions):
            tracks.setdefault(target_id, []).append((k, math.atan2(y, x)))

    print(f"{len(tracks)} track ids used over {n} ticks")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    for source in range(azimuths.shape[1]):
        plt.plot(azimuths[:, source], color="k", label="True azimuths" if source == 0 else None)

    for k, directions in enumerate(observations):
        observed = torch.atan2(directions[:, 1], directions[:, 0])
        plt.plot([k] * len(observed), observed, "o", color="r", markersize=2.0)

    for target_id, points in tracks.items():
        ticks, track = zip(*points)
        plt.plot(ticks, track, ".", markersize=6.0, label=f"Track {target_id}")

    plt.ylim(-math.pi, math.pi)
    plt.xlabel("tick")
    plt.ylabel("azimuth (rad)")
    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="RBMCDA example, tracking two sound sources from their directions")
    parser.add_argument("--n", default=400, type=int, help="Number of ticks")
    parser.add_argument("--noise", default=0.05, type=float, help="Observation noise")
    parser.add_argument("--clutter", default=0.1, type=float, help="Probability of a spurious observation per tick")
    parser.add_argument("--dropout", default=0.2, type=float, help="Probability to miss a source at a tick")
    parser.add_argument("--particles", default=30, type=int, help="Number of particles")
    parser.add_argument("--seed", default=0, type=int, help="Random seed")
    parser.add_argument("--verbose", action="store_true", help="Log births, deaths and resamplings")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    main(args.n, args.noise, args.clutter, args.dropout, args.particles, args.seed)
