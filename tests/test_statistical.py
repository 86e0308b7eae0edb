from __future__ import annotations

import numpy as np
import pytest

from projcalib.calib.camera import calibrate_camera
from projcalib.calib.pnp import solve_pnp
from projcalib.config import PnPOptions
from projcalib.core.validation import PointSample

from _synth import FX, RESOLUTION, board_points, board_scene_poses, render, scene_pose, true_intrinsics


def _noisy_samples(noise_px: float, rng: np.random.Generator) -> list[PointSample]:
    intr = true_intrinsics()
    world = board_points()
    return [
        PointSample(world_points=world, image_points=render(intr, R, t, world) + rng.normal(scale=noise_px, size=(world.shape[0], 2)))
        for R, t in board_scene_poses()
    ]


@pytest.mark.statistical
def test_calibration_rms_grows_with_noise() -> None:
    rng = np.random.default_rng(11)
    means = []
    for noise in (0.05, 0.3, 1.5):
        values = []
        for _ in range(4):
            res = calibrate_camera(_noisy_samples(noise, rng), RESOLUTION)
            assert res.success
            values.append(res.rms_error)
        means.append(float(np.mean(values)))
        # Reprojection rms tracks the injected per-axis noise (times sqrt(2)).
        assert 0.5 * noise < means[-1] < 2.0 * noise
    assert means[0] < means[1] < means[2]


@pytest.mark.statistical
def test_calibration_is_stable_under_small_noise() -> None:
    rng = np.random.default_rng(5)
    fx = [calibrate_camera(_noisy_samples(0.2, rng), RESOLUTION).intrinsics.fx for _ in range(5)]
    assert abs(float(np.mean(fx)) - FX) < 3.0
    assert float(np.std(fx)) < 3.0


@pytest.mark.statistical
def test_pnp_rms_grows_with_noise() -> None:
    rng = np.random.default_rng(8)
    intr = true_intrinsics(distorted=False)
    world = board_points()
    R, t = board_scene_poses()[2]
    clean = render(intr, R, t, world)
    means = []
    for noise in (0.05, 0.5, 2.0):
        means.append(float(np.mean([solve_pnp(world, clean + rng.normal(scale=noise, size=clean.shape), intr).rms_error for _ in range(10)])))
    assert means[0] < means[1] < means[2]


def _random_view(rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
    angles = (rng.uniform(-30.0, 30.0), rng.uniform(-30.0, 30.0), rng.uniform(-10.0, 10.0))
    return scene_pose(angles, (rng.uniform(-40.0, 40.0), rng.uniform(-30.0, 30.0), rng.uniform(560.0, 680.0)))


@pytest.mark.statistical
def test_held_out_error_falls_with_sample_count() -> None:
    # In-sample rms does not fall with more samples: it tends to the noise level
    # from below. The error on views left out of the fit does.
    rng = np.random.default_rng(21)
    intr = true_intrinsics()
    world = board_points()
    counts = (3, 6, 12)
    errors: dict[int, list[float]] = {m: [] for m in counts}
    for _ in range(5):
        train = [_random_view(rng) for _ in range(max(counts))]
        held_out = [_random_view(rng) for _ in range(4)]
        observed = [render(intr, R, t, world) + rng.normal(scale=0.5, size=(world.shape[0], 2)) for R, t in train]
        for m in counts:
            res = calibrate_camera([PointSample(world_points=world, image_points=img) for img in observed[:m]], RESOLUTION)
            assert res.success, res.message
            opts = PnPOptions(points_are_undistorted=False, max_rms_px=None)
            fits = [solve_pnp(world, render(intr, R, t, world), res.intrinsics, opts) for R, t in held_out]
            assert all(f.success for f in fits)
            errors[m].append(float(np.mean([f.rms_error for f in fits])))
    means = [float(np.mean(errors[m])) for m in counts]
    assert means[0] > means[1] > means[2]
