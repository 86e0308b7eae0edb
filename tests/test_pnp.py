from __future__ import annotations

import numpy as np
import pytest

from projcalib.calib.pnp import PnPSolver, solve_pnp
from projcalib.calib.results import FailureKind
from projcalib.config import PnPOptions
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.undistortion import distort_points

from _synth import board_points, cube_points, render, scene_pose, true_intrinsics


@pytest.mark.parametrize("world", [board_points(), cube_points()], ids=["planar", "general"])
def test_recovers_scene_pose(world) -> None:
    intr = true_intrinsics(distorted=False)
    R, t = scene_pose((15.0, -20.0, 8.0), (12.0, -7.0, 640.0))
    image = render(intr, R, t, world)

    res = solve_pnp(world, image, intr)
    assert res.success, res.message
    assert np.allclose(res.extrinsics.rotation, R, atol=1e-8)
    assert np.allclose(res.extrinsics.translation, t, atol=1e-5)
    assert res.rms_error < 1e-6
    assert res.diagnostics["n_points"] == float(world.shape[0])


def test_distorted_points_are_undistorted_first() -> None:
    intr = true_intrinsics()
    world = board_points()
    R, t = scene_pose((-10.0, 15.0, 0.0), (0.0, 20.0, 600.0))
    ideal = render(true_intrinsics(distorted=False), R, t, world)
    observed = distort_points(ideal, intr)

    res = solve_pnp(world, observed, intr, PnPOptions(points_are_undistorted=False))
    assert res.success
    assert np.allclose(res.extrinsics.translation, t, atol=1e-4)


def test_noisy_points_give_small_rms() -> None:
    intr = true_intrinsics(distorted=False)
    world = board_points()
    R, t = scene_pose((5.0, 5.0, 0.0), (0.0, 0.0, 600.0))
    rng = np.random.default_rng(4)
    image = render(intr, R, t, world) + rng.normal(scale=0.3, size=(world.shape[0], 2))

    res = solve_pnp(world, image, intr)
    assert res.success
    assert 0.1 < res.rms_error < 1.0
    assert np.linalg.norm(res.extrinsics.translation - t) < 5.0


def test_extrinsic_guess_is_used() -> None:
    intr = true_intrinsics(distorted=False)
    world = cube_points()
    R, t = scene_pose((0.0, 0.0, 0.0), (0.0, 0.0, 800.0))
    guess = Extrinsics(rotation=R, translation=t + np.array([5.0, -5.0, 20.0]))
    res = solve_pnp(world, render(intr, R, t, world), intr, PnPOptions(extrinsic_guess=guess))
    assert res.success
    assert np.allclose(res.extrinsics.translation, t, atol=1e-5)


@pytest.mark.parametrize(
    "world,image",
    [
        (np.zeros((3, 3)) + np.arange(3)[:, None], np.arange(6, dtype=float).reshape(3, 2)),
        (np.stack([np.arange(6.0), np.zeros(6), np.zeros(6)], axis=1), np.random.default_rng(0).normal(size=(6, 2))),
        (board_points(), np.zeros((10, 2))),
        (np.full((5, 3), np.nan), np.zeros((5, 2))),
        (np.zeros((0, 3)), np.zeros((0, 2))),
    ],
    ids=["too-few", "collinear", "mismatch", "nan", "empty"],
)
def test_bad_input_is_an_input_failure(world, image) -> None:
    res = solve_pnp(world, image, true_intrinsics(distorted=False))
    assert not res.success
    assert res.failure is FailureKind.INPUT
    assert res.extrinsics is None
    assert res.message


def test_missing_distortion_needed_for_undistortion() -> None:
    intr = Intrinsics(cx=320.0, cy=240.0, fx=800.0, fy=800.0, distortion_coeffs=None, resolution=(640, 480))
    world = board_points()
    res = solve_pnp(world, np.random.default_rng(0).uniform(0, 400, size=(world.shape[0], 2)), intr, PnPOptions(points_are_undistorted=False))
    assert res.failure is FailureKind.INPUT


def test_solver_keeps_last_good_pose() -> None:
    intr = true_intrinsics(distorted=False)
    world = board_points()
    R, t = scene_pose((10.0, 0.0, 0.0), (0.0, 0.0, 600.0))
    solver = PnPSolver()
    assert solver.extrinsics is None
    assert not solver.is_valid

    good = solver.solve(world, render(intr, R, t, world), intr)
    assert good.success and solver.is_valid
    kept = solver.extrinsics

    bad = solver.solve(world[:3], np.zeros((3, 2)), intr)
    assert not bad.success
    assert not solver.is_valid
    assert solver.extrinsics is kept
    assert solver.last_result is bad


@pytest.mark.parametrize("n", [4, 5])
def test_few_general_points_recover_the_pose(n) -> None:
    intr = true_intrinsics(distorted=False)
    R, t = scene_pose((15.0, -20.0, 8.0), (12.0, -7.0, 640.0))
    for seed in range(30):
        world = cube_points(n=n, seed=seed)
        res = solve_pnp(world, render(intr, R, t, world), intr)
        assert res.success, (seed, res.message)
        assert np.allclose(res.extrinsics.rotation, R, atol=1e-5), seed
        assert np.allclose(res.extrinsics.translation, t, atol=1e-2), seed
        assert res.rms_error < 1e-4


def test_large_rms_is_a_convergence_failure() -> None:
    intr = true_intrinsics(distorted=False)
    world = board_points()
    R, t = scene_pose((5.0, 5.0, 0.0), (0.0, 0.0, 600.0))
    image = render(intr, R, t, world) + np.random.default_rng(4).normal(scale=0.3, size=(world.shape[0], 2))

    res = solve_pnp(world, image, intr, PnPOptions(max_rms_px=0.05))
    assert not res.success
    assert res.failure is FailureKind.CONVERGENCE
    assert res.extrinsics is None
    assert res.diagnostics["rms_px"] > 0.05
    assert solve_pnp(world, image, intr, PnPOptions(max_rms_px=None)).success
