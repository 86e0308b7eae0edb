from __future__ import annotations

import logging
import math

import numpy as np

from projcalib.calib.lsq import params_to_pose, pose_to_params, run_least_squares, safe_project, solution_converged
from projcalib.calib.results import (
    PoseResult,
    WorkingState,
    convergence_failure,
    input_failure,
    rms,
)
from projcalib.config import PnPOptions
from projcalib.core.conventions import flip_sensor_matrix
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.geometry import initial_pose, pixels_to_normalized, transform_points
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.undistortion import LensDistortionError, undistort_points
from projcalib.core.validation import CalibrationInputError, validate_correspondences

logger = logging.getLogger(__name__)


def _check_intrinsics(intrinsics: Intrinsics | None, need_distortion: bool) -> None:
    if intrinsics is None:
        raise CalibrationInputError("intrinsics are required")
    if not (math.isfinite(intrinsics.fx) and math.isfinite(intrinsics.fy) and intrinsics.fx > 0 and intrinsics.fy > 0):
        raise CalibrationInputError("intrinsics need finite fx, fy > 0")
    if not (math.isfinite(intrinsics.cx) and math.isfinite(intrinsics.cy)):
        raise CalibrationInputError("intrinsics need a finite principal point")
    if need_distortion and not intrinsics.is_valid:
        raise CalibrationInputError("intrinsics carry no distortion coefficients")


def prepare_image_points(image: np.ndarray, intrinsics: Intrinsics, points_are_undistorted: bool) -> np.ndarray:
    if points_are_undistorted:
        return image
    try:
        return undistort_points(image, intrinsics)
    except LensDistortionError as exc:
        raise CalibrationInputError(str(exc)) from exc


def refine_pose(
    K: np.ndarray,
    world: np.ndarray,
    image: np.ndarray,
    R0: np.ndarray,
    t0: np.ndarray,
    options: PnPOptions,
):
    """LM refinement of one pose against undistorted pixels. Returns the scipy solution."""
    fx, fy, cx, cy = float(K[0, 0]), float(K[1, 1]), float(K[0, 2]), float(K[1, 2])

    def fun(p: np.ndarray) -> np.ndarray:
        R, t = params_to_pose(p)
        u, v = safe_project(transform_points(R, t, world), fx, fy, cx, cy)
        return np.stack([u - image[:, 0], v - image[:, 1]], axis=1).reshape(-1)

    return run_least_squares(
        fun,
        pose_to_params(R0, t0),
        loss=options.loss,
        f_scale=options.f_scale_px,
        max_nfev=options.max_nfev,
    )


def _solve(
    world_points: np.ndarray,
    image_points: np.ndarray,
    intrinsics: Intrinsics,
    options: PnPOptions,
    work: WorkingState,
) -> PoseResult:
    try:
        _check_intrinsics(intrinsics, need_distortion=not options.points_are_undistorted)
        world, image = validate_correspondences(world_points, image_points)
        image = prepare_image_points(image, intrinsics, options.points_are_undistorted)
    except CalibrationInputError as exc:
        logger.warning("PnP rejected input: %s", exc)
        return input_failure(PoseResult, str(exc))

    # Negated fy turns the y-down pixel frame into the y-up scene frame.
    K = work.load_sensor_matrix(flip_sensor_matrix(intrinsics.camera_matrix()))

    try:
        if options.extrinsic_guess is not None:
            R0, t0 = options.extrinsic_guess.rotation, options.extrinsic_guess.translation
        else:
            R0, t0 = initial_pose(world, pixels_to_normalized(K, image))
        sol = refine_pose(K, world, image, R0, t0, options)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("PnP failed: %s", exc)
        return convergence_failure(PoseResult, f"pose estimation failed: {exc}")

    diag = {"opt_cost": float(sol.cost), "opt_nfev": float(sol.nfev), "opt_success": float(bool(sol.success))}
    if not solution_converged(sol):
        logger.warning("PnP did not converge: %s", sol.message)
        return convergence_failure(PoseResult, f"solver did not converge: {sol.message}", diag)

    R, t = params_to_pose(sol.x)
    depth = transform_points(R, t, world)[:, 2]
    if not np.all(depth > 0):
        logger.warning("PnP solution places %d point(s) behind the camera", int(np.sum(depth <= 0)))
        return convergence_failure(PoseResult, "solution places points behind the camera", diag)

    err = rms(sol.fun, world.shape[0])
    if not math.isfinite(err):
        return convergence_failure(PoseResult, "non-finite reprojection error", diag)
    diag["rms_px"] = err
    if options.max_rms_px is not None and err > options.max_rms_px:
        logger.warning("PnP rms %.3f px exceeds %.3f px", err, options.max_rms_px)
        return convergence_failure(PoseResult, f"reprojection rms {err:.3f} px exceeds {options.max_rms_px:.3f} px", diag)
    diag["n_points"] = float(world.shape[0])
    return PoseResult(success=True, extrinsics=Extrinsics(rotation=R, translation=t), rms_error=err, diagnostics=diag)


def solve_pnp(
    world_points: np.ndarray,
    image_points: np.ndarray,
    intrinsics: Intrinsics,
    options: PnPOptions | None = None,
) -> PoseResult:
    """
    Pose of a camera with known intrinsics from >= 4 world/pixel pairs.

    The returned extrinsics map world points into the camera's scene frame
    (y up, looking along +z). Image points are pixels (origin top-left, y
    down), undistorted unless `options.points_are_undistorted` is False.
    """
    return _solve(world_points, image_points, intrinsics, options or PnPOptions(), WorkingState())


class PnPSolver:
    """
    Reusable pose solver. `extrinsics` holds the last successful pose and is
    left untouched by failed solves.
    """

    def __init__(self, options: PnPOptions | None = None) -> None:
        self.options = options or PnPOptions()
        self._work = WorkingState()
        self._extrinsics: Extrinsics | None = None
        self._last: PoseResult | None = None

    @property
    def extrinsics(self) -> Extrinsics | None:
        return self._extrinsics

    @property
    def is_valid(self) -> bool:
        return self._last is not None and self._last.success

    @property
    def last_result(self) -> PoseResult | None:
        return self._last

    def solve(self, world_points: np.ndarray, image_points: np.ndarray, intrinsics: Intrinsics) -> PoseResult:
        result = _solve(world_points, image_points, intrinsics, self.options, self._work)
        self._last = result
        if result.success:
            self._extrinsics = result.extrinsics
        return result
