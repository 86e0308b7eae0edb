from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np

from projcalib.calib.lsq import params_to_pose, pose_to_params, run_least_squares, safe_project, solution_converged
from projcalib.calib.pnp import prepare_image_points
from projcalib.calib.results import (
    CalibrationStateError,
    CalibratorState,
    StereoResult,
    WorkingState,
    convergence_failure,
    input_failure,
    rms,
)
from projcalib.config import StereoOptions
from projcalib.core.conventions import flip_sensor_matrix
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.geometry import initial_pose, pixels_to_normalized, transform_points
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.validation import CalibrationInputError, StereoPointSample, validate_stereo_sample

logger = logging.getLogger(__name__)


def _check_intrinsics(name: str, intrinsics: Intrinsics | None) -> None:
    if intrinsics is None:
        raise CalibrationInputError(f"intrinsics {name} are required")
    if not (math.isfinite(intrinsics.fx) and math.isfinite(intrinsics.fy) and intrinsics.fx > 0 and intrinsics.fy > 0):
        raise CalibrationInputError(f"intrinsics {name} need finite fx, fy > 0")


def _initial_rig(poses_a: list[tuple[np.ndarray, np.ndarray]], poses_b: list[tuple[np.ndarray, np.ndarray]]):
    """Average of the per-sample A->B transforms implied by independent poses."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    rots = []
    trans = []
    for (Ra, ta), (Rb, tb) in zip(poses_a, poses_b):
        R_ab = Rb @ Ra.T
        rots.append(R_ab)
        trans.append(tb - R_ab @ ta)
    R_mean = R.from_matrix(np.stack(rots, axis=0)).mean().as_matrix()
    t_mean = np.mean(np.stack(trans, axis=0), axis=0)
    return R_mean, t_mean


def _solve(
    intrinsics_a: Intrinsics,
    intrinsics_b: Intrinsics,
    samples: Sequence[StereoPointSample],
    options: StereoOptions,
    work: WorkingState,
) -> StereoResult:
    try:
        _check_intrinsics("A", intrinsics_a)
        _check_intrinsics("B", intrinsics_b)
        if not samples:
            raise CalibrationInputError("no samples")
        clean = []
        for s in samples:
            s = validate_stereo_sample(s)
            clean.append(
                StereoPointSample(
                    world_points=s.world_points,
                    image_points_a=prepare_image_points(s.image_points_a, intrinsics_a, options.points_are_undistorted),
                    image_points_b=prepare_image_points(s.image_points_b, intrinsics_b, options.points_are_undistorted),
                )
            )
    except CalibrationInputError as exc:
        logger.warning("stereo calibration rejected input: %s", exc)
        return input_failure(StereoResult, str(exc))

    # Both sensors get a negated fy so that poses come out in scene convention.
    Ka = work.load_sensor_matrix(flip_sensor_matrix(intrinsics_a.camera_matrix()), "a")
    Kb = work.load_sensor_matrix(flip_sensor_matrix(intrinsics_b.camera_matrix()), "b")
    fa = (float(Ka[0, 0]), float(Ka[1, 1]), float(Ka[0, 2]), float(Ka[1, 2]))
    fb = (float(Kb[0, 0]), float(Kb[1, 1]), float(Kb[0, 2]), float(Kb[1, 2]))

    try:
        poses_a = [initial_pose(s.world_points, pixels_to_normalized(Ka, s.image_points_a)) for s in clean]
        poses_b = [initial_pose(s.world_points, pixels_to_normalized(Kb, s.image_points_b)) for s in clean]
        R_rig0, t_rig0 = _initial_rig(poses_a, poses_b)

        def fun(p: np.ndarray) -> np.ndarray:
            R_rig, t_rig = params_to_pose(p[:6])
            parts = []
            for k, s in enumerate(clean):
                R_k, t_k = params_to_pose(p[6 + 6 * k : 12 + 6 * k])
                P_a = transform_points(R_k, t_k, s.world_points)
                P_b = transform_points(R_rig, t_rig, P_a)
                ua, va = safe_project(P_a, *fa)
                ub, vb = safe_project(P_b, *fb)
                parts.append(np.stack([ua - s.image_points_a[:, 0], va - s.image_points_a[:, 1]], axis=1).reshape(-1))
                parts.append(np.stack([ub - s.image_points_b[:, 0], vb - s.image_points_b[:, 1]], axis=1).reshape(-1))
            return np.concatenate(parts, axis=0)

        p0 = np.concatenate([pose_to_params(R_rig0, t_rig0)] + [pose_to_params(R, t) for R, t in poses_a])
        sol = run_least_squares(fun, p0, loss=options.loss, f_scale=options.f_scale_px, max_nfev=options.max_nfev)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("stereo calibration failed: %s", exc)
        return convergence_failure(StereoResult, f"stereo calibration failed: {exc}")

    n_obs = 2 * int(sum(s.world_points.shape[0] for s in clean))
    diag = {
        "opt_cost": float(sol.cost),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_samples": float(len(clean)),
        "n_observations": float(n_obs),
    }
    if not solution_converged(sol):
        logger.warning("stereo calibration did not converge: %s", sol.message)
        return convergence_failure(StereoResult, f"solver did not converge: {sol.message}", diag)

    R_rig, t_rig = params_to_pose(sol.x[:6])
    for k, s in enumerate(clean):
        R_k, t_k = params_to_pose(sol.x[6 + 6 * k : 12 + 6 * k])
        P_a = transform_points(R_k, t_k, s.world_points)
        P_b = transform_points(R_rig, t_rig, P_a)
        if not (np.all(P_a[:, 2] > 0) and np.all(P_b[:, 2] > 0)):
            logger.warning("stereo solution places sample %d behind a camera", k)
            return convergence_failure(StereoResult, f"sample {k} ends up behind a camera", diag)

    err = rms(sol.fun, n_obs)
    if not math.isfinite(err):
        return convergence_failure(StereoResult, "non-finite reprojection error", diag)
    diag["rms_px"] = err
    if options.max_rms_px is not None and err > options.max_rms_px:
        logger.warning("stereo rms %.3f px exceeds %.3f px", err, options.max_rms_px)
        return convergence_failure(StereoResult, f"reprojection rms {err:.3f} px exceeds {options.max_rms_px:.3f} px", diag)
    logger.info("stereo calibrated from %d sample(s): rms %.4f px", len(clean), err)
    return StereoResult(success=True, extrinsics=Extrinsics(rotation=R_rig, translation=t_rig), rms_error=err, diagnostics=diag)


def calibrate_stereo(
    intrinsics_a: Intrinsics,
    intrinsics_b: Intrinsics,
    samples: Sequence[StereoPointSample],
    options: StereoOptions | None = None,
) -> StereoResult:
    """
    Rigid transform from camera A's frame to camera B's frame (X_b = R X_a + t),
    with both intrinsics held fixed. Image points are expected undistorted
    unless `options.points_are_undistorted` is False.
    """
    return _solve(intrinsics_a, intrinsics_b, list(samples), options or StereoOptions(), WorkingState())


class StereoCalibrator:
    def __init__(self, options: StereoOptions | None = None) -> None:
        self.options = options or StereoOptions()
        self._samples: list[StereoPointSample] = []
        self._work = WorkingState()
        self._state = CalibratorState.IDLE
        self._extrinsics: Extrinsics | None = None
        self._last: StereoResult | None = None

    @property
    def state(self) -> CalibratorState:
        return self._state

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def is_ready(self) -> bool:
        """True once the target number of samples has been collected."""
        return len(self._samples) >= int(self.options.target_sample_count)

    @property
    def extrinsics(self) -> Extrinsics | None:
        return self._extrinsics

    @property
    def last_result(self) -> StereoResult | None:
        return self._last

    def _require_idle(self) -> None:
        if self._work.busy:
            raise CalibrationStateError("calibrator is solving")

    def add_sample(self, world_points: np.ndarray, image_points_a: np.ndarray, image_points_b: np.ndarray) -> StereoPointSample:
        self._require_idle()
        sample = validate_stereo_sample(
            StereoPointSample(world_points=world_points, image_points_a=image_points_a, image_points_b=image_points_b)
        )
        self._samples.append(sample)
        self._state = CalibratorState.ACCUMULATING
        return sample

    def remove_previous_sample(self) -> StereoPointSample:
        self._require_idle()
        if not self._samples:
            raise CalibrationStateError("no sample to remove")
        sample = self._samples.pop()
        if not self._samples:
            self._state = CalibratorState.IDLE
        return sample

    def clear_samples(self) -> None:
        self._require_idle()
        self._samples.clear()
        self._state = CalibratorState.IDLE

    def update(self, intrinsics_a: Intrinsics, intrinsics_b: Intrinsics) -> StereoResult:
        if self._work.busy:
            raise CalibrationStateError("update() called while a solve is in progress")
        if not self._samples:
            raise CalibrationStateError("update() needs at least one sample")

        self._work.busy = True
        self._state = CalibratorState.SOLVING
        try:
            result = _solve(intrinsics_a, intrinsics_b, self._samples, self.options, self._work)
        except Exception:
            self._state = CalibratorState.FAILED
            raise
        finally:
            self._work.busy = False

        self._last = result
        if result.success:
            self._extrinsics = result.extrinsics
            self._state = CalibratorState.SOLVED
        else:
            self._state = CalibratorState.FAILED
        return result
