"""
Single-camera calibration: intrinsics, lens distortion and one pose per
sample, estimated jointly by least squares on pixel reprojection error.

Initial intrinsics come from, in order of preference:
  - the caller's guess (`CalibrationOptions.intrinsic_guess`),
  - Zhang's closed form (planar samples, at least 3 of them),
  - a principal point at the image centre plus focal lengths from the plane
    homographies (planar samples, fewer than 3),
  - a DLT + RQ decomposition (non-planar points, at least 6 in one sample).

Poses are solved for in the solver frame (positive fy, visible points at
negative depth) and converted to the scene convention by a 180 degree rotation
about Y, so they agree with the poses `solve_pnp` returns for the same data.
A single planar sample with little depth variation is ill-conditioned: the
focal length and principal point trade off against the pose, and the result
should only be trusted with a good `intrinsic_guess`.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from projcalib.calib.lsq import params_to_pose, pose_to_params, run_least_squares, safe_project, solution_converged
from projcalib.calib.results import (
    CalibrationResult,
    CalibrationStateError,
    CalibratorState,
    WorkingState,
    convergence_failure,
    input_failure,
    rms,
)
from projcalib.config import CalibrationOptions
from projcalib.core.conventions import SOLVER_DEPTH_SIGN, scene_to_image_normalized, scene_to_solver, solver_to_scene
from projcalib.core.distortion import COEFF_NAMES, BrownDistortion
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.geometry import (
    decompose_projection,
    estimate_homography,
    estimate_projection_dlt,
    fit_plane,
    focal_from_homographies,
    initial_pose,
    is_planar,
    pixels_to_normalized,
    transform_points,
    zhang_intrinsics,
)
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.validation import (
    CalibrationInputError,
    PointSample,
    validate_resolution,
    validate_sample,
)

logger = logging.getLogger(__name__)

_BASE_TERMS = ("k1", "k2", "p1", "p2", "k3")
_RATIONAL_TERMS = ("k4", "k5", "k6")
_PRISM_TERMS = ("s1", "s2", "s3", "s4")


@dataclass(frozen=True)
class _Layout:
    """Which parameters are free, and how many coefficients are reported."""

    free_fx: bool
    free_fy: bool
    free_pp: bool
    aspect: float  # fy / fx, used when fy is tied to fx
    dist_indices: tuple[int, ...]
    coeff_count: int


def _layout(options: CalibrationOptions, guess: Intrinsics | None) -> _Layout:
    if options.assume_no_distortion:
        names: tuple[str, ...] = ()
    else:
        names = _BASE_TERMS
        if options.zero_tangent_dist:
            names = tuple(n for n in names if n not in ("p1", "p2"))
        if options.rational_model:
            names = names + _RATIONAL_TERMS
        if options.thin_prism_model:
            names = names + _PRISM_TERMS

    count = 5
    if options.rational_model:
        count = 8
    if options.thin_prism_model:
        count = 12
    if guess is not None and guess.distortion_coeffs is not None and not options.assume_no_distortion:
        count = max(count, len(guess.distortion_coeffs))

    aspect = 1.0
    if guess is not None and options.fix_aspect_ratio:
        aspect = float(guess.fy) / float(guess.fx)

    return _Layout(
        free_fx=not options.fix_focal_length,
        free_fy=not options.fix_focal_length and not options.fix_aspect_ratio,
        free_pp=not options.fix_principal_point,
        aspect=aspect,
        dist_indices=tuple(COEFF_NAMES.index(n) for n in names),
        coeff_count=count,
    )


def _initial_intrinsics(
    samples: Sequence[PointSample],
    resolution: tuple[int, int],
    options: CalibrationOptions,
) -> tuple[np.ndarray, str]:
    """Initial sensor matrix and a short tag naming how it was obtained."""
    w, h = resolution
    guess = options.intrinsic_guess
    if guess is not None:
        if guess.resolution != (w, h) and guess.width > 0 and guess.height > 0:
            guess = guess.scaled_to((w, h))
        return guess.camera_matrix(), "guess"

    center = ((w - 1) / 2.0, (h - 1) / 2.0)
    fallback_f = float(max(w, h))

    def plausible(K: np.ndarray | None) -> bool:
        if K is None or not np.all(np.isfinite(K)):
            return False
        return K[0, 0] > 0 and K[1, 1] > 0 and 0.0 <= K[0, 2] <= w and 0.0 <= K[1, 2] <= h

    if all(is_planar(s.world_points) for s in samples):
        homographies = []
        for s in samples:
            c, basis, _flatness = fit_plane(s.world_points)
            ab = (s.world_points - c) @ basis[:2].T
            homographies.append(estimate_homography(ab, s.image_points))

        if len(homographies) >= 3 and not options.fix_principal_point:
            K = zhang_intrinsics(homographies)
            if plausible(K):
                if options.fix_aspect_ratio:
                    f = 0.5 * (K[0, 0] + K[1, 1])
                    K[0, 0] = K[1, 1] = f
                return K, "zhang"
            logger.debug("Zhang initialisation implausible, using centred principal point")

        focal = focal_from_homographies(
            homographies,
            center[0],
            center[1],
            same_focal=options.fix_aspect_ratio or len(homographies) == 1,
        )
        fx, fy = focal if focal is not None else (fallback_f, fallback_f)
        K = np.array([[fx, 0.0, center[0]], [0.0, fy, center[1]], [0.0, 0.0, 1.0]], dtype=np.float64)
        return K, "center"

    largest = max(samples, key=lambda s: s.world_points.shape[0])
    if largest.world_points.shape[0] >= 6 and not is_planar(largest.world_points, rel_tol=1e-3):
        K, _R, _t = decompose_projection(estimate_projection_dlt(largest.world_points, largest.image_points))
        K[0, 1] = 0.0
        if plausible(K):
            if options.fix_principal_point:
                K[0, 2], K[1, 2] = center
            if options.fix_aspect_ratio:
                f = 0.5 * (K[0, 0] + K[1, 1])
                K[0, 0] = K[1, 1] = f
            return K, "dlt"
        logger.debug("DLT initialisation implausible, using default focal length")

    K = np.array([[fallback_f, 0.0, center[0]], [0.0, fallback_f, center[1]], [0.0, 0.0, 1.0]], dtype=np.float64)
    return K, "default"


class _Packer:
    """Maps the free-parameter vector to (fx, fy, cx, cy, distortion, poses)."""

    def __init__(self, layout: _Layout, K0: np.ndarray, dist0: np.ndarray, n_samples: int) -> None:
        self.layout = layout
        self.K0 = np.asarray(K0, dtype=np.float64)
        self.dist0 = np.asarray(dist0, dtype=np.float64).reshape(14)
        self.n_samples = int(n_samples)

    def pack(self, poses: list[tuple[np.ndarray, np.ndarray]]) -> np.ndarray:
        lay = self.layout
        parts: list[float] = []
        if lay.free_fx:
            parts.append(float(self.K0[0, 0]))
        if lay.free_fy:
            parts.append(float(self.K0[1, 1]))
        if lay.free_pp:
            parts.extend([float(self.K0[0, 2]), float(self.K0[1, 2])])
        parts.extend(float(self.dist0[i]) for i in lay.dist_indices)
        head = np.asarray(parts, dtype=np.float64)
        return np.concatenate([head] + [pose_to_params(R, t) for R, t in poses])

    def unpack(self, p: np.ndarray) -> tuple[float, float, float, float, np.ndarray, np.ndarray]:
        lay = self.layout
        p = np.asarray(p, dtype=np.float64).reshape(-1)
        i = 0
        fx = float(self.K0[0, 0])
        if lay.free_fx:
            fx = float(p[i])
            i += 1
        if lay.free_fy:
            fy = float(p[i])
            i += 1
        elif lay.free_fx:
            fy = fx * lay.aspect
        else:
            fy = float(self.K0[1, 1])
        cx, cy = float(self.K0[0, 2]), float(self.K0[1, 2])
        if lay.free_pp:
            cx, cy = float(p[i]), float(p[i + 1])
            i += 2
        dist = self.dist0.copy()
        n_dist = len(lay.dist_indices)
        if n_dist:
            dist[list(lay.dist_indices)] = p[i : i + n_dist]
        i += n_dist
        poses = p[i:].reshape(self.n_samples, 6)
        return fx, fy, cx, cy, dist, poses


def _residuals(packer: _Packer, samples: Sequence[PointSample]):
    def fun(p: np.ndarray) -> np.ndarray:
        fx, fy, cx, cy, dist, poses = packer.unpack(p)
        model = BrownDistortion.from_coeffs(dist)
        parts = []
        for k, s in enumerate(samples):
            R, t = params_to_pose(poses[k])
            P = transform_points(R, t, s.world_points)
            u, v = safe_project(P, fx, fy, cx, cy, model, depth_sign=SOLVER_DEPTH_SIGN)
            parts.append(np.stack([u - s.image_points[:, 0], v - s.image_points[:, 1]], axis=1).reshape(-1))
        return np.concatenate(parts, axis=0)

    return fun


def _solve(
    samples: Sequence[PointSample],
    resolution: tuple[int, int],
    options: CalibrationOptions,
    work: WorkingState,
) -> CalibrationResult:
    try:
        w, h = validate_resolution(resolution)
        if not samples:
            raise CalibrationInputError("no samples")
        clean = [validate_sample(s) for s in samples]
        guess = options.intrinsic_guess
        if options.fix_focal_length and guess is None:
            raise CalibrationInputError("fix_focal_length requires an intrinsic guess")
        if guess is not None and not (guess.fx > 0 and guess.fy > 0):
            raise CalibrationInputError("intrinsic guess needs fx, fy > 0")
    except CalibrationInputError as exc:
        logger.warning("calibration rejected input: %s", exc)
        return input_failure(CalibrationResult, str(exc))

    n_points = int(sum(s.world_points.shape[0] for s in clean))
    layout = _layout(options, guess)

    try:
        K0, init_method = _initial_intrinsics(clean, (w, h), options)
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("intrinsic initialisation failed: %s", exc)
        return convergence_failure(CalibrationResult, f"initialisation failed: {exc}")
    logger.debug("initial intrinsics (%s): fx=%.3f fy=%.3f cx=%.3f cy=%.3f", init_method, K0[0, 0], K0[1, 1], K0[0, 2], K0[1, 2])

    dist0 = work.distortion
    dist0[:] = 0.0
    if guess is not None and guess.distortion_coeffs is not None and not options.assume_no_distortion:
        coeffs = guess.distortion_array()
        dist0[: coeffs.size] = coeffs
    if options.zero_tangent_dist:
        # p1, p2 are excluded from the layout, so they are held at zero.
        dist0[2:4] = 0.0
    seed = BrownDistortion.from_coeffs(dist0)

    if len(clean) == 1 and guess is None and is_planar(clean[0].world_points):
        logger.warning("single planar sample without an intrinsic guess: the result is ill-conditioned")

    try:
        poses = []
        for s in clean:
            xn = pixels_to_normalized(K0, s.image_points)
            xu, yu = seed.undistort(xn[:, 0], xn[:, 1])
            R0, t0 = initial_pose(s.world_points, scene_to_image_normalized(np.stack([xu, yu], axis=1)))
            poses.append(scene_to_solver(R0, t0))

        packer = _Packer(layout, K0, dist0, len(clean))
        fun = _residuals(packer, clean)
        sol = run_least_squares(
            fun,
            packer.pack(poses),
            loss=options.loss,
            f_scale=options.f_scale_px,
            max_nfev=options.max_nfev,
        )
    except (np.linalg.LinAlgError, ValueError) as exc:
        logger.warning("calibration failed: %s", exc)
        return convergence_failure(CalibrationResult, f"calibration failed: {exc}")

    diag = {
        "opt_cost": float(sol.cost),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_samples": float(len(clean)),
        "n_points_total": float(n_points),
        "n_params": float(sol.x.size),
    }
    if not solution_converged(sol):
        logger.warning("calibration did not converge: %s", sol.message)
        return convergence_failure(CalibrationResult, f"solver did not converge: {sol.message}", diag)

    fx, fy, cx, cy, dist, pose_params = packer.unpack(sol.x)
    err = rms(sol.fun, n_points)
    if not (fx > 0 and fy > 0 and math.isfinite(err) and np.all(np.isfinite(dist))):
        logger.warning("calibration produced invalid intrinsics (fx=%g, fy=%g, rms=%g)", fx, fy, err)
        return convergence_failure(CalibrationResult, "solver produced invalid intrinsics", diag)
    diag["rms_px"] = err
    if options.max_rms_px is not None and err > options.max_rms_px:
        logger.warning("calibration rms %.3f px exceeds %.3f px", err, options.max_rms_px)
        return convergence_failure(CalibrationResult, f"reprojection rms {err:.3f} px exceeds {options.max_rms_px:.3f} px", diag)

    extrinsics = []
    for k, s in enumerate(clean):
        R_scene, t_scene = solver_to_scene(*params_to_pose(pose_params[k]))
        if not np.all(transform_points(R_scene, t_scene, s.world_points)[:, 2] > 0):
            logger.warning("calibration places points of sample %d behind the camera", k)
            return convergence_failure(CalibrationResult, f"sample {k} ends up behind the camera", diag)
        extrinsics.append(Extrinsics(rotation=R_scene, translation=t_scene))

    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    intrinsics = Intrinsics.from_camera_matrix(K, dist[: layout.coeff_count], (w, h), rms_error=err)
    per_point = np.linalg.norm(np.asarray(sol.fun, dtype=np.float64).reshape(-1, 2), axis=1)
    logger.info("calibrated %d sample(s), %d points: rms %.4f px", len(clean), n_points, err)
    return CalibrationResult(
        success=True,
        intrinsics=intrinsics,
        extrinsics=tuple(extrinsics),
        rms_error=err,
        residuals_px=per_point,
        diagnostics=diag,
    )


def calibrate_camera(
    samples: Sequence[PointSample],
    resolution: tuple[int, int],
    options: CalibrationOptions | None = None,
) -> CalibrationResult:
    """
    Estimate intrinsics and per-sample extrinsics from world/pixel samples.

    Image points are observed (distorted) pixels, origin top-left, y down.
    Returned extrinsics are in scene convention, one per sample.
    """
    return _solve(list(samples), resolution, options or CalibrationOptions(), WorkingState())


class CameraCalibrator:
    """
    Accumulates samples and calibrates on demand.

    `intrinsics`, `extrinsics` and `rms_error` hold the last successful solve;
    failed solves keep them (and the samples) untouched.
    """

    def __init__(self, resolution: tuple[int, int], options: CalibrationOptions | None = None) -> None:
        self._resolution = validate_resolution(resolution)
        self.options = options or CalibrationOptions()
        self._samples: list[PointSample] = []
        self._work = WorkingState()
        self._state = CalibratorState.IDLE
        self._intrinsics: Intrinsics | None = None
        self._extrinsics: tuple[Extrinsics, ...] = ()
        self._last: CalibrationResult | None = None

    @property
    def state(self) -> CalibratorState:
        return self._state

    @property
    def resolution(self) -> tuple[int, int]:
        return self._resolution

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def samples(self) -> tuple[PointSample, ...]:
        return tuple(self._samples)

    @property
    def intrinsics(self) -> Intrinsics | None:
        return self._intrinsics

    @property
    def extrinsics(self) -> tuple[Extrinsics, ...]:
        return self._extrinsics

    @property
    def rms_error(self) -> float:
        return self._intrinsics.rms_error if self._intrinsics is not None else float("nan")

    @property
    def last_result(self) -> CalibrationResult | None:
        return self._last

    def _require_idle(self) -> None:
        if self._work.busy:
            raise CalibrationStateError("calibrator is solving")

    def set_resolution(self, resolution: tuple[int, int]) -> None:
        self._require_idle()
        self._resolution = validate_resolution(resolution)

    def add_sample(self, world_points: np.ndarray, image_points: np.ndarray) -> PointSample:
        """Validate and store one sample (arrays are copied)."""
        self._require_idle()
        sample = validate_sample(PointSample(world_points=world_points, image_points=image_points))
        self._samples.append(sample)
        self._state = CalibratorState.ACCUMULATING
        return sample

    def remove_previous_sample(self) -> PointSample:
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

    def update(self, options: CalibrationOptions | None = None) -> CalibrationResult:
        if self._work.busy:
            raise CalibrationStateError("update() called while a solve is in progress")
        if not self._samples:
            raise CalibrationStateError("update() needs at least one sample")

        self._work.busy = True
        self._state = CalibratorState.SOLVING
        try:
            result = _solve(self._samples, self._resolution, options or self.options, self._work)
        except Exception:
            self._state = CalibratorState.FAILED
            raise
        finally:
            self._work.busy = False

        self._last = result
        if result.success:
            self._intrinsics = result.intrinsics
            self._extrinsics = result.extrinsics
            self._state = CalibratorState.SOLVED
        else:
            self._state = CalibratorState.FAILED
        return result
