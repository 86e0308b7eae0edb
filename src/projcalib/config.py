from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics

LOSSES = ("linear", "huber", "soft_l1", "cauchy", "arctan")


class ConfigError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


@dataclass(frozen=True)
class PnPOptions:
    """
    - `points_are_undistorted`: image points are already free of lens
      distortion. When False they are undistorted with the intrinsics first.
    - `extrinsic_guess`: start the refinement from this pose instead of the
      closed-form estimate.
    - `max_rms_px`: a final reprojection rms above this is reported as a
      convergence failure (None disables the check).
    """

    points_are_undistorted: bool = True
    extrinsic_guess: Extrinsics | None = None
    max_rms_px: float | None = 5.0
    loss: str = "linear"
    f_scale_px: float = 1.0
    max_nfev: int | None = None


@dataclass(frozen=True)
class CalibrationOptions:
    """
    Full camera calibration switches.

    `intrinsic_guess` seeds focal length, principal point and distortion;
    `fix_focal_length` / `fix_principal_point` hold the seeded values. With
    `assume_no_distortion` all distortion terms stay at zero.
    `max_rms_px` (off by default) turns a large final rms into a convergence
    failure.
    """

    assume_no_distortion: bool = False
    fix_aspect_ratio: bool = False
    intrinsic_guess: Intrinsics | None = None
    fix_principal_point: bool = False
    fix_focal_length: bool = False
    zero_tangent_dist: bool = False
    rational_model: bool = False
    thin_prism_model: bool = False
    max_rms_px: float | None = None
    loss: str = "linear"
    f_scale_px: float = 1.0
    max_nfev: int | None = None


@dataclass(frozen=True)
class StereoOptions:
    target_sample_count: int = 4
    points_are_undistorted: bool = True
    max_rms_px: float | None = 5.0
    loss: str = "linear"
    f_scale_px: float = 1.0
    max_nfev: int | None = None


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    _require(isinstance(value, bool), f"{key} must be a boolean")
    return bool(value)


def _max_rms(data: dict[str, Any], default: float | None) -> float | None:
    raw = data.get("max_rms_px", default)
    if raw is None:
        return None
    value = float(raw)
    _require(value > 0.0, "max_rms_px must be > 0")
    return value


def _solver_fields(data: dict[str, Any]) -> dict[str, Any]:
    loss = str(data.get("loss", "linear"))
    _require(loss in LOSSES, f"loss must be one of {', '.join(LOSSES)}")
    f_scale = float(data.get("f_scale_px", 1.0))
    _require(f_scale > 0.0, "f_scale_px must be > 0")
    max_nfev_raw = data.get("max_nfev")
    max_nfev = None if max_nfev_raw is None else int(max_nfev_raw)
    _require(max_nfev is None or max_nfev > 0, "max_nfev must be > 0")
    return {"loss": loss, "f_scale_px": f_scale, "max_nfev": max_nfev}


def parse_pnp_options(data: dict[str, Any]) -> PnPOptions:
    guess = data.get("extrinsic_guess")
    if guess is not None:
        _require(isinstance(guess, dict), "extrinsic_guess must be an object")
        try:
            guess = Extrinsics.from_dict(guess)
        except ValueError as exc:
            raise ConfigError(f"extrinsic_guess: {exc}") from exc
    return PnPOptions(
        points_are_undistorted=_bool(data, "points_are_undistorted", True),
        extrinsic_guess=guess,
        max_rms_px=_max_rms(data, 5.0),
        **_solver_fields(data),
    )


def parse_calibration_options(data: dict[str, Any]) -> CalibrationOptions:
    guess = data.get("intrinsic_guess")
    if guess is not None:
        _require(isinstance(guess, dict), "intrinsic_guess must be an object")
        try:
            guess = Intrinsics.from_dict(guess)
        except (ValueError, TypeError, KeyError) as exc:
            raise ConfigError(f"intrinsic_guess: {exc}") from exc
        _require(guess.fx > 0 and guess.fy > 0, "intrinsic_guess needs fx, fy > 0")

    opts = CalibrationOptions(
        assume_no_distortion=_bool(data, "assume_no_distortion", False),
        fix_aspect_ratio=_bool(data, "fix_aspect_ratio", False),
        intrinsic_guess=guess,
        fix_principal_point=_bool(data, "fix_principal_point", False),
        fix_focal_length=_bool(data, "fix_focal_length", False),
        zero_tangent_dist=_bool(data, "zero_tangent_dist", False),
        rational_model=_bool(data, "rational_model", False),
        thin_prism_model=_bool(data, "thin_prism_model", False),
        max_rms_px=_max_rms(data, None),
        **_solver_fields(data),
    )
    _require(not (opts.fix_focal_length and guess is None), "fix_focal_length requires intrinsic_guess")
    return opts


def parse_stereo_options(data: dict[str, Any]) -> StereoOptions:
    count = int(data.get("target_sample_count", 4))
    _require(count >= 1, "target_sample_count must be >= 1")
    return StereoOptions(
        target_sample_count=count,
        points_are_undistorted=_bool(data, "points_are_undistorted", True),
        max_rms_px=_max_rms(data, 5.0),
        **_solver_fields(data),
    )


def _load_json(path: Path) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), f"{path}: expected a JSON object")
    return data


def load_pnp_options(path: Path) -> PnPOptions:
    return parse_pnp_options(_load_json(path))


def load_calibration_options(path: Path) -> CalibrationOptions:
    return parse_calibration_options(_load_json(path))


def load_stereo_options(path: Path) -> StereoOptions:
    return parse_stereo_options(_load_json(path))
