from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from projcalib.config import (
    CalibrationOptions,
    ConfigError,
    PnPOptions,
    StereoOptions,
    load_calibration_options,
    parse_calibration_options,
    parse_pnp_options,
    parse_stereo_options,
)
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics


def test_defaults() -> None:
    assert parse_pnp_options({}) == PnPOptions()
    assert parse_calibration_options({}) == CalibrationOptions()
    assert parse_stereo_options({}) == StereoOptions()
    assert PnPOptions().points_are_undistorted
    assert StereoOptions().target_sample_count == 4


def test_pnp_options_with_guess() -> None:
    guess = Extrinsics.from_rvec_tvec([0.0, 0.1, 0.0], [1.0, 2.0, 3.0])
    opts = parse_pnp_options({"extrinsic_guess": guess.to_dict(), "points_are_undistorted": False, "loss": "huber", "f_scale_px": 2.0})
    assert opts.extrinsic_guess == guess
    assert not opts.points_are_undistorted
    assert opts.loss == "huber"
    assert opts.f_scale_px == 2.0


def test_calibration_options_with_guess(tmp_path: Path) -> None:
    guess = Intrinsics.from_raw((640, 480), 320.0, 240.0, 800.0, 800.0)
    p = tmp_path / "opts.json"
    p.write_text(json.dumps({"intrinsic_guess": guess.to_dict(), "fix_focal_length": True, "rational_model": True}), encoding="utf-8")
    opts = load_calibration_options(p)
    assert opts.intrinsic_guess == guess
    assert opts.fix_focal_length
    assert opts.rational_model
    assert not opts.thin_prism_model


@pytest.mark.parametrize(
    "data",
    [
        {"loss": "l3"},
        {"f_scale_px": 0.0},
        {"max_nfev": 0},
        {"fix_focal_length": True},
        {"rational_model": "yes"},
        {"intrinsic_guess": {"fx": -1.0, "fy": 1.0, "cx": 0.0, "cy": 0.0, "distortion_coeffs": [0.0] * 5, "resolution": {"x": 2, "y": 2}}},
        {"intrinsic_guess": {"fx": 1.0, "fy": 1.0, "distortion_coeffs": [0.0] * 3}},
        {"intrinsic_guess": [1, 2, 3]},
    ],
)
def test_calibration_option_errors(data) -> None:
    with pytest.raises(ConfigError):
        parse_calibration_options(data)


def test_other_option_errors() -> None:
    with pytest.raises(ConfigError):
        parse_stereo_options({"target_sample_count": 0})
    with pytest.raises(ConfigError):
        parse_pnp_options({"extrinsic_guess": {"rotation": (2 * np.eye(3)).tolist(), "translation": [0, 0, 0]}})
    with pytest.raises(ConfigError):
        parse_pnp_options({"points_are_undistorted": 1})


def test_config_error_is_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


def test_max_rms_defaults_and_overrides() -> None:
    assert PnPOptions().max_rms_px == 5.0
    assert StereoOptions().max_rms_px == 5.0
    assert CalibrationOptions().max_rms_px is None
    assert parse_pnp_options({"max_rms_px": None}).max_rms_px is None
    assert parse_stereo_options({"max_rms_px": 2}).max_rms_px == 2.0
    assert parse_calibration_options({"max_rms_px": 1.5}).max_rms_px == 1.5
    with pytest.raises(ConfigError):
        parse_pnp_options({"max_rms_px": 0.0})
