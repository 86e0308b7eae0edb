from projcalib.api import load_extrinsics, load_intrinsics, save_extrinsics, save_intrinsics
from projcalib.calib.camera import CameraCalibrator, calibrate_camera
from projcalib.calib.pnp import PnPSolver, solve_pnp
from projcalib.calib.results import CalibrationStateError, CalibratorState, FailureKind
from projcalib.calib.stereo import StereoCalibrator, calibrate_stereo
from projcalib.config import CalibrationOptions, PnPOptions, StereoOptions
from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics, PhysicalCamera
from projcalib.core.undistortion import LensUndistorter, build_undistortion_map
from projcalib.core.validation import CalibrationInputError, PointSample, StereoPointSample

__all__ = [
    "CalibrationInputError",
    "CalibrationOptions",
    "CalibrationStateError",
    "CalibratorState",
    "CameraCalibrator",
    "Extrinsics",
    "FailureKind",
    "Intrinsics",
    "LensUndistorter",
    "PhysicalCamera",
    "PnPOptions",
    "PnPSolver",
    "PointSample",
    "StereoCalibrator",
    "StereoOptions",
    "StereoPointSample",
    "build_undistortion_map",
    "calibrate_camera",
    "calibrate_stereo",
    "load_extrinsics",
    "load_intrinsics",
    "save_extrinsics",
    "save_intrinsics",
    "solve_pnp",
]
