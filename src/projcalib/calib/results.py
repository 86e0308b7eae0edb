from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np

from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics


class CalibrationStateError(RuntimeError):
    """Calibrator used out of order (no samples, or re-entrant update)."""


class CalibratorState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    SOLVING = "solving"
    SOLVED = "solved"
    FAILED = "failed"


class FailureKind(enum.Enum):
    INPUT = "input"
    CONVERGENCE = "convergence"


@dataclass(frozen=True)
class PoseResult:
    success: bool
    extrinsics: Extrinsics | None = None
    rms_error: float = float("nan")
    failure: FailureKind | None = None
    message: str = ""
    diagnostics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class CalibrationResult:
    """
    Outcome of a full camera calibration.

    `extrinsics` holds one scene-convention pose per input sample, in input
    order. `residuals_px` holds the per-point reprojection error norms.
    """

    success: bool
    intrinsics: Intrinsics | None = None
    extrinsics: tuple[Extrinsics, ...] = ()
    rms_error: float = float("nan")
    residuals_px: np.ndarray | None = None
    failure: FailureKind | None = None
    message: str = ""
    diagnostics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class StereoResult:
    """
    Outcome of a stereo calibration.

    `extrinsics` maps camera A coordinates to camera B coordinates
    (X_b = R X_a + t); its inverse is camera B's pose in camera A's frame.
    """

    success: bool
    extrinsics: Extrinsics | None = None
    rms_error: float = float("nan")
    failure: FailureKind | None = None
    message: str = ""
    diagnostics: dict[str, float] = field(default_factory=dict)


@dataclass
class WorkingState:
    """Per-calibrator scratch buffers, reused from one solve to the next."""

    sensor_matrix: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    sensor_matrix_b: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    distortion: np.ndarray = field(default_factory=lambda: np.zeros((14,), dtype=np.float64))
    busy: bool = False

    def load_sensor_matrix(self, K: np.ndarray, which: str = "a") -> np.ndarray:
        target = self.sensor_matrix if which == "a" else self.sensor_matrix_b
        target[...] = np.asarray(K, dtype=np.float64).reshape(3, 3)
        return target


def input_failure(result_type: type, message: str):
    return result_type(success=False, failure=FailureKind.INPUT, message=message)


def convergence_failure(result_type: type, message: str, diagnostics: dict[str, float] | None = None):
    return result_type(success=False, failure=FailureKind.CONVERGENCE, message=message, diagnostics=dict(diagnostics or {}))


def rms(residuals: np.ndarray, n_points: int) -> float:
    """sqrt(sum of squared residual components / number of points)."""
    r = np.asarray(residuals, dtype=np.float64).reshape(-1)
    if n_points <= 0:
        return float("nan")
    return float(np.sqrt(np.sum(r * r) / float(n_points)))
