"""
Pinhole camera intrinsics as defined by OpenCV:

    [ fx,  0, cx ]
    [  0, fy, cy ]
    [  0,  0,  1 ]

fx and fy are the product of the physical focal length (mm) and the sensor
pixel density (px/mm), so they differ for non-square pixels. Values are only
meaningful at the reference resolution: cropping an image changes them (and
the distortion), scaling it requires `scaled_to`.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Sequence

import numpy as np

from projcalib.core.distortion import COEFF_NAMES, VALID_COEFF_COUNTS, BrownDistortion

DEFAULT_COEFF_COUNT = 5

# Focal length used when converting to a physical camera without a known lens.
DEFAULT_PHYSICAL_FOCAL_LENGTH_MM = 100.0


@dataclass(frozen=True)
class PhysicalCamera:
    """
    Engine physical camera: focal length and sensor size in mm, lens shift as
    a fraction of the sensor (x right, y up), pixel resolution of the target.
    """

    focal_length_mm: float
    sensor_size_mm: tuple[float, float]
    lens_shift: tuple[float, float]
    resolution: tuple[int, int]


@dataclass(frozen=True)
class Intrinsics:
    cx: float
    cy: float
    fx: float
    fy: float
    distortion_coeffs: tuple[float, ...] | None
    resolution: tuple[int, int]
    rms_error: float = 0.0

    def __post_init__(self) -> None:
        if self.distortion_coeffs is not None:
            coeffs = tuple(float(c) for c in self.distortion_coeffs)
            if len(coeffs) not in VALID_COEFF_COUNTS:
                raise ValueError(f"distortion_coeffs length must be one of {VALID_COEFF_COUNTS} (got {len(coeffs)})")
            object.__setattr__(self, "distortion_coeffs", coeffs)
        object.__setattr__(self, "resolution", (int(self.resolution[0]), int(self.resolution[1])))

    # Construction.

    @classmethod
    def from_raw(
        cls,
        resolution: tuple[int, int],
        cx: float,
        cy: float,
        fx: float,
        fy: float,
        distortion_coeffs: Sequence[float] | None = None,
    ) -> "Intrinsics":
        if distortion_coeffs is None:
            distortion_coeffs = (0.0,) * DEFAULT_COEFF_COUNT
        return cls(
            cx=float(cx),
            cy=float(cy),
            fx=float(fx),
            fy=float(fy),
            distortion_coeffs=tuple(float(c) for c in distortion_coeffs),
            resolution=(int(resolution[0]), int(resolution[1])),
            rms_error=0.0,
        )

    @classmethod
    def from_camera_matrix(
        cls,
        K: np.ndarray,
        dist: np.ndarray | Sequence[float] | None,
        resolution: tuple[int, int],
        rms_error: float = 0.0,
    ) -> "Intrinsics":
        K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        if dist is None:
            coeffs: tuple[float, ...] = (0.0,) * DEFAULT_COEFF_COUNT
        else:
            coeffs = tuple(float(c) for c in np.asarray(dist, dtype=np.float64).reshape(-1))
        return cls(
            cx=float(K[0, 2]),
            cy=float(K[1, 2]),
            fx=float(K[0, 0]),
            fy=float(K[1, 1]),
            distortion_coeffs=coeffs,
            resolution=(int(resolution[0]), int(resolution[1])),
            rms_error=float(rms_error),
        )

    @classmethod
    def from_physical_camera(cls, cam: PhysicalCamera) -> "Intrinsics":
        w, h = int(cam.resolution[0]), int(cam.resolution[1])
        sensor_w, sensor_h = float(cam.sensor_size_mm[0]), float(cam.sensor_size_mm[1])
        if cam.focal_length_mm <= 0 or sensor_w <= 0 or sensor_h <= 0:
            raise ValueError("physical camera needs focal length and sensor size > 0")
        return cls.from_raw(
            (w, h),
            cx=(0.5 - float(cam.lens_shift[0])) * w,
            cy=(0.5 + float(cam.lens_shift[1])) * h,
            fx=float(cam.focal_length_mm) / sensor_w * w,
            fy=float(cam.focal_length_mm) / sensor_h * h,
        )

    # Accessors.

    @property
    def is_valid(self) -> bool:
        return self.distortion_coeffs is not None

    @property
    def width(self) -> int:
        return self.resolution[0]

    @property
    def height(self) -> int:
        return self.resolution[1]

    @property
    def aspect(self) -> float:
        """Aspect in pixel count, disregarding pixel aspect."""
        return self.width / float(self.height)

    def _coeff(self, name: str) -> float:
        i = COEFF_NAMES.index(name)
        if self.distortion_coeffs is None or len(self.distortion_coeffs) <= i:
            return 0.0
        return self.distortion_coeffs[i]

    k1 = property(lambda self: self._coeff("k1"))
    k2 = property(lambda self: self._coeff("k2"))
    k3 = property(lambda self: self._coeff("k3"))
    k4 = property(lambda self: self._coeff("k4"))
    k5 = property(lambda self: self._coeff("k5"))
    k6 = property(lambda self: self._coeff("k6"))
    p1 = property(lambda self: self._coeff("p1"))
    p2 = property(lambda self: self._coeff("p2"))
    s1 = property(lambda self: self._coeff("s1"))
    s2 = property(lambda self: self._coeff("s2"))
    s3 = property(lambda self: self._coeff("s3"))
    s4 = property(lambda self: self._coeff("s4"))
    tau_x = property(lambda self: self._coeff("tau_x"))
    tau_y = property(lambda self: self._coeff("tau_y"))

    def camera_matrix(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def distortion_array(self) -> np.ndarray:
        if self.distortion_coeffs is None:
            return np.zeros((DEFAULT_COEFF_COUNT,), dtype=np.float64)
        return np.asarray(self.distortion_coeffs, dtype=np.float64)

    def distortion(self) -> BrownDistortion:
        return BrownDistortion.from_coeffs(self.distortion_coeffs)

    def _require_focal(self) -> None:
        if not (self.fx > 0 and self.fy > 0):
            raise ValueError("fx and fy must be > 0")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("resolution must be > 0")

    @property
    def lens_shift(self) -> tuple[float, float]:
        """Lens shift as applied to engine cameras (x right, y up, fraction of sensor)."""
        return (-(self.cx / float(self.width) - 0.5), self.cy / float(self.height) - 0.5)

    @property
    def vertical_fov_deg(self) -> float:
        self._require_focal()
        return math.degrees(2.0 * math.atan2(self.height, 2.0 * self.fy))

    @property
    def horizontal_fov_deg(self) -> float:
        self._require_focal()
        return math.degrees(2.0 * math.atan2(self.width, 2.0 * self.fx))

    def derived_sensor_size(self, focal_length_mm: float) -> tuple[float, float]:
        """Sensor size (mm) implied by a known or chosen focal length, since fx = F * sx."""
        self._require_focal()
        return (
            float(focal_length_mm) * self.width / self.fx,
            float(focal_length_mm) * self.height / self.fy,
        )

    def derived_focal_length(self, sensor_size_mm: tuple[float, float]) -> float:
        """Focal length (mm) implied by a known sensor size."""
        self._require_focal()
        return self.fx / (float(sensor_size_mm[0]) / self.width)

    def to_physical_camera(self, focal_length_mm: float = DEFAULT_PHYSICAL_FOCAL_LENGTH_MM) -> PhysicalCamera:
        return PhysicalCamera(
            focal_length_mm=float(focal_length_mm),
            sensor_size_mm=self.derived_sensor_size(focal_length_mm),
            lens_shift=self.lens_shift,
            resolution=self.resolution,
        )

    def projection_matrix(self, near: float, far: float) -> np.ndarray:
        """
        4x4 perspective projection (OpenGL clip conventions, view space y up,
        camera looking down -z) matching an engine physical camera with these
        intrinsics. Distortion is not representable and is ignored.
        """
        self._require_focal()
        if not (0 < near < far):
            raise ValueError("need 0 < near < far")
        f_mm = DEFAULT_PHYSICAL_FOCAL_LENGTH_MM
        sensor_w, sensor_h = self.derived_sensor_size(f_mm)
        shift_x, shift_y = self.lens_shift

        # Frustum edges at the near plane.
        factor = near / f_mm
        left = -sensor_w * (0.5 - shift_x) * factor
        right = sensor_w * (0.5 + shift_x) * factor
        bottom = -sensor_h * (0.5 - shift_y) * factor
        top = sensor_h * (0.5 + shift_y) * factor

        m = np.zeros((4, 4), dtype=np.float64)
        m[0, 0] = 2.0 * near / (right - left)
        m[0, 2] = (right + left) / (right - left)
        m[1, 1] = 2.0 * near / (top - bottom)
        m[1, 2] = (top + bottom) / (top - bottom)
        m[2, 2] = (far + near) / (near - far)
        m[2, 3] = 2.0 * far * near / (near - far)
        m[3, 2] = -1.0
        return m

    # Derived instances.

    def scaled_to(self, resolution: tuple[int, int]) -> "Intrinsics":
        """Same lens at another pixel resolution (uniform resampling, no crop)."""
        w, h = int(resolution[0]), int(resolution[1])
        sx = w / float(self.width)
        sy = h / float(self.height)
        return replace(self, cx=self.cx * sx, cy=self.cy * sy, fx=self.fx * sx, fy=self.fy * sy, resolution=(w, h))

    def with_rms_error(self, rms_error: float) -> "Intrinsics":
        return replace(self, rms_error=float(rms_error))

    # Serialization.

    def to_dict(self) -> dict[str, Any]:
        return {
            "cx": self.cx,
            "cy": self.cy,
            "fx": self.fx,
            "fy": self.fy,
            "distortion_coeffs": None if self.distortion_coeffs is None else list(self.distortion_coeffs),
            "resolution": {"x": self.width, "y": self.height},
            "rms_error": self.rms_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Intrinsics":
        """
        Parse a flat record. Also accepts the engine's serialized form
        (`_cx`, `_distortionCoeffs`, `_resolution` or `_referenceResolution`,
        `_rmsError`). A record without distortion loads as invalid.
        """

        def get(name: str, legacy: str, default: Any = None) -> Any:
            if name in data:
                return data[name]
            return data.get(legacy, default)

        res = get("resolution", "_resolution")
        if res is None:
            res = data.get("_referenceResolution", {"x": 0, "y": 0})
        if isinstance(res, dict):
            w, h = int(res.get("x", 0)), int(res.get("y", 0))
        else:
            w, h = int(res[0]), int(res[1])

        coeffs = get("distortion_coeffs", "_distortionCoeffs")
        return cls(
            cx=float(get("cx", "_cx", 0.0)),
            cy=float(get("cy", "_cy", 0.0)),
            fx=float(get("fx", "_fx", 0.0)),
            fy=float(get("fy", "_fy", 0.0)),
            distortion_coeffs=None if coeffs is None else tuple(float(c) for c in coeffs),
            resolution=(w, h),
            rms_error=float(get("rms_error", "_rmsError", 0.0)),
        )

    def __str__(self) -> str:
        if not self.is_valid:
            return "Invalid"
        dist = ", ".join(f"{c:g}" for c in self.distortion_coeffs or ())
        return f"(cx,cy,fx,fy): ({self.cx:g}, {self.cy:g}, {self.fx:g}, {self.fy:g}) dist: ({dist}) res: {self.width}x{self.height}"
