from __future__ import annotations

from dataclasses import dataclass

import numpy as np

MIN_POINTS = 4


class CalibrationInputError(ValueError):
    """Caller-correctable input problem, detected before any solve."""


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise CalibrationInputError(msg)


@dataclass(frozen=True)
class PointSample:
    """
    One calibration observation.

    - `world_points`: 3D points in scene units (millimeters recommended)
    - `image_points`: matching pixels (origin top-left, y down), same order
    """

    world_points: np.ndarray  # (N,3)
    image_points: np.ndarray  # (N,2)

    @property
    def n_points(self) -> int:
        return int(np.asarray(self.world_points).reshape(-1, 3).shape[0])


@dataclass(frozen=True)
class StereoPointSample:
    """The same world points observed simultaneously by camera A and camera B."""

    world_points: np.ndarray  # (N,3)
    image_points_a: np.ndarray  # (N,2)
    image_points_b: np.ndarray  # (N,2)


def as_points(points: object, dim: int, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    _require(arr.size > 0, f"{name} is empty")
    _require(arr.size % dim == 0, f"{name} must contain {dim}D points")
    arr = arr.reshape(-1, dim)
    _require(bool(np.all(np.isfinite(arr))), f"{name} contains non-finite coordinates")
    return arr


def is_collinear(points: np.ndarray, rel_tol: float = 1e-6) -> bool:
    """True when all points lie on one line (or coincide), in any dimension."""
    pts = np.asarray(points, dtype=np.float64)
    centered = pts - pts.mean(axis=0, keepdims=True)
    s = np.linalg.svd(centered, compute_uv=False)
    if s.size < 2 or s[0] <= 0.0:
        return True
    return bool(s[1] <= rel_tol * s[0])


def validate_correspondences(world_points: object, image_points: object) -> tuple[np.ndarray, np.ndarray]:
    """
    Check one (world, image) sample and return float64 arrays (N,3), (N,2).

    Raises CalibrationInputError on too few points, mismatched lengths,
    non-finite coordinates or collinear configurations.
    """
    world = as_points(world_points, 3, "world_points")
    image = as_points(image_points, 2, "image_points")
    _require(world.shape[0] == image.shape[0], f"point count mismatch: {world.shape[0]} world vs {image.shape[0]} image")
    _require(world.shape[0] >= MIN_POINTS, f"need >= {MIN_POINTS} correspondences (got {world.shape[0]})")
    _require(not is_collinear(world), "world points are collinear")
    _require(not is_collinear(image), "image points are collinear")
    return world, image


def validate_sample(sample: PointSample) -> PointSample:
    world, image = validate_correspondences(sample.world_points, sample.image_points)
    return PointSample(world_points=world, image_points=image)


def validate_stereo_sample(sample: StereoPointSample) -> StereoPointSample:
    world, image_a = validate_correspondences(sample.world_points, sample.image_points_a)
    _world, image_b = validate_correspondences(sample.world_points, sample.image_points_b)
    return StereoPointSample(world_points=world, image_points_a=image_a, image_points_b=image_b)


def validate_resolution(resolution: object) -> tuple[int, int]:
    _require(
        isinstance(resolution, (list, tuple, np.ndarray)) and len(resolution) == 2,
        "resolution must be (width, height)",
    )
    w, h = int(resolution[0]), int(resolution[1])
    _require(w > 0 and h > 0, "resolution values must be > 0")
    return w, h
