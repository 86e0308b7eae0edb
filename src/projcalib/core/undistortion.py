"""
Dense lens undistortion.

The undistortion table answers, for every pixel of the undistorted (ideal
pinhole) image, where to sample the distorted source image. It is built by
running the forward distortion model, the same way OpenCV's
initUndistortRectifyMap does with an identity rectification and the original
camera matrix.
"""
from __future__ import annotations

import logging
import math

import numpy as np

from projcalib.core.distortion import BrownDistortion
from projcalib.core.geometry import normalized_to_pixels, pixels_to_normalized
from projcalib.core.intrinsics import Intrinsics

logger = logging.getLogger(__name__)


class LensDistortionError(ValueError):
    pass


def distort_pixel(px: float, py: float, intrinsics: Intrinsics) -> tuple[float, float]:
    """
    Scalar reference for one table entry: undistorted pixel -> distorted pixel.

    Kept deliberately free of numpy so that the vectorised table can be checked
    against it.
    """
    fx, fy, cx, cy = float(intrinsics.fx), float(intrinsics.fy), float(intrinsics.cx), float(intrinsics.cy)
    d = intrinsics.distortion()
    x = (px - cx) / fx
    y = (py - cy) / fy
    x2 = x * x
    y2 = y * y
    r2 = x2 + y2
    r4 = r2 * r2
    _2xy = 2.0 * x * y
    kr = (1.0 + ((d.k3 * r2 + d.k2) * r2 + d.k1) * r2) / (1.0 + ((d.k6 * r2 + d.k5) * r2 + d.k4) * r2)
    xd = x * kr + d.p1 * _2xy + d.p2 * (r2 + 2.0 * x2) + d.s1 * r2 + d.s2 * r4
    yd = y * kr + d.p1 * (r2 + 2.0 * y2) + d.p2 * _2xy + d.s3 * r2 + d.s4 * r4
    if d.has_tilt:
        m = d.tilt_matrix()
        w = m[2, 0] * xd + m[2, 1] * yd + m[2, 2]
        xd, yd = (m[0, 0] * xd + m[0, 1] * yd + m[0, 2]) / w, (m[1, 0] * xd + m[1, 1] * yd + m[1, 2]) / w
    return fx * float(xd) + cx, fy * float(yd) + cy


def _checked_distortion(intrinsics: Intrinsics) -> BrownDistortion:
    if not intrinsics.is_valid:
        raise LensDistortionError("intrinsics carry no distortion coefficients")
    if not (math.isfinite(intrinsics.fx) and math.isfinite(intrinsics.fy) and intrinsics.fx > 0 and intrinsics.fy > 0):
        raise LensDistortionError("fx and fy must be finite and > 0")
    if not (math.isfinite(intrinsics.cx) and math.isfinite(intrinsics.cy)):
        raise LensDistortionError("principal point must be finite")
    dist = intrinsics.distortion()
    if not dist.is_finite():
        raise LensDistortionError("distortion coefficients must be finite")
    return dist


def build_undistortion_map(intrinsics: Intrinsics) -> tuple[np.ndarray, np.ndarray]:
    """
    Build (map_x, map_y), each float32 (H, W), for `cv2.remap`.

    map_x[v, u], map_y[v, u] is the distorted source pixel feeding undistorted
    pixel (u, v).
    """
    dist = _checked_distortion(intrinsics)
    w, h = intrinsics.resolution
    if w <= 0 or h <= 0:
        raise LensDistortionError("resolution must be > 0")

    uu, vv = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    x = (uu - float(intrinsics.cx)) / float(intrinsics.fx)
    y = (vv - float(intrinsics.cy)) / float(intrinsics.fy)
    xd, yd = dist.distort(x, y)
    map_x = float(intrinsics.fx) * xd + float(intrinsics.cx)
    map_y = float(intrinsics.fy) * yd + float(intrinsics.cy)

    if not (np.all(np.isfinite(map_x)) and np.all(np.isfinite(map_y))):
        raise LensDistortionError("undistortion map contains non-finite entries (distortion too strong for this field of view)")
    logger.debug("built %dx%d undistortion map", w, h)
    return map_x.astype(np.float32), map_y.astype(np.float32)


def distort_points(image_points: np.ndarray, intrinsics: Intrinsics) -> np.ndarray:
    """Ideal (undistorted) pixels -> pixels as seen through the lens."""
    dist = _checked_distortion(intrinsics)
    K = intrinsics.camera_matrix()
    xy = pixels_to_normalized(K, image_points)
    xd, yd = dist.distort(xy[:, 0], xy[:, 1])
    return normalized_to_pixels(K, np.stack([xd, yd], axis=1))


def undistort_points(image_points: np.ndarray, intrinsics: Intrinsics) -> np.ndarray:
    """Observed (distorted) pixels -> ideal pinhole pixels, iterative inverse."""
    dist = _checked_distortion(intrinsics)
    K = intrinsics.camera_matrix()
    xy = pixels_to_normalized(K, image_points)
    x, y = dist.undistort(xy[:, 0], xy[:, 1])
    return normalized_to_pixels(K, np.stack([x, y], axis=1))


def flip_image(image: np.ndarray, vertically: bool = True, horizontally: bool = False) -> np.ndarray:
    out = np.asarray(image)
    if vertically:
        out = out[::-1]
    if horizontally:
        out = out[:, ::-1]
    return np.ascontiguousarray(out)


class LensUndistorter:
    """
    Holds the undistortion table of one lens and applies it to images.

    Images are numpy arrays (H, W) or (H, W, C) at the intrinsics' resolution.
    """

    def __init__(self, intrinsics: Intrinsics) -> None:
        self.intrinsics = intrinsics
        self.map_x, self.map_y = build_undistortion_map(intrinsics)

    @property
    def resolution(self) -> tuple[int, int]:
        return self.intrinsics.resolution

    def undistort(
        self,
        image: np.ndarray,
        pre_flip_y: bool = False,
        post_flip_y: bool = False,
        interpolation: str = "linear",
    ) -> np.ndarray:
        """
        Resample a distorted image into its undistorted counterpart.

        `pre_flip_y` flips the input before lookup (bottom-up image sources),
        `post_flip_y` flips the result.
        """
        import cv2  # type: ignore

        img = np.asarray(image)
        w, h = self.resolution
        if img.shape[0] != h or img.shape[1] != w:
            raise ValueError(f"image is {img.shape[1]}x{img.shape[0]}, undistorter expects {w}x{h}")
        flags = {
            "nearest": cv2.INTER_NEAREST,
            "linear": cv2.INTER_LINEAR,
            "cubic": cv2.INTER_CUBIC,
            "lanczos4": cv2.INTER_LANCZOS4,
        }.get(interpolation)
        if flags is None:
            raise ValueError("interpolation must be one of nearest, linear, cubic, lanczos4")

        if pre_flip_y:
            img = flip_image(img, vertically=True)
        out = cv2.remap(img, self.map_x, self.map_y, interpolation=flags, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
        if post_flip_y:
            out = flip_image(out, vertically=True)
        return out
