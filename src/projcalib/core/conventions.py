"""
Axis conventions shared by the solvers.

Pixels: origin top-left, y down. The lens model (sensor matrix with positive
fx, fy and Brown-Conrady distortion) works on y-down normalized coordinates.
Scene: camera frame with y up, camera looking along +z.

Every sign flip between the two lives here. Two equivalent routes map a
scene-frame point (X, Y, Z) to y-down normalized coordinates (X/Z, -Y/Z):

- PnP / stereo: negate fy in the sensor matrix (`flip_sensor_matrix`); the
  pose found by the solver is then directly a scene pose.
- Full calibration: fy stays positive because it is being estimated, and the
  pose is solved for in the solver frame, a 180 degree rotation about Y of the
  scene frame (`scene_to_solver` / `solver_to_scene`). The rotated point
  (-X, Y, -Z) has the same ratios, but visible points have negative depth in
  the solver frame (`SOLVER_DEPTH_SIGN`).

Without lens distortion, for any scene pose (R, t) and world point X:
  project(flip_sensor_matrix(K), R X + t) == project_solver(K, scene_to_solver(R, t) X)

Lens distortion is only defined on y-down normalized coordinates, so the
flipped-fy route expects undistorted pixels.
"""
from __future__ import annotations

import numpy as np

# diag(-1, 1, -1): 180 degree rotation about the Y axis.
ROTATE_Y_180 = np.diag([-1.0, 1.0, -1.0])

# Sign of the depth of visible points in the solver frame.
SOLVER_DEPTH_SIGN = -1.0


def flip_sensor_matrix(K: np.ndarray) -> np.ndarray:
    """Return a copy of the 3x3 sensor matrix with fy negated."""
    K = np.array(K, dtype=np.float64).reshape(3, 3)
    K[1, 1] = -K[1, 1]
    return K


def solver_to_scene(R: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Map a calibration-solver pose (rotation matrix, translation) to scene convention."""
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    t = np.asarray(t, dtype=np.float64).reshape(3)
    return ROTATE_Y_180 @ R, ROTATE_Y_180 @ t


def scene_to_solver(R: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Inverse of `solver_to_scene` (the correction is its own inverse)."""
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    t = np.asarray(t, dtype=np.float64).reshape(3)
    return ROTATE_Y_180 @ R, ROTATE_Y_180 @ t


def scene_to_image_normalized(xy: np.ndarray) -> np.ndarray:
    """Scene normalized coordinates (X/Z, Y/Z) -> y-down normalized coordinates, and back."""
    xy = np.array(xy, dtype=np.float64).reshape(-1, 2)
    xy[:, 1] = -xy[:, 1]
    return xy


def viewport_to_image_points(viewport_xy: np.ndarray, resolution: tuple[int, int]) -> np.ndarray:
    """
    Engine viewport coordinates (normalized, origin bottom-left, y up)
    -> pixel coordinates (origin top-left, y down).
    """
    xy = np.asarray(viewport_xy, dtype=np.float64).reshape(-1, 2)
    w, h = int(resolution[0]), int(resolution[1])
    return np.stack([xy[:, 0] * w, (1.0 - xy[:, 1]) * h], axis=1)


def image_to_viewport_points(image_xy: np.ndarray, resolution: tuple[int, int]) -> np.ndarray:
    """Inverse of `viewport_to_image_points`."""
    uv = np.asarray(image_xy, dtype=np.float64).reshape(-1, 2)
    w, h = int(resolution[0]), int(resolution[1])
    return np.stack([uv[:, 0] / w, 1.0 - uv[:, 1] / h], axis=1)
