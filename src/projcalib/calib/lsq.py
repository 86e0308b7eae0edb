from __future__ import annotations

from typing import Callable

import numpy as np

# Depth floor used inside residual functions so the optimizer sees large but
# finite residuals for points that drift behind the camera.
MIN_DEPTH = 1e-9


def run_least_squares(
    fun: Callable[[np.ndarray], np.ndarray],
    p0: np.ndarray,
    *,
    loss: str = "linear",
    f_scale: float = 1.0,
    max_nfev: int | None = None,
):
    """
    Levenberg-Marquardt when the problem allows it (linear loss, at least as
    many residuals as parameters), trust-region reflective otherwise.
    """
    from scipy.optimize import least_squares  # type: ignore

    p0 = np.asarray(p0, dtype=np.float64).reshape(-1)
    n_res = int(np.asarray(fun(p0)).size)
    if loss == "linear" and n_res >= p0.size:
        return least_squares(fun, p0, method="lm", x_scale="jac", max_nfev=max_nfev)
    return least_squares(
        fun,
        p0,
        method="trf",
        loss=str(loss),
        f_scale=float(f_scale),
        x_scale="jac",
        max_nfev=max_nfev,
    )


def pose_to_params(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    rvec = Rot.from_matrix(np.asarray(R, dtype=np.float64).reshape(3, 3)).as_rotvec()
    return np.concatenate([rvec, np.asarray(t, dtype=np.float64).reshape(3)])


def params_to_pose(p: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    p = np.asarray(p, dtype=np.float64).reshape(6)
    return Rot.from_rotvec(p[:3]).as_matrix(), p[3:].copy()


def safe_project(
    XYZ_cam: np.ndarray, fx: float, fy: float, cx: float, cy: float, dist=None, depth_sign: float = 1.0
) -> tuple[np.ndarray, np.ndarray]:
    """
    Residual-friendly projection: depths are floored instead of producing NaN.
    `depth_sign` is the sign of the depth of visible points in this frame.
    """
    Z = depth_sign * np.maximum(depth_sign * XYZ_cam[:, 2], MIN_DEPTH)
    x = XYZ_cam[:, 0] / Z
    y = XYZ_cam[:, 1] / Z
    if dist is not None:
        x, y = dist.distort(x, y)
    return fx * x + cx, fy * y + cy


def solution_converged(sol) -> bool:
    return bool(sol.success) and int(sol.status) > 0 and bool(np.all(np.isfinite(sol.x)))
