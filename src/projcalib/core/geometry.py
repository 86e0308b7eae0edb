"""
Projection and closed-form initialisation helpers. Pixels have their origin
at the top-left with y down; camera-frame points are in front of the camera
at positive z unless stated otherwise.

Everything here works on float64 numpy arrays, with OpenCV for the
homography and closed-form pose and scipy for RQ; the solvers in
`projcalib.calib` refine these estimates with least squares.
"""
from __future__ import annotations

import logging

import numpy as np

from projcalib.core.conventions import SOLVER_DEPTH_SIGN, scene_to_solver
from projcalib.core.distortion import BrownDistortion

logger = logging.getLogger(__name__)

_EPS_DEPTH = 1e-9


def transform_points(R: np.ndarray, t: np.ndarray, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return (np.asarray(R, dtype=np.float64).reshape(3, 3) @ points.T).T + np.asarray(t, dtype=np.float64).reshape(1, 3)


def project_camera_points(K: np.ndarray, dist: BrownDistortion | None, XYZ_cam: np.ndarray) -> np.ndarray:
    """
    Project camera-frame points to pixels. Points at (or behind) the camera
    centre project to NaN.
    """
    XYZ_cam = np.asarray(XYZ_cam, dtype=np.float64).reshape(-1, 3)
    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    uv = np.full((XYZ_cam.shape[0], 2), np.nan, dtype=np.float64)
    Z = XYZ_cam[:, 2]
    good = np.isfinite(Z) & (Z > _EPS_DEPTH)
    if not np.any(good):
        return uv

    x = XYZ_cam[good, 0] / Z[good]
    y = XYZ_cam[good, 1] / Z[good]
    if dist is not None:
        x, y = dist.distort(x, y)
    uv[good, 0] = K[0, 0] * x + K[0, 1] * y + K[0, 2]
    uv[good, 1] = K[1, 1] * y + K[1, 2]
    return uv


def project_points(
    K: np.ndarray, dist: BrownDistortion | None, R: np.ndarray, t: np.ndarray, world_points: np.ndarray
) -> np.ndarray:
    return project_camera_points(K, dist, transform_points(R, t, world_points))


def project_solver_points(K: np.ndarray, dist: BrownDistortion | None, XYZ_solver: np.ndarray) -> np.ndarray:
    """
    Lens model applied to solver-frame points, where visible points have
    negative depth (see `projcalib.core.conventions`).
    """
    XYZ_solver = np.asarray(XYZ_solver, dtype=np.float64).reshape(-1, 3)
    return project_camera_points(K, dist, XYZ_solver * SOLVER_DEPTH_SIGN)


def project_scene_points(
    intrinsics_K: np.ndarray, dist: BrownDistortion | None, R: np.ndarray, t: np.ndarray, world_points: np.ndarray
) -> np.ndarray:
    """
    Pixels of world points seen by a camera with scene pose (R, t), through
    the full lens model. This is the forward model the calibrator fits.
    """
    R_s, t_s = scene_to_solver(R, t)
    return project_solver_points(intrinsics_K, dist, transform_points(R_s, t_s, world_points))


def pixels_to_normalized(K: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """Inverse sensor matrix applied to pixels (no distortion handling)."""
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    K_inv = np.linalg.inv(np.asarray(K, dtype=np.float64).reshape(3, 3))
    h = np.concatenate([uv, np.ones((uv.shape[0], 1))], axis=1)
    xn = (K_inv @ h.T).T
    return xn[:, :2] / xn[:, 2:3]


def normalized_to_pixels(K: np.ndarray, xy: np.ndarray) -> np.ndarray:
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    h = np.concatenate([xy, np.ones((xy.shape[0], 1))], axis=1)
    uv = (K @ h.T).T
    return uv[:, :2] / uv[:, 2:3]


# Linear estimation.


def normalization_transform(points: np.ndarray) -> np.ndarray:
    """
    Similarity T such that T @ [p, 1] has zero mean and mean distance sqrt(d)
    to the origin (Hartley normalisation), for 2D or 3D points.
    """
    points = np.asarray(points, dtype=np.float64)
    d = points.shape[1]
    c = points.mean(axis=0)
    dist = np.linalg.norm(points - c, axis=1).mean()
    s = np.sqrt(d) / dist if dist > 0 else 1.0
    T = np.eye(d + 1, dtype=np.float64)
    T[:d, :d] *= s
    T[:d, d] = -s * c
    return T


def _apply_h(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    h = np.concatenate([points, np.ones((points.shape[0], 1))], axis=1)
    out = (T @ h.T).T
    return out[:, :-1] / out[:, -1:]


def estimate_homography(src_xy: np.ndarray, dst_xy: np.ndarray) -> np.ndarray:
    """Least-squares homography with dst ~ H @ src, scaled so H[2,2] == 1 when possible."""
    import cv2  # type: ignore

    src = np.asarray(src_xy, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst_xy, dtype=np.float64).reshape(-1, 2)
    if src.shape[0] < 4 or src.shape[0] != dst.shape[0]:
        raise ValueError("need >= 4 matching points for a homography")
    H, _mask = cv2.findHomography(src, dst, method=0)
    if H is None:
        raise ValueError("homography estimation failed")
    H = np.asarray(H, dtype=np.float64)
    if abs(H[2, 2]) > 1e-12:
        H = H / H[2, 2]
    return H


def estimate_projection_dlt(world_points: np.ndarray, image_points: np.ndarray) -> np.ndarray:
    """Normalised DLT for a 3x4 projection matrix (non-planar points, N >= 6)."""
    X = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
    x = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
    if X.shape[0] < 6 or X.shape[0] != x.shape[0]:
        raise ValueError("need >= 6 matching points for a DLT projection")
    T_w = normalization_transform(X)
    T_i = normalization_transform(x)
    Xn = _apply_h(T_w, X)
    xn = _apply_h(T_i, x)

    n = X.shape[0]
    Xh = np.concatenate([Xn, np.ones((n, 1))], axis=1)
    A = np.zeros((2 * n, 12), dtype=np.float64)
    A[0::2, 0:4] = Xh
    A[0::2, 8:12] = -xn[:, 0:1] * Xh
    A[1::2, 4:8] = Xh
    A[1::2, 8:12] = -xn[:, 1:2] * Xh
    _u, _s, vt = np.linalg.svd(A)
    Pn = vt[-1].reshape(3, 4)
    return np.linalg.inv(T_i) @ Pn @ T_w


def decompose_projection(P: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split P ~ K [R | t] with an RQ decomposition. K has a positive diagonal
    and K[2,2] == 1; R is a proper rotation.
    """
    from scipy.linalg import rq  # type: ignore

    P = np.asarray(P, dtype=np.float64).reshape(3, 4)
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    K, R = rq(P[:, :3])
    S = np.diag(np.sign(np.diag(K)))
    S[S == 0] = 1.0
    K = K @ S
    R = S @ R
    t = np.linalg.solve(K, P[:, 3])
    K = K / K[2, 2]
    return K, R, t


# Planes.


def fit_plane(points: np.ndarray) -> tuple[np.ndarray, np.ndarray, float]:
    """
    Best-fit plane through 3D points.

    Returns (centroid, basis, flatness) where basis rows are the in-plane axes
    followed by the normal, and flatness is the smallest singular value relative
    to the largest (0 for exactly planar points).
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    c = points.mean(axis=0)
    _u, s, vt = np.linalg.svd(points - c, full_matrices=False)
    basis = vt.copy()
    if np.linalg.det(basis) < 0:
        basis[2] = -basis[2]
    flatness = float(s[-1] / s[0]) if s.size == 3 and s[0] > 0 else 0.0
    return c, basis, flatness


def is_planar(points: np.ndarray, rel_tol: float = 1e-6) -> bool:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if points.shape[0] <= 3:
        return True
    return fit_plane(points)[2] <= rel_tol


def initial_pose(world_points: np.ndarray, normalized_points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Closed-form pose (R, t) with normalized ~ project([R | t] world).

    SQPnP on normalized coordinates (identity camera matrix) finds the global
    minimum for planar and general configurations alike from 4 points up;
    the iterative OpenCV solver is the fallback when it reports no solution.
    """
    import cv2  # type: ignore

    X = np.ascontiguousarray(np.asarray(world_points, dtype=np.float64).reshape(-1, 3))
    xn = np.ascontiguousarray(np.asarray(normalized_points, dtype=np.float64).reshape(-1, 2))
    if X.shape[0] < 4 or X.shape[0] != xn.shape[0]:
        raise ValueError("need >= 4 matching points for a pose")

    K = np.eye(3, dtype=np.float64)
    for name, flag in (("sqpnp", cv2.SOLVEPNP_SQPNP), ("iterative", cv2.SOLVEPNP_ITERATIVE)):
        ok, rvec, tvec = cv2.solvePnP(X, xn, K, None, flags=flag)
        if ok and np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec)):
            R, _jac = cv2.Rodrigues(rvec)
            logger.debug("initial pose from %s (%d points)", name, X.shape[0])
            return np.asarray(R, dtype=np.float64), np.asarray(tvec, dtype=np.float64).reshape(3)
    raise ValueError("closed-form pose estimation failed")


# Intrinsic initialisation.


def _v_ij(H: np.ndarray, i: int, j: int) -> np.ndarray:
    hi = H[:, i]
    hj = H[:, j]
    return np.array(
        [
            hi[0] * hj[0],
            hi[0] * hj[1] + hi[1] * hj[0],
            hi[1] * hj[1],
            hi[2] * hj[0] + hi[0] * hj[2],
            hi[2] * hj[1] + hi[1] * hj[2],
            hi[2] * hj[2],
        ],
        dtype=np.float64,
    )


def zhang_intrinsics(homographies: list[np.ndarray]) -> np.ndarray | None:
    """
    Zhang's closed form from >= 2 plane homographies (pixel <- plane), with a
    zero-skew constraint. Returns K or None when the system is degenerate.
    """
    if len(homographies) < 2:
        return None
    rows = []
    for H in homographies:
        H = np.asarray(H, dtype=np.float64).reshape(3, 3)
        H = H / np.linalg.norm(H)
        rows.append(_v_ij(H, 0, 1))
        rows.append(_v_ij(H, 0, 0) - _v_ij(H, 1, 1))
    V = np.stack(rows, axis=0)
    scale = float(np.linalg.norm(V))
    skew_row = np.array([[0.0, scale, 0.0, 0.0, 0.0, 0.0]])
    V = np.concatenate([V, skew_row], axis=0)
    _u, _s, vt = np.linalg.svd(V)
    b = vt[-1]
    if b[0] < 0:
        b = -b
    B11, B12, B22, B13, B23, B33 = (float(v) for v in b)

    den = B11 * B22 - B12 * B12
    if abs(den) < 1e-300 or B11 <= 0:
        return None
    v0 = (B12 * B13 - B11 * B23) / den
    lam = B33 - (B13 * B13 + v0 * (B12 * B13 - B11 * B23)) / B11
    if lam / B11 <= 0 or lam * B11 / den <= 0:
        return None
    alpha = np.sqrt(lam / B11)
    beta = np.sqrt(lam * B11 / den)
    u0 = -B13 * alpha * alpha / lam
    K = np.array([[alpha, 0.0, u0], [0.0, beta, v0], [0.0, 0.0, 1.0]], dtype=np.float64)
    if not np.all(np.isfinite(K)):
        return None
    return K


def focal_from_homographies(
    homographies: list[np.ndarray], cx: float, cy: float, same_focal: bool = False
) -> tuple[float, float] | None:
    """
    Focal lengths (fx, fy) from plane homographies assuming a known principal
    point: the plane axes are orthogonal and of equal length. One homography
    is enough when `same_focal` is set.
    """
    A_rows: list[list[float]] = []
    b_rows: list[float] = []
    T = np.array([[1.0, 0.0, -cx], [0.0, 1.0, -cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    for H in homographies:
        Hc = T @ np.asarray(H, dtype=np.float64).reshape(3, 3)
        n = np.linalg.norm(Hc)
        if not np.isfinite(n) or n <= 0:
            continue
        Hc = Hc / n
        h1 = Hc[:, 0]
        h2 = Hc[:, 1]
        # Unknowns (1/fx^2, 1/fy^2).
        A_rows.append([h1[0] * h2[0], h1[1] * h2[1]])
        b_rows.append(-h1[2] * h2[2])
        A_rows.append([h1[0] ** 2 - h2[0] ** 2, h1[1] ** 2 - h2[1] ** 2])
        b_rows.append(h2[2] ** 2 - h1[2] ** 2)
    if not A_rows:
        return None
    A = np.asarray(A_rows, dtype=np.float64)
    rhs = np.asarray(b_rows, dtype=np.float64)

    if not same_focal and A.shape[0] >= 4:
        sol, *_ = np.linalg.lstsq(A, rhs, rcond=None)
        if np.all(np.isfinite(sol)) and sol[0] > 0 and sol[1] > 0:
            return float(1.0 / np.sqrt(sol[0])), float(1.0 / np.sqrt(sol[1]))

    a = A.sum(axis=1, keepdims=True)
    sol, *_ = np.linalg.lstsq(a, rhs, rcond=None)
    if not np.isfinite(sol[0]) or sol[0] <= 0:
        return None
    f = float(1.0 / np.sqrt(sol[0]))
    return f, f
