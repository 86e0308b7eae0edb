from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Sequence

import numpy as np

# Coefficient layouts accepted by the solver (OpenCV ordering).
VALID_COEFF_COUNTS = (4, 5, 8, 12, 14)

COEFF_NAMES = ("k1", "k2", "p1", "p2", "k3", "k4", "k5", "k6", "s1", "s2", "s3", "s4", "tau_x", "tau_y")


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow OpenCV naming and ordering:
      radial: k1, k2, k3 (numerator), k4, k5, k6 (rational denominator)
      tangential: p1, p2
      thin prism: s1, s2, s3, s4
      sensor tilt: tau_x, tau_y (radians)
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0
    k5: float = 0.0
    k6: float = 0.0
    s1: float = 0.0
    s2: float = 0.0
    s3: float = 0.0
    s4: float = 0.0
    tau_x: float = 0.0
    tau_y: float = 0.0

    @classmethod
    def from_coeffs(cls, coeffs: Sequence[float] | np.ndarray | None) -> "BrownDistortion":
        """Build from an OpenCV-ordered coefficient vector; missing terms are zero."""
        if coeffs is None:
            return cls()
        values = [float(c) for c in np.asarray(coeffs, dtype=np.float64).reshape(-1)]
        if len(values) > len(COEFF_NAMES):
            raise ValueError(f"at most {len(COEFF_NAMES)} distortion coefficients are supported")
        return cls(**dict(zip(COEFF_NAMES, values)))

    def coeffs(self, count: int = 5) -> np.ndarray:
        if count not in VALID_COEFF_COUNTS:
            raise ValueError(f"coefficient count must be one of {VALID_COEFF_COUNTS}")
        return np.array([getattr(self, name) for name in COEFF_NAMES[:count]], dtype=np.float64)

    def is_finite(self) -> bool:
        return all(np.isfinite(getattr(self, f.name)) for f in fields(self))

    @property
    def has_tilt(self) -> bool:
        return self.tau_x != 0.0 or self.tau_y != 0.0

    def tilt_matrix(self) -> np.ndarray:
        """
        Projection matrix of a tilted sensor (Scheimpflug), as in OpenCV's
        computeTiltProjectionMatrix. Identity when tau_x == tau_y == 0.
        """
        c_tx, s_tx = np.cos(self.tau_x), np.sin(self.tau_x)
        c_ty, s_ty = np.cos(self.tau_y), np.sin(self.tau_y)
        rot_x = np.array([[1.0, 0.0, 0.0], [0.0, c_tx, s_tx], [0.0, -s_tx, c_tx]], dtype=np.float64)
        rot_y = np.array([[c_ty, 0.0, -s_ty], [0.0, 1.0, 0.0], [s_ty, 0.0, c_ty]], dtype=np.float64)
        rot_xy = rot_y @ rot_x
        proj_z = np.array(
            [[rot_xy[2, 2], 0.0, -rot_xy[0, 2]], [0.0, rot_xy[2, 2], -rot_xy[1, 2]], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )
        return proj_z @ rot_xy

    def _radial(self, r2: np.ndarray) -> np.ndarray:
        num = 1.0 + ((self.k3 * r2 + self.k2) * r2 + self.k1) * r2
        den = 1.0 + ((self.k6 * r2 + self.k5) * r2 + self.k4) * r2
        return num / den

    def _additive(self, x: np.ndarray, y: np.ndarray, r2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        r4 = r2 * r2
        xy2 = 2.0 * x * y
        dx = self.p1 * xy2 + self.p2 * (r2 + 2.0 * x * x) + self.s1 * r2 + self.s2 * r4
        dy = self.p1 * (r2 + 2.0 * y * y) + self.p2 * xy2 + self.s3 * r2 + self.s4 * r4
        return dx, dy

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        radial = self._radial(r2)
        dx, dy = self._additive(x, y, r2)
        xd = x * radial + dx
        yd = y * radial + dy
        if self.has_tilt:
            m = self.tilt_matrix()
            w = m[2, 0] * xd + m[2, 1] * yd + m[2, 2]
            xt = (m[0, 0] * xd + m[0, 1] * yd + m[0, 2]) / w
            yt = (m[1, 0] * xd + m[1, 1] * yd + m[1, 2]) / w
            xd, yd = xt, yt
        return xd, yd

    def undistort(
        self, xd: np.ndarray, yd: np.ndarray, iterations: int = 20, tol: float = 1e-14
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Iterative inverse of distort(), OpenCV style:
          x <- (xd - dx(x)) / radial(x)
        Converges for the moderate distortion found in real lenses.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        if self.has_tilt:
            m_inv = np.linalg.inv(self.tilt_matrix())
            w = m_inv[2, 0] * xd + m_inv[2, 1] * yd + m_inv[2, 2]
            xu = (m_inv[0, 0] * xd + m_inv[0, 1] * yd + m_inv[0, 2]) / w
            yu = (m_inv[1, 0] * xd + m_inv[1, 1] * yd + m_inv[1, 2]) / w
            xd, yd = xu, yu
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            r2 = x * x + y * y
            radial = self._radial(r2)
            dx, dy = self._additive(x, y, r2)
            x_new = (xd - dx) / radial
            y_new = (yd - dy) / radial
            step = np.max(np.abs(x_new - x), initial=0.0) + np.max(np.abs(y_new - y), initial=0.0)
            x, y = x_new, y_new
            if step < tol:
                break
        return x, y
