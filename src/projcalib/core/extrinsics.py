from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np

_ORTHO_TOL = 1e-6


def _check_rotation(R: np.ndarray) -> None:
    if not np.all(np.isfinite(R)):
        raise ValueError("rotation contains non-finite values")
    if not np.allclose(R.T @ R, np.eye(3), atol=_ORTHO_TOL):
        raise ValueError("rotation must be orthonormal")
    if abs(float(np.linalg.det(R)) - 1.0) > _ORTHO_TOL:
        raise ValueError("rotation must have determinant +1")


@dataclass(frozen=True)
class Extrinsics:
    """
    Rigid transform from a source frame to a target frame:

      X_target = rotation @ X_source + translation

    For a calibrated camera the source frame is the world and the target frame
    is the camera. For a stereo rig the source is camera A and the target is
    camera B.
    """

    rotation: np.ndarray  # (3,3)
    translation: np.ndarray  # (3,)

    def __post_init__(self) -> None:
        R = np.array(self.rotation, dtype=np.float64).reshape(3, 3)
        t = np.array(self.translation, dtype=np.float64).reshape(3)
        _check_rotation(R)
        if not np.all(np.isfinite(t)):
            raise ValueError("translation contains non-finite values")
        R.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "translation", t)

    @classmethod
    def identity(cls) -> "Extrinsics":
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Extrinsics":
        from scipy.spatial.transform import Rotation as R  # type: ignore

        rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
        return cls(rotation=R.from_rotvec(rvec).as_matrix(), translation=np.asarray(tvec, dtype=np.float64).reshape(3))

    @classmethod
    def from_quaternion(cls, quaternion: np.ndarray, translation: np.ndarray) -> "Extrinsics":
        """`quaternion` is (x, y, z, w); it is normalized before use."""
        from scipy.spatial.transform import Rotation as R  # type: ignore

        q = np.asarray(quaternion, dtype=np.float64).reshape(4)
        if not np.all(np.isfinite(q)) or float(np.linalg.norm(q)) < 1e-12:
            raise ValueError("quaternion must be finite and non-zero")
        return cls(rotation=R.from_quat(q).as_matrix(), translation=np.asarray(translation, dtype=np.float64).reshape(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "Extrinsics":
        T = np.asarray(T, dtype=np.float64).reshape(4, 4)
        if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0]):
            raise ValueError("last row of a rigid transform must be [0, 0, 0, 1]")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_camera_pose(cls, position: np.ndarray, quaternion: np.ndarray) -> "Extrinsics":
        """
        Extrinsics of a manually posed camera node, given its world position and
        orientation (x, y, z, w). Inverse of `camera_pose`.
        """
        node_to_world = cls.from_quaternion(quaternion, position)
        return node_to_world.inverse()

    @property
    def rvec(self) -> np.ndarray:
        from scipy.spatial.transform import Rotation as R  # type: ignore

        return R.from_matrix(self.rotation).as_rotvec()

    @property
    def quaternion(self) -> np.ndarray:
        """Rotation as (x, y, z, w)."""
        from scipy.spatial.transform import Rotation as R  # type: ignore

        return R.from_matrix(self.rotation).as_quat()

    def to_matrix(self) -> np.ndarray:
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> "Extrinsics":
        Rt = self.rotation.T
        return Extrinsics(rotation=Rt, translation=-(Rt @ self.translation))

    def compose(self, other: "Extrinsics") -> "Extrinsics":
        """Apply `other` first, then `self`."""
        return Extrinsics(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def apply(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (self.rotation @ pts.T).T + self.translation.reshape(1, 3)

    def camera_pose(self) -> tuple[np.ndarray, np.ndarray]:
        """(position, quaternion xyzw) of the target frame (the camera) expressed in the source frame."""
        inv = self.inverse()
        return inv.translation.copy(), inv.quaternion

    def to_dict(self) -> dict[str, Any]:
        return {
            "rotation": self.rotation.tolist(),
            "translation": self.translation.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Extrinsics":
        if "rotation" not in data or "translation" not in data:
            raise ValueError("extrinsics record needs rotation and translation")
        return cls(rotation=np.asarray(data["rotation"], dtype=np.float64), translation=np.asarray(data["translation"], dtype=np.float64))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Extrinsics):
            return NotImplemented
        return bool(np.array_equal(self.rotation, other.rotation) and np.array_equal(self.translation, other.translation))

    def __hash__(self) -> int:
        return hash((self.rotation.tobytes(), self.translation.tobytes()))
