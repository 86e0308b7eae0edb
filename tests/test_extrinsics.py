from __future__ import annotations

import numpy as np
import pytest

from projcalib.core.extrinsics import Extrinsics

from _synth import scene_pose


def _ext() -> Extrinsics:
    R, t = scene_pose((12.0, -34.0, 56.0), (0.1, -0.2, 3.0))
    return Extrinsics(rotation=R, translation=t)


def test_dict_roundtrip_is_exact() -> None:
    a = _ext()
    b = Extrinsics.from_dict(a.to_dict())
    assert b == a


def test_arrays_are_read_only_copies() -> None:
    R = np.eye(3)
    e = Extrinsics(rotation=R, translation=np.zeros(3))
    R[0, 0] = 5.0
    assert e.rotation[0, 0] == 1.0
    with pytest.raises(ValueError):
        e.rotation[0, 0] = 2.0


def test_inverse_and_compose() -> None:
    a = _ext()
    ident = a.compose(a.inverse())
    assert np.allclose(ident.rotation, np.eye(3))
    assert np.allclose(ident.translation, 0.0, atol=1e-12)

    b = Extrinsics.from_rvec_tvec([0.1, 0.2, -0.3], [1.0, 2.0, 3.0])
    pts = np.random.default_rng(0).normal(size=(10, 3))
    assert np.allclose(a.compose(b).apply(pts), a.apply(b.apply(pts)))


def test_rvec_quaternion_matrix_roundtrips() -> None:
    a = _ext()
    assert np.allclose(Extrinsics.from_rvec_tvec(a.rvec, a.translation).rotation, a.rotation)
    assert np.allclose(Extrinsics.from_quaternion(a.quaternion, a.translation).rotation, a.rotation)
    assert Extrinsics.from_matrix(a.to_matrix()) == a


def test_camera_pose_roundtrip() -> None:
    a = _ext()
    position, quat = a.camera_pose()
    b = Extrinsics.from_camera_pose(position, quat)
    assert np.allclose(b.rotation, a.rotation)
    assert np.allclose(b.translation, a.translation)
    # The camera centre maps to the origin of the camera frame.
    assert np.allclose(a.apply(position), 0.0, atol=1e-12)


@pytest.mark.parametrize(
    "rotation",
    [
        np.diag([1.0, 1.0, 2.0]),
        np.diag([1.0, 1.0, -1.0]),
        np.full((3, 3), np.nan),
    ],
)
def test_rejects_non_rotations(rotation) -> None:
    with pytest.raises(ValueError):
        Extrinsics(rotation=rotation, translation=np.zeros(3))


def test_rejects_bad_inputs() -> None:
    with pytest.raises(ValueError):
        Extrinsics(rotation=np.eye(3), translation=[0.0, np.inf, 0.0])
    with pytest.raises(ValueError):
        Extrinsics.from_quaternion([0.0, 0.0, 0.0, 0.0], np.zeros(3))
    T = np.eye(4)
    T[3, 0] = 1.0
    with pytest.raises(ValueError):
        Extrinsics.from_matrix(T)
    with pytest.raises(ValueError):
        Extrinsics.from_dict({"rotation": np.eye(3).tolist()})
