from __future__ import annotations

import math

import numpy as np
import pytest

from projcalib.core.intrinsics import Intrinsics, PhysicalCamera


def _intr(**kw) -> Intrinsics:
    base = dict(resolution=(1920, 1080), cx=955.3, cy=547.1, fx=1500.25, fy=1498.75, distortion_coeffs=(-0.1, 0.02, 0.0, 0.0, 0.0))
    base.update(kw)
    return Intrinsics.from_raw(**base)


def test_dict_roundtrip_is_exact() -> None:
    a = _intr().with_rms_error(0.123456789)
    b = Intrinsics.from_dict(a.to_dict())
    assert b == a
    assert b.distortion_coeffs == a.distortion_coeffs


def test_from_dict_accepts_engine_record() -> None:
    rec = {
        "_cx": 100.0,
        "_cy": 80.0,
        "_fx": 250.0,
        "_fy": 240.0,
        "_distortionCoeffs": [0.1, 0.0, 0.0, 0.0, 0.0],
        "_referenceResolution": {"x": 200, "y": 160},
        "_rmsError": 0.5,
    }
    i = Intrinsics.from_dict(rec)
    assert (i.cx, i.cy, i.fx, i.fy) == (100.0, 80.0, 250.0, 240.0)
    assert i.resolution == (200, 160)
    assert i.k1 == 0.1
    assert i.rms_error == 0.5
    assert i.is_valid


def test_missing_distortion_is_invalid() -> None:
    i = Intrinsics.from_dict({"cx": 1.0, "cy": 1.0, "fx": 2.0, "fy": 2.0, "resolution": {"x": 4, "y": 4}})
    assert not i.is_valid
    assert str(i) == "Invalid"
    assert i.k1 == 0.0


def test_bad_coefficient_count_raises() -> None:
    with pytest.raises(ValueError):
        _intr(distortion_coeffs=(0.0,) * 6)


def test_default_coefficients_are_zero() -> None:
    i = Intrinsics.from_raw((640, 480), 320.0, 240.0, 500.0, 500.0)
    assert i.distortion_coeffs == (0.0,) * 5
    assert np.allclose(i.camera_matrix(), [[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


def test_named_coefficient_accessors() -> None:
    coeffs = tuple(float(i + 1) / 100.0 for i in range(14))
    i = _intr(distortion_coeffs=coeffs)
    assert (i.k1, i.k2, i.p1, i.p2, i.k3) == coeffs[:5]
    assert (i.k4, i.k5, i.k6) == coeffs[5:8]
    assert (i.s1, i.s2, i.s3, i.s4) == coeffs[8:12]
    assert (i.tau_x, i.tau_y) == coeffs[12:]


def test_fov() -> None:
    i = Intrinsics.from_raw((640, 480), 320.0, 240.0, 320.0, 240.0)
    assert math.isclose(i.vertical_fov_deg, 90.0)
    assert math.isclose(i.horizontal_fov_deg, 90.0)


def test_physical_camera_roundtrip() -> None:
    a = _intr()
    cam = a.to_physical_camera(35.0)
    assert cam.focal_length_mm == 35.0
    b = Intrinsics.from_physical_camera(cam)
    assert math.isclose(b.cx, a.cx)
    assert math.isclose(b.cy, a.cy)
    assert math.isclose(b.fx, a.fx)
    assert math.isclose(b.fy, a.fy)
    assert math.isclose(a.derived_focal_length(cam.sensor_size_mm), 35.0)


def test_from_physical_camera_centred_lens() -> None:
    cam = PhysicalCamera(focal_length_mm=50.0, sensor_size_mm=(36.0, 24.0), lens_shift=(0.0, 0.0), resolution=(3600, 2400))
    i = Intrinsics.from_physical_camera(cam)
    assert (i.cx, i.cy) == (1800.0, 1200.0)
    assert math.isclose(i.fx, 5000.0)
    assert math.isclose(i.fy, 5000.0)
    assert i.lens_shift == (0.0, 0.0)


def test_projection_matrix_closed_form() -> None:
    i = _intr()
    n, f = 0.1, 100.0
    W, H = i.resolution
    m = i.projection_matrix(n, f)
    expected = np.zeros((4, 4))
    expected[0, 0] = 2 * i.fx / W
    expected[0, 2] = 1 - 2 * i.cx / W
    expected[1, 1] = 2 * i.fy / H
    expected[1, 2] = 2 * i.cy / H - 1
    expected[2, 2] = (f + n) / (n - f)
    expected[2, 3] = 2 * f * n / (n - f)
    expected[3, 2] = -1.0
    assert np.allclose(m, expected)


def test_projection_matrix_matches_pixels() -> None:
    # Scene camera: y up, looking along +z. View space looks along -z.
    i = _intr()
    W, H = i.resolution
    rng = np.random.default_rng(1)
    P = np.stack([rng.uniform(-1, 1, 20), rng.uniform(-1, 1, 20), rng.uniform(2, 10, 20)], axis=1)
    view = np.concatenate([P[:, :2], -P[:, 2:3], np.ones((20, 1))], axis=1)
    clip = (i.projection_matrix(0.1, 50.0) @ view.T).T
    ndc = clip[:, :2] / clip[:, 3:4]
    u = (ndc[:, 0] + 1.0) * 0.5 * W
    v = H - (ndc[:, 1] + 1.0) * 0.5 * H

    assert np.allclose(u, i.fx * P[:, 0] / P[:, 2] + i.cx)
    assert np.allclose(v, i.cy - i.fy * P[:, 1] / P[:, 2])


@pytest.mark.parametrize("near,far", [(0.0, 1.0), (1.0, 1.0), (2.0, 1.0)])
def test_projection_matrix_rejects_bad_planes(near: float, far: float) -> None:
    with pytest.raises(ValueError):
        _intr().projection_matrix(near, far)


def test_derived_quantities_need_positive_focal() -> None:
    i = _intr(fx=0.0)
    with pytest.raises(ValueError):
        i.vertical_fov_deg
    with pytest.raises(ValueError):
        i.projection_matrix(0.1, 10.0)


def test_scaled_to() -> None:
    a = _intr()
    b = a.scaled_to((960, 540))
    assert b.resolution == (960, 540)
    assert math.isclose(b.fx, a.fx / 2)
    assert math.isclose(b.cy, a.cy / 2)
    assert b.distortion_coeffs == a.distortion_coeffs
