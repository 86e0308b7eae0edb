from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from projcalib.api import load_extrinsics, load_intrinsics, load_undistortion_map, save_intrinsics, save_point_samples
from projcalib.cli.main import main
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.validation import PointSample, StereoPointSample

from _synth import FX, RESOLUTION, board_points, board_scene_poses, render, true_intrinsics


def _write_mono(path: Path, with_resolution: bool = True) -> Path:
    intr = true_intrinsics()
    world = board_points()
    samples = [PointSample(world_points=world, image_points=render(intr, R, t, world)) for R, t in board_scene_poses()]
    return save_point_samples(path, samples, resolution=RESOLUTION if with_resolution else None)


@pytest.mark.integration
def test_calibrate_and_solve_pnp(tmp_path: Path, capsys) -> None:
    samples = _write_mono(tmp_path / "samples.json")
    out = tmp_path / "intr.json"
    assert main(["calibrate", str(samples), "--out", str(out), "--extrinsics-dir", str(tmp_path / "ext")]) == 0
    assert "rms" in capsys.readouterr().out
    intr = load_intrinsics(out)
    assert abs(intr.fx - FX) < 0.05
    assert len(list((tmp_path / "ext").glob("extrinsics_*.json"))) == 5

    opts = tmp_path / "pnp.json"
    opts.write_text(json.dumps({"points_are_undistorted": False}), encoding="utf-8")
    pose = tmp_path / "pose.json"
    assert main(["solve-pnp", str(samples), "--intrinsics", str(out), "--sample-index", "2", "--options", str(opts), "--out", str(pose)]) == 0
    R, t = board_scene_poses()[2]
    assert np.allclose(load_extrinsics(pose).translation, t, atol=1e-2)


@pytest.mark.integration
def test_calibrate_needs_resolution(tmp_path: Path, capsys) -> None:
    samples = _write_mono(tmp_path / "samples.json", with_resolution=False)
    assert main(["calibrate", str(samples), "--out", str(tmp_path / "intr.json")]) == 1
    assert "image size unknown" in capsys.readouterr().err
    w, h = RESOLUTION
    assert main(["calibrate", str(samples), "--width", str(w), "--height", str(h), "--out", str(tmp_path / "intr.json")]) == 0


@pytest.mark.integration
def test_stereo(tmp_path: Path) -> None:
    intr = true_intrinsics(distorted=False)
    world = board_points()
    baseline = np.array([-100.0, 0.0, 0.0])
    samples = [
        StereoPointSample(world_points=world, image_points_a=render(intr, R, t, world), image_points_b=render(intr, R, t + baseline, world))
        for R, t in board_scene_poses()[:4]
    ]
    path = save_point_samples(tmp_path / "stereo.json", samples)
    intr_path = save_intrinsics(tmp_path / "intr.json", intr)
    out = tmp_path / "rig.json"
    assert main(["stereo", str(path), "--intrinsics-a", str(intr_path), "--intrinsics-b", str(intr_path), "--out", str(out)]) == 0
    rig = load_extrinsics(out)
    assert np.allclose(rig.rotation, np.eye(3), atol=1e-8)
    assert np.allclose(rig.translation, baseline, atol=1e-5)

    mono = _write_mono(tmp_path / "mono.json")
    assert main(["stereo", str(mono), "--intrinsics-a", str(intr_path), "--intrinsics-b", str(intr_path), "--out", str(out)]) == 1


@pytest.mark.integration
def test_undistort_map_and_image(tmp_path: Path) -> None:
    pytest.importorskip("cv2")
    intr = true_intrinsics().scaled_to((160, 120))
    intr_path = save_intrinsics(tmp_path / "intr.json", intr)

    assert main(["undistort-map", "--intrinsics", str(intr_path), "--out", str(tmp_path / "map")]) == 0
    map_x, _map_y = load_undistortion_map(tmp_path / "map")
    assert map_x.shape == (120, 160)

    src = tmp_path / "in.png"
    vv, uu = np.mgrid[0:120, 0:160]
    Image.fromarray(np.clip(uu + vv, 0, 255).astype(np.uint8)).save(src)
    dst = tmp_path / "out.png"
    assert main(["undistort-image", str(src), "--intrinsics", str(intr_path), "--out", str(dst), "--gray", "--post-flip-y"]) == 0
    with Image.open(dst) as im:
        assert im.size == (160, 120)


@pytest.mark.integration
def test_bad_inputs_are_reported_not_raised(tmp_path: Path, capsys) -> None:
    bad_samples = tmp_path / "samples.json"
    bad_samples.write_text(json.dumps({"schema_version": "0"}), encoding="utf-8")
    assert main(["calibrate", str(bad_samples), "--width", "640", "--height", "480", "--out", str(tmp_path / "intr.json")]) == 1
    assert "unsupported point samples schema" in capsys.readouterr().err

    no_lens = Intrinsics(cx=80.0, cy=60.0, fx=100.0, fy=100.0, distortion_coeffs=None, resolution=(160, 120))
    intr_path = save_intrinsics(tmp_path / "no_lens.json", no_lens)
    assert main(["undistort-map", "--intrinsics", str(intr_path), "--out", str(tmp_path / "map")]) == 1
    assert "no distortion coefficients" in capsys.readouterr().err
