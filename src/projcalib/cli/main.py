from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from projcalib.api.model_io import (
    load_intrinsics,
    load_point_samples,
    save_extrinsics,
    save_intrinsics,
    save_undistortion_map,
)
from projcalib.calib.camera import calibrate_camera
from projcalib.calib.pnp import solve_pnp
from projcalib.calib.stereo import calibrate_stereo
from projcalib.config import (
    CalibrationOptions,
    PnPOptions,
    StereoOptions,
    load_calibration_options,
    load_pnp_options,
    load_stereo_options,
)
from projcalib.core.image_io import load_image, save_image
from projcalib.core.undistortion import LensUndistorter
from projcalib.core.validation import PointSample, StereoPointSample


def _fail(msg: str) -> int:
    print(f"error: {msg}", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="projcalib")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logging.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cal = sub.add_parser("calibrate", help="Estimate intrinsics and per-sample extrinsics from point samples.")
    cal.add_argument("samples", type=Path, help="Point samples JSON (mono).")
    cal.add_argument("--width", type=int, default=None, help="Image width (defaults to the samples file).")
    cal.add_argument("--height", type=int, default=None, help="Image height (defaults to the samples file).")
    cal.add_argument("--options", type=Path, default=None, help="Calibration options JSON.")
    cal.add_argument("--out", type=Path, required=True, help="Output intrinsics JSON.")
    cal.add_argument("--extrinsics-dir", type=Path, default=None, help="Write one extrinsics JSON per sample here.")

    pnp = sub.add_parser("solve-pnp", help="Estimate a camera pose with known intrinsics.")
    pnp.add_argument("samples", type=Path, help="Point samples JSON (mono).")
    pnp.add_argument("--intrinsics", type=Path, required=True)
    pnp.add_argument("--sample-index", type=int, default=0)
    pnp.add_argument("--options", type=Path, default=None, help="PnP options JSON.")
    pnp.add_argument("--out", type=Path, required=True, help="Output extrinsics JSON.")

    st = sub.add_parser("stereo", help="Estimate the transform from camera A to camera B.")
    st.add_argument("samples", type=Path, help="Point samples JSON (stereo).")
    st.add_argument("--intrinsics-a", type=Path, required=True)
    st.add_argument("--intrinsics-b", type=Path, required=True)
    st.add_argument("--options", type=Path, default=None, help="Stereo options JSON.")
    st.add_argument("--out", type=Path, required=True, help="Output extrinsics JSON (A -> B).")

    um = sub.add_parser("undistort-map", help="Write the undistortion remap table of a lens.")
    um.add_argument("--intrinsics", type=Path, required=True)
    um.add_argument("--out", type=Path, required=True, help="Output directory.")

    ui = sub.add_parser("undistort-image", help="Undistort an image with known intrinsics.")
    ui.add_argument("image", type=Path)
    ui.add_argument("--intrinsics", type=Path, required=True)
    ui.add_argument("--out", type=Path, required=True)
    ui.add_argument("--gray", action="store_true", help="Load the image as grayscale.")
    ui.add_argument("--pre-flip-y", action="store_true")
    ui.add_argument("--post-flip-y", action="store_true")
    ui.add_argument("--interpolation", type=str, default="linear", choices=["nearest", "linear", "cubic", "lanczos4"])

    args = parser.parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return _run(args)
    except ValueError as exc:
        # Unreadable input files and invalid lens models.
        return _fail(str(exc))


def _run(args: argparse.Namespace) -> int:
    if args.cmd == "calibrate":
        samples, file_res = load_point_samples(args.samples)
        if any(not isinstance(s, PointSample) for s in samples):
            return _fail("calibrate expects mono point samples")
        if args.width is not None and args.height is not None:
            resolution = (args.width, args.height)
        elif file_res is not None:
            resolution = file_res
        else:
            return _fail("image size unknown: pass --width/--height or store it in the samples file")
        options = load_calibration_options(args.options) if args.options else CalibrationOptions()
        result = calibrate_camera(samples, resolution, options)
        if not result.success:
            return _fail(f"calibration failed ({result.failure.value}): {result.message}")
        save_intrinsics(args.out, result.intrinsics)
        print(f"Wrote {args.out} (rms {result.rms_error:.4f} px)")
        if args.extrinsics_dir is not None:
            for i, ext in enumerate(result.extrinsics):
                save_extrinsics(args.extrinsics_dir / f"extrinsics_{i:03d}.json", ext)
            print(f"Wrote {len(result.extrinsics)} extrinsics to {args.extrinsics_dir}")
        return 0

    if args.cmd == "solve-pnp":
        samples, _res = load_point_samples(args.samples)
        if not 0 <= args.sample_index < len(samples) or not isinstance(samples[args.sample_index], PointSample):
            return _fail(f"no mono sample at index {args.sample_index}")
        sample = samples[args.sample_index]
        options = load_pnp_options(args.options) if args.options else PnPOptions()
        result = solve_pnp(sample.world_points, sample.image_points, load_intrinsics(args.intrinsics), options)
        if not result.success:
            return _fail(f"pose estimation failed ({result.failure.value}): {result.message}")
        save_extrinsics(args.out, result.extrinsics)
        print(f"Wrote {args.out} (rms {result.rms_error:.4f} px)")
        return 0

    if args.cmd == "stereo":
        samples, _res = load_point_samples(args.samples)
        if any(not isinstance(s, StereoPointSample) for s in samples):
            return _fail("stereo expects stereo point samples")
        options = load_stereo_options(args.options) if args.options else StereoOptions()
        result = calibrate_stereo(load_intrinsics(args.intrinsics_a), load_intrinsics(args.intrinsics_b), samples, options)
        if not result.success:
            return _fail(f"stereo calibration failed ({result.failure.value}): {result.message}")
        save_extrinsics(args.out, result.extrinsics)
        print(f"Wrote {args.out} (rms {result.rms_error:.4f} px)")
        return 0

    if args.cmd == "undistort-map":
        path = save_undistortion_map(args.out, load_intrinsics(args.intrinsics))
        print(f"Wrote {path}")
        return 0

    if args.cmd == "undistort-image":
        undistorter = LensUndistorter(load_intrinsics(args.intrinsics))
        image = load_image(args.image, gray=args.gray)
        out = undistorter.undistort(
            image,
            pre_flip_y=args.pre_flip_y,
            post_flip_y=args.post_flip_y,
            interpolation=args.interpolation,
        )
        save_image(args.out, out)
        print(f"Wrote {args.out}")
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")
