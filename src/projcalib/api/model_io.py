from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence, Union

import numpy as np

from projcalib.core.extrinsics import Extrinsics
from projcalib.core.intrinsics import Intrinsics
from projcalib.core.undistortion import build_undistortion_map
from projcalib.core.validation import PointSample, StereoPointSample

INTRINSICS_SCHEMA = "projcalib.intrinsics.v0"
EXTRINSICS_SCHEMA = "projcalib.extrinsics.v0"
POINT_SAMPLES_SCHEMA = "projcalib.point_samples.v0"
UNDISTORTION_MAP_SCHEMA = "projcalib.undistortion_map.v0"

AnySample = Union[PointSample, StereoPointSample]


def _to_float_matrix(x: Any, shape: tuple[int, ...]) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    x = x.reshape(shape)
    if not np.all(np.isfinite(x)):
        raise ValueError("non-finite values")
    return x


def _write_json(path: Path, data: dict[str, Any]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    return path


def _read_json(path: Path) -> dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data


def save_intrinsics(path: Path, intrinsics: Intrinsics) -> Path:
    data = {"schema_version": INTRINSICS_SCHEMA, **intrinsics.to_dict()}
    return _write_json(path, data)


def load_intrinsics(path: Path) -> Intrinsics:
    """
    Load intrinsics written by `save_intrinsics`. Records without a
    schema_version are read as engine records (`_cx`, `_distortionCoeffs`, ...).
    """
    data = _read_json(path)
    schema = data.get("schema_version")
    if schema is not None and str(schema) != INTRINSICS_SCHEMA:
        raise ValueError("unsupported intrinsics schema")
    return Intrinsics.from_dict(data)


def save_extrinsics(path: Path, extrinsics: Extrinsics) -> Path:
    data = {"schema_version": EXTRINSICS_SCHEMA, **extrinsics.to_dict()}
    return _write_json(path, data)


def load_extrinsics(path: Path) -> Extrinsics:
    data = _read_json(path)
    if str(data.get("schema_version")) != EXTRINSICS_SCHEMA:
        raise ValueError("unsupported extrinsics schema")
    return Extrinsics(
        rotation=_to_float_matrix(data["rotation"], (3, 3)),
        translation=_to_float_matrix(data["translation"], (3,)),
    )


def _sample_to_dict(sample: AnySample) -> dict[str, Any]:
    out: dict[str, Any] = {"world_points": np.asarray(sample.world_points, dtype=np.float64).reshape(-1, 3).tolist()}
    if isinstance(sample, StereoPointSample):
        out["image_points_a"] = np.asarray(sample.image_points_a, dtype=np.float64).reshape(-1, 2).tolist()
        out["image_points_b"] = np.asarray(sample.image_points_b, dtype=np.float64).reshape(-1, 2).tolist()
    else:
        out["image_points"] = np.asarray(sample.image_points, dtype=np.float64).reshape(-1, 2).tolist()
    return out


def save_point_samples(path: Path, samples: Sequence[AnySample], resolution: tuple[int, int] | None = None) -> Path:
    """
    Save world/image point samples. Mono and stereo samples may not be mixed.

    The optional resolution records the image size the pixels refer to.
    """
    kinds = {isinstance(s, StereoPointSample) for s in samples}
    if len(kinds) > 1:
        raise ValueError("cannot mix mono and stereo samples in one file")
    data: dict[str, Any] = {
        "schema_version": POINT_SAMPLES_SCHEMA,
        "kind": "stereo" if kinds == {True} else "mono",
        "samples": [_sample_to_dict(s) for s in samples],
    }
    if resolution is not None:
        data["resolution"] = {"x": int(resolution[0]), "y": int(resolution[1])}
    return _write_json(path, data)


def load_point_samples(path: Path) -> tuple[list[AnySample], tuple[int, int] | None]:
    """Returns (samples, resolution or None)."""
    data = _read_json(path)
    if str(data.get("schema_version")) != POINT_SAMPLES_SCHEMA:
        raise ValueError("unsupported point samples schema")
    kind = str(data.get("kind", "mono"))
    if kind not in ("mono", "stereo"):
        raise ValueError("kind must be mono or stereo")

    samples: list[AnySample] = []
    for i, rec in enumerate(data.get("samples", [])):
        world = np.asarray(rec["world_points"], dtype=np.float64).reshape(-1, 3)
        if kind == "stereo":
            samples.append(
                StereoPointSample(
                    world_points=world,
                    image_points_a=np.asarray(rec["image_points_a"], dtype=np.float64).reshape(-1, 2),
                    image_points_b=np.asarray(rec["image_points_b"], dtype=np.float64).reshape(-1, 2),
                )
            )
        else:
            samples.append(PointSample(world_points=world, image_points=np.asarray(rec["image_points"], dtype=np.float64).reshape(-1, 2)))

    res = data.get("resolution")
    resolution = None if res is None else (int(res["x"]), int(res["y"]))
    return samples, resolution


def save_undistortion_map(model_dir: Path, intrinsics: Intrinsics) -> Path:
    """
    Save the undistortion table of `intrinsics` into a directory:

      undistortion_map.json + undistortion_map.npz

    The NPZ holds float32 `map_x`, `map_y` (H, W), directly usable by cv2.remap.
    """
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    map_x, map_y = build_undistortion_map(intrinsics)

    weights_path = model_dir / "undistortion_map.npz"
    np.savez_compressed(weights_path, map_x=map_x, map_y=map_y)

    meta: dict[str, Any] = {
        "schema_version": UNDISTORTION_MAP_SCHEMA,
        "intrinsics": intrinsics.to_dict(),
        "maps": {"format": "npz", "path": weights_path.name, "keys": {"map_x": "map_x", "map_y": "map_y"}},
    }
    return _write_json(model_dir / "undistortion_map.json", meta)


def load_undistortion_map(model_dir: Path) -> tuple[np.ndarray, np.ndarray]:
    model_dir = Path(model_dir)
    meta = _read_json(model_dir / "undistortion_map.json")
    if str(meta.get("schema_version")) != UNDISTORTION_MAP_SCHEMA:
        raise ValueError("unsupported undistortion map schema")
    maps = meta["maps"]
    k = maps["keys"]
    with np.load(str(model_dir / str(maps["path"]))) as w:
        map_x = np.asarray(w[str(k["map_x"])], dtype=np.float32)
        map_y = np.asarray(w[str(k["map_y"])], dtype=np.float32)
    return map_x, map_y
