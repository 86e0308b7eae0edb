from projcalib.api.model_io import (
    load_extrinsics,
    load_intrinsics,
    load_point_samples,
    load_undistortion_map,
    save_extrinsics,
    save_intrinsics,
    save_point_samples,
    save_undistortion_map,
)

__all__ = [
    "load_extrinsics",
    "load_intrinsics",
    "load_point_samples",
    "load_undistortion_map",
    "save_extrinsics",
    "save_intrinsics",
    "save_point_samples",
    "save_undistortion_map",
]
