"""
Calibration solvers.

- `pnp`: pose of a camera with known intrinsics
- `camera`: intrinsics, distortion and per-sample poses of one camera
- `stereo`: rigid transform between two calibrated cameras
"""
