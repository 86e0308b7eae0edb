from __future__ import annotations


def test_public_api_exports() -> None:
    import projcalib as pc

    for name in pc.__all__:
        assert hasattr(pc, name), name
    assert hasattr(pc, "calibrate_camera")
    assert hasattr(pc, "solve_pnp")
    assert hasattr(pc, "calibrate_stereo")
    assert hasattr(pc, "LensUndistorter")
