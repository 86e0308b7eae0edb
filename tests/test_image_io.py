from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from projcalib.core.image_io import load_image, save_image


def test_load_gray_and_rgb_png_and_webp(tmp_path: Path) -> None:
    arr = (np.arange(64, dtype=np.uint8).reshape(8, 8) * 4) % 255
    rgb = np.stack([arr, 255 - arr, np.zeros_like(arr)], axis=2)

    p_png = tmp_path / "a.png"
    p_webp = tmp_path / "a.webp"
    Image.fromarray(rgb).save(p_png)
    Image.fromarray(rgb).save(p_webp, lossless=True)

    for p in (p_png, p_webp):
        g = load_image(p, gray=True)
        c = load_image(p)
        assert g.shape == (8, 8) and g.dtype == np.uint8
        assert c.shape == (8, 8, 3) and c.dtype == np.uint8
    # RGB order, not BGR.
    assert np.array_equal(load_image(p_png), rgb)


def test_save_image_roundtrip(tmp_path: Path) -> None:
    arr = (np.arange(12 * 10, dtype=np.uint32).reshape(12, 10) % 256).astype(np.uint8)
    p = save_image(tmp_path / "sub" / "g.png", arr)
    assert np.array_equal(load_image(p, gray=True), arr)
