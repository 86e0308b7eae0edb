from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image


def load_image(path: str | Path, gray: bool = False) -> np.ndarray:
    """
    Load an image as uint8, (H, W) when `gray` else (H, W, 3) in RGB order.

    OpenCV is tried first; Pillow covers formats the local OpenCV build cannot
    decode.
    """
    import cv2  # type: ignore

    p = Path(path)
    img = cv2.imread(str(p), cv2.IMREAD_GRAYSCALE if gray else cv2.IMREAD_COLOR)
    if img is not None:
        if img.dtype != np.uint8:
            img = np.clip(img, 0, 255).astype(np.uint8)
        return img if gray else cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    with Image.open(p) as im:
        im = im.convert("L" if gray else "RGB")
        arr = np.asarray(im, dtype=np.uint8)
    return arr


def save_image(path: str | Path, image: np.ndarray) -> Path:
    """Write a uint8 (H, W) or (H, W, 3) RGB array; the format follows the suffix."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(np.asarray(image, dtype=np.uint8)).save(p)
    return p
