"""
Pixel sampling over an enhanced grayscale image.

Images are 2-D uint8 numpy arrays indexed [y, x]. Bounds are checked
explicitly: numpy would happily wrap a negative index to the far edge.
"""

from __future__ import annotations

import numpy as np

from scan_errors import OutOfBounds

DARK_THRESHOLD = 128


def image_size(image: np.ndarray) -> tuple[int, int]:
    """Return (width, height)."""
    h, w = image.shape[:2]
    return int(w), int(h)


def luminance(image: np.ndarray, x: int, y: int) -> int:
    w, h = image_size(image)
    if x < 0 or y < 0 or x >= w or y >= h:
        raise OutOfBounds(x, y, w, h)
    return int(image[y, x])


def is_dark(image: np.ndarray, x: int, y: int, threshold: int = DARK_THRESHOLD) -> bool:
    return luminance(image, x, y) < threshold


def dark_mask(image: np.ndarray, threshold: int = DARK_THRESHOLD) -> np.ndarray:
    # Vectorised is_dark; must agree with it pixel for pixel.
    return np.asarray(image) < threshold
