from __future__ import annotations

import numpy as np

from pixels import DARK_THRESHOLD, dark_mask, image_size
from region_locator import Region
from scan_errors import OutOfBounds


def extract_bits(image: np.ndarray, region: Region, threshold: int = DARK_THRESHOLD) -> str:
    """
    Rasterize a square region into a '0'/'1' string, row-major, dark == '1'.

    A region running past the right or bottom edge is cut at the edge (no
    wraparound, no padding), so the result may be shorter than size**2.
    """
    width, height = image_size(image)
    if region.x < 0 or region.y < 0 or region.x >= width or region.y >= height:
        raise OutOfBounds(region.x, region.y, width, height)
    if region.size <= 0:
        return ""

    # Slicing stops at the array edge on its own.
    window = dark_mask(image[region.y : region.y + region.size, region.x : region.x + region.size], threshold)
    return "".join("1" if dark else "0" for dark in window.ravel())
