# image_helper.py
# ----------------------------------------------------------------------
# Image loading / enhancement for the ID scanner.
# - enhance(path)            file -> read-only uint8 luminance array
# - enhance_gray(gray)       same pipeline on an in-memory array
# - encode_png(image)        bytes for the remote decode service
# - generate_candidates(...) progressive variants for library decoders
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
import os
from typing import Iterable, Tuple

import cv2
import numpy as np

from scan_errors import ImageLoadError

logger = logging.getLogger(__name__)

cv2.setUseOptimized(True)

CONTRAST_FACTOR = 3.0     # (1 + 0.5) / (1 - 0.5)
BRIGHTNESS = 0.1          # lift toward white by 10% of the headroom


# ---- Enhancement pipeline ----

def normalize(gray: np.ndarray) -> np.ndarray:
    return cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)


def stretch_contrast(gray: np.ndarray, factor: float = CONTRAST_FACTOR) -> np.ndarray:
    # factor * (v - 127) + 127, clipped; convertScaleAbs would fold negatives
    out = (gray.astype(np.float32) - 127.0) * factor + 127.0
    return np.clip(out, 0, 255).astype(np.uint8)


def brighten(gray: np.ndarray, amount: float = BRIGHTNESS) -> np.ndarray:
    g = gray.astype(np.float32)
    if amount < 0:
        out = g * (1.0 + amount)
    else:
        out = g + (255.0 - g) * amount
    return np.clip(out, 0, 255).astype(np.uint8)


def enhance_gray(gray: np.ndarray) -> np.ndarray:
    if gray.ndim == 3:
        gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)
    out = brighten(stretch_contrast(normalize(gray.astype(np.uint8))))
    out.flags.writeable = False
    return out


def enhance(path: str) -> np.ndarray:
    """Load an image file and return the enhanced, read-only luminance array."""
    if not os.path.isfile(path):
        raise ImageLoadError(f"Image not found: {path}")
    gray = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if gray is None or gray.size == 0:
        raise ImageLoadError(f"Unable to decode image: {path}")
    logger.debug("Loaded %s (%dx%d)", path, gray.shape[1], gray.shape[0])
    return enhance_gray(gray)


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", np.array(image, dtype=np.uint8, copy=True))
    if not ok:
        raise ImageLoadError("PNG encoding failed")
    return buf.tobytes()


# ---- Candidate variants for library decoders (cheap first) ----

def fast_contrast(gray: np.ndarray, alpha: float = 1.6, beta: float = 5.0) -> np.ndarray:
    return cv2.convertScaleAbs(gray, alpha=alpha, beta=beta)


def unsharp_mask(gray: np.ndarray, sigma: float = 1.2, amount: float = 1.0) -> np.ndarray:
    blur = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1 + amount, blur, -amount, 0)


def clahe(gray: np.ndarray, clip: float = 2.0, grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    c = cv2.createCLAHE(clipLimit=clip, tileGridSize=grid)
    return c.apply(gray)


# level 0: gray
# level 1: + fast_contrast
# level 2: + clahe, unsharp
# level 3: + inverted gray
# level 4: + 1.5x upscale

def generate_candidates(gray: np.ndarray, level: int = 4, max_candidates: int = 6) -> Iterable[Tuple[np.ndarray, str]]:
    gray = np.ascontiguousarray(gray)

    def _variants():
        yield gray, "gray"
        if level >= 1:
            yield fast_contrast(gray), "fastc"
        if level >= 2:
            yield clahe(gray), "clahe"
            yield unsharp_mask(gray), "sharp"
        if level >= 3:
            yield 255 - gray, "gray+inv"
        if level >= 4:
            h, w = gray.shape[:2]
            up = cv2.resize(gray, (int(w * 1.5), int(h * 1.5)), interpolation=cv2.INTER_CUBIC)
            yield up, "up1.5"

    for count, (img, tag) in enumerate(_variants()):
        if count >= max_candidates:
            break
        yield img, tag
