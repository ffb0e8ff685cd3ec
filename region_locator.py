"""
Heuristic search for a square area that could hold a 2-D matrix symbol.

There is no finder-pattern detection here. A square qualifies purely on its
black/white pixel mix, and three tiers of increasing permissiveness are tried
in order until one of them produces a square:

  STRUCTURED  every size from 10 up to min(w, h)/3, whole image, stride 2
  BIASED      right-of-centre / below-centre window, stride 3
  MIXED       whole image, stride 5, weaker black/white predicate

Within a tier the scan order is size ascending, then y, then x; the first
qualifying square is returned. Window sums come from a summed-area table so
each candidate costs O(1) regardless of its size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Sequence

import numpy as np

from pixels import DARK_THRESHOLD, dark_mask, image_size

logger = logging.getLogger(__name__)


class LocatorTier(str, Enum):
    STRUCTURED = "structured"
    BIASED = "biased"
    MIXED = "mixed"


@dataclass(frozen=True, slots=True)
class Region:
    x: int
    y: int
    size: int


@dataclass(frozen=True, slots=True)
class LocatedRegion:
    region: Region
    tier: LocatorTier


@dataclass(frozen=True, slots=True)
class TierSpec:
    """
    Search constants for one tier.

    size_stop is exclusive; None means "derive from the image" as
    ceil(min(w, h) / 3), i.e. sizes strictly below a third of the short side.
    A square qualifies when both its black and white counts exceed min_count.
    When bias is set to (cx_frac, cy_frac, half_extent) the top-left corner is
    restricted to a window around (cx_frac*w, cy_frac*h) and the square must
    fit strictly inside the image.
    """

    tier: LocatorTier
    size_start: int
    size_stop: Optional[int]
    size_step: int
    stride: int
    min_count: int
    bias: Optional[tuple[float, float, int]] = None

    def sizes(self, width: int, height: int) -> range:
        stop = self.size_stop
        if stop is None:
            stop = (min(width, height) - 1) // 3 + 1
        return range(self.size_start, stop, self.size_step)


DEFAULT_TIERS: tuple[TierSpec, ...] = (
    TierSpec(LocatorTier.STRUCTURED, size_start=10, size_stop=None, size_step=2, stride=2, min_count=5),
    TierSpec(
        LocatorTier.BIASED,
        size_start=15,
        size_stop=40,
        size_step=3,
        stride=3,
        min_count=5,
        bias=(0.6, 0.4, 50),
    ),
    TierSpec(LocatorTier.MIXED, size_start=8, size_stop=30, size_step=2, stride=5, min_count=2),
)


def summed_area_table(mask: np.ndarray) -> np.ndarray:
    h, w = mask.shape[:2]
    sat = np.zeros((h + 1, w + 1), dtype=np.int64)
    sat[1:, 1:] = np.cumsum(np.cumsum(mask, axis=0, dtype=np.int64), axis=1)
    return sat


def _window_sums(sat: np.ndarray, ys: np.ndarray, xs: np.ndarray, size: int) -> np.ndarray:
    y0 = ys[:, None]
    x0 = xs[None, :]
    return sat[y0 + size, x0 + size] - sat[y0, x0 + size] - sat[y0 + size, x0] + sat[y0, x0]


def _corner_positions(spec: TierSpec, width: int, height: int, size: int) -> tuple[np.ndarray, np.ndarray]:
    if spec.bias is None:
        ys = np.arange(0, height - size, spec.stride)
        xs = np.arange(0, width - size, spec.stride)
        return ys, xs

    cx_frac, cy_frac, half = spec.bias
    cx = int(width * cx_frac)
    cy = int(height * cy_frac)
    ys = np.arange(cy - half, cy + half, spec.stride)
    xs = np.arange(cx - half, cx + half, spec.stride)
    ys = ys[(ys >= 0) & (ys + size < height)]
    xs = xs[(xs >= 0) & (xs + size < width)]
    return ys, xs


class RegionLocator:
    def __init__(self, tiers: Sequence[TierSpec] = DEFAULT_TIERS, threshold: int = DARK_THRESHOLD):
        self.tiers = tuple(tiers)
        self.threshold = threshold

    def _search(self, sat: np.ndarray, width: int, height: int, spec: TierSpec) -> Optional[Region]:
        for size in spec.sizes(width, height):
            ys, xs = _corner_positions(spec, width, height, size)
            if ys.size == 0 or xs.size == 0:
                continue
            black = _window_sums(sat, ys, xs, size)
            white = size * size - black
            hits = np.argwhere((black > spec.min_count) & (white > spec.min_count))
            if hits.size:
                iy, ix = hits[0]
                return Region(x=int(xs[ix]), y=int(ys[iy]), size=size)
        return None

    def iter_tier_hits(self, image: np.ndarray) -> Iterator[LocatedRegion]:
        """Yield the first qualifying square of each tier, in tier order."""
        width, height = image_size(image)
        sat = summed_area_table(dark_mask(image, self.threshold))
        for spec in self.tiers:
            region = self._search(sat, width, height, spec)
            if region is None:
                logger.debug("Locator tier %s: no candidate", spec.tier.value)
                continue
            logger.debug("Locator tier %s: %s", spec.tier.value, region)
            yield LocatedRegion(region=region, tier=spec.tier)

    def locate_in_tier(self, image: np.ndarray, tier: LocatorTier) -> Optional[LocatedRegion]:
        width, height = image_size(image)
        for spec in self.tiers:
            if spec.tier != tier:
                continue
            sat = summed_area_table(dark_mask(image, self.threshold))
            region = self._search(sat, width, height, spec)
            return LocatedRegion(region=region, tier=tier) if region else None
        raise ValueError(f"Tier not configured on this locator: {tier}")

    def locate(self, image: np.ndarray) -> Optional[LocatedRegion]:
        return next(self.iter_tier_hits(image), None)
