# linear_barcode.py
# ----------------------------------------------------------------------
# Last-resort 1-D heuristic: find the scanline with the most dark bars and
# turn its bar widths into a wide/narrow bit pattern ('1' = wider than the
# mean). This is not a symbology decoder; the pattern is handed to the
# decode ensemble like any other bitstream.
# ----------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from pixels import DARK_THRESHOLD, dark_mask

MIN_BARS = 10


@dataclass(frozen=True)
class BarRow:
    y: int
    widths: List[int]

    @property
    def pattern(self) -> str:
        if not self.widths:
            return ""
        mean = sum(self.widths) / len(self.widths)
        return "".join("1" if w > mean else "0" for w in self.widths)


def row_bar_widths(row: np.ndarray) -> List[int]:
    """Widths of the dark runs in one boolean row. A run still open at the right edge is not a bar."""
    m = row.astype(np.int8)
    edges = np.diff(np.concatenate(([0], m)))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)
    return (ends - starts[: ends.size]).tolist()


def find_bar_rows(image: np.ndarray, threshold: int = DARK_THRESHOLD, min_bars: int = MIN_BARS) -> List[BarRow]:
    mask = dark_mask(image, threshold)
    rows: List[BarRow] = []
    for y in range(mask.shape[0]):
        widths = row_bar_widths(mask[y])
        if len(widths) > min_bars:
            rows.append(BarRow(y, widths))
    return rows


def best_bar_row(image: np.ndarray, threshold: int = DARK_THRESHOLD, min_bars: int = MIN_BARS) -> Optional[BarRow]:
    best: Optional[BarRow] = None
    for row in find_bar_rows(image, threshold, min_bars):
        if best is None or len(row.widths) > len(best.widths):
            best = row
    return best


def bar_pattern(image: np.ndarray, threshold: int = DARK_THRESHOLD) -> str:
    """Wide/narrow pattern of the busiest scanline, or '' when no row has enough bars."""
    row = best_bar_row(image, threshold)
    return row.pattern if row else ""
