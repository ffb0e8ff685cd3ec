#!/usr/bin/env python3
"""
Overview
Format dispatch for a photographed ID barcode. Given an enhanced luminance
image, the dispatcher walks a fixed ladder of decoders and stops at the
first one that produces acceptable text:

  QR          library decode (zxing-cpp, pyzbar, cv2.QRCodeDetector)
  PDF417      library decode, then the remote decode service
  DataMatrix  library decode, then the heuristic chain
              RegionLocator -> extract_bits -> DecodeStrategyEnsemble,
              one locator tier at a time
  Linear      library 1-D decode, then the bar-width heuristic

Each rung is attempted once. The outcome carries the payload (or the
NO_BARCODE_FOUND reason) plus a trace of TierEvents; the same events go to
the optional on_event hook and to the module logger.

Notes
- Library backends are optional. Whatever imports cleanly is used; a
  missing backend just removes that attempt from the ladder.
- The heuristic tiers are a best-effort fallback. Real symbology decoding
  comes from the library and remote rungs.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from bitstream import extract_bits
from dl_decoder import DecodeCandidate, DecodeStrategyEnsemble, load_heuristics
from image_helper import encode_png, generate_candidates
from linear_barcode import bar_pattern
from pixels import DARK_THRESHOLD
from region_locator import RegionLocator
from remote_decode import RemoteDecodeClient
from scan_config import ScanConfig
from scan_errors import RemoteServiceUnavailable

logger = logging.getLogger(__name__)

# ------------------------------ Decoder Backends ------------------------------
ZXING: Optional[Any] = None
DMTX_DECODE = None
ZBAR_DECODE = None
ZBAR_SYMBOL: Optional[Any] = None

try:
    import zxingcpp as _zxingcpp  # type: ignore

    ZXING = _zxingcpp
except Exception:  # pragma: no cover
    ZXING = None

try:
    from pylibdmtx.pylibdmtx import decode as _dmtx_decode  # type: ignore

    DMTX_DECODE = _dmtx_decode
except Exception:  # pragma: no cover
    DMTX_DECODE = None

try:
    from pyzbar.pyzbar import ZBarSymbol as _ZBarSymbol  # type: ignore
    from pyzbar.pyzbar import decode as _zbar_decode  # type: ignore

    ZBAR_DECODE = _zbar_decode
    ZBAR_SYMBOL = _ZBarSymbol
except Exception:  # pragma: no cover
    ZBAR_DECODE = None


def available_backends() -> List[str]:
    out = []
    if ZXING is not None:
        out.append("zxingcpp")
    if DMTX_DECODE is not None:
        out.append("pylibdmtx")
    if ZBAR_DECODE is not None:
        out.append("pyzbar")
    out.append("opencv")
    return out


# ------------------------------ Types ------------------------------
class BarcodeFormat(str, Enum):
    QR = "QR"
    PDF417 = "PDF417"
    DATAMATRIX = "DataMatrix"
    LINEAR = "Linear"


class DispatchState(str, Enum):
    START = "start"
    TRIED_QR = "tried_qr"
    TRIED_PDF417 = "tried_pdf417"
    TRIED_DATAMATRIX = "tried_datamatrix"
    TRIED_LINEAR = "tried_linear"
    DONE = "done"


class DispatchReason(str, Enum):
    DECODED = "decoded"
    NO_BARCODE_FOUND = "no_barcode_found"


@dataclass(frozen=True)
class DecodedPayload:
    text: str
    format: BarcodeFormat
    source: str = ""
    score: int = 0


@dataclass(frozen=True)
class TierEvent:
    state: DispatchState
    outcome: str  # hit | miss | error | skipped | cancelled
    source: str = ""
    score: int = 0
    detail: str = ""


@dataclass
class DispatchOutcome:
    payload: Optional[DecodedPayload]
    reason: DispatchReason
    trace: List[TierEvent] = field(default_factory=list)
    detail: str = ""
    # last rung that ran to completion; START when cancelled before the first
    last_tier: DispatchState = DispatchState.START

    @property
    def found(self) -> bool:
        return self.payload is not None


LibraryDecoder = Callable[[np.ndarray], Optional[str]]
NamedDecoder = Tuple[str, LibraryDecoder]
RemoteDecoder = Callable[[bytes, Optional[threading.Event]], Optional[str]]


# ------------------------------ Library wrappers ------------------------------

def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("latin-1", errors="replace")
    return str(raw)


def _zxing_formats(names: Sequence[str]):
    if ZXING is None:
        return None
    fmt = None
    for name in names:
        f = getattr(ZXING.BarcodeFormat, name, None)
        if f is None:
            continue
        fmt = f if fmt is None else fmt | f
    return fmt


def _zxing_read(gray: np.ndarray, names: Sequence[str]) -> Optional[str]:
    if ZXING is None:
        return None
    formats = _zxing_formats(names)
    if formats is None:
        return None
    for r in ZXING.read_barcodes(gray, formats=formats):
        text = _as_text(getattr(r, "text", None))
        if text:
            return text
    return None


def _zbar_read(gray: np.ndarray, symbols: Optional[Sequence[Any]] = None) -> Optional[str]:
    if ZBAR_DECODE is None:
        return None
    res = ZBAR_DECODE(gray, symbols=list(symbols)) if symbols else ZBAR_DECODE(gray)
    for r in res:
        text = _as_text(getattr(r, "data", None))
        if text:
            return text
    return None


def _over_candidates(image: np.ndarray, read: LibraryDecoder, level: int = 4) -> Optional[str]:
    # Library bindings want a writable, contiguous buffer; the enhanced image is read-only.
    gray = np.array(image, dtype=np.uint8, copy=True)
    for img, tag in generate_candidates(gray, level=level):
        text = read(img)
        if text:
            logger.debug("Library hit on variant %s", tag)
            return text
    return None


def _opencv_qr(gray: np.ndarray) -> Optional[str]:
    # QRCodeDetector is not thread-safe; dispatches may run concurrently
    detector = cv2.QRCodeDetector()
    data, _points, _ = detector.detectAndDecode(gray)
    return data or None


def decode_qr(image: np.ndarray) -> Optional[str]:
    """Fast path: QR via zxing-cpp, then pyzbar, then OpenCV's own detector."""
    readers: List[LibraryDecoder] = []
    if ZXING is not None:
        readers.append(lambda g: _zxing_read(g, ("QRCode",)))
    if ZBAR_DECODE is not None and ZBAR_SYMBOL is not None:
        readers.append(lambda g: _zbar_read(g, (ZBAR_SYMBOL.QRCODE,)))
    readers.append(_opencv_qr)

    def _read(g: np.ndarray) -> Optional[str]:
        for reader in readers:
            text = reader(g)
            if text:
                return text
        return None

    return _over_candidates(image, _read)


def zxing_pdf417(image: np.ndarray) -> Optional[str]:
    return _over_candidates(image, lambda g: _zxing_read(g, ("PDF417",)), level=2)


def zxing_datamatrix(image: np.ndarray) -> Optional[str]:
    return _over_candidates(image, lambda g: _zxing_read(g, ("DataMatrix",)), level=2)


def pylibdmtx_datamatrix(image: np.ndarray) -> Optional[str]:
    if DMTX_DECODE is None:
        return None
    gray = np.array(image, dtype=np.uint8, copy=True)
    for shrink in (1, 2):
        for threshold in (None, 60):
            kw: Dict[str, Any] = {"max_count": 1, "shrink": shrink}
            if threshold is not None:
                kw["threshold"] = threshold
            for r in DMTX_DECODE(gray, **kw):
                text = _as_text(getattr(r, "data", None))
                if text:
                    return text
    return None


LINEAR_FORMAT_NAMES = ("Code128", "Code39", "Code93", "Codabar", "EAN13", "EAN8", "UPCA", "UPCE", "ITF")
LINEAR_ZBAR_SYMBOLS = ("CODE128", "CODE39", "CODE93", "CODABAR", "EAN13", "EAN8", "UPCA", "UPCE", "I25")


def zxing_linear(image: np.ndarray) -> Optional[str]:
    return _over_candidates(image, lambda g: _zxing_read(g, LINEAR_FORMAT_NAMES), level=1)


def pyzbar_linear(image: np.ndarray) -> Optional[str]:
    if ZBAR_SYMBOL is None:
        return None
    symbols = [getattr(ZBAR_SYMBOL, s) for s in LINEAR_ZBAR_SYMBOLS if hasattr(ZBAR_SYMBOL, s)]
    return _over_candidates(image, lambda g: _zbar_read(g, symbols), level=1)


def default_pdf417_decoders() -> List[NamedDecoder]:
    return [("zxingcpp", zxing_pdf417)] if ZXING is not None else []


def default_datamatrix_decoders() -> List[NamedDecoder]:
    out: List[NamedDecoder] = []
    if DMTX_DECODE is not None:
        out.append(("pylibdmtx", pylibdmtx_datamatrix))
    if ZXING is not None:
        out.append(("zxingcpp", zxing_datamatrix))
    return out


def default_linear_decoders() -> List[NamedDecoder]:
    out: List[NamedDecoder] = []
    if ZXING is not None:
        out.append(("zxingcpp", zxing_linear))
    if ZBAR_DECODE is not None and ZBAR_SYMBOL is not None:
        out.append(("pyzbar", pyzbar_linear))
    return out


# ------------------------------ Dispatcher ------------------------------

class _Cancelled(Exception):
    pass


class FormatDispatcher:
    def __init__(
        self,
        qr_decoder: Optional[LibraryDecoder] = decode_qr,
        pdf417_decoders: Optional[Sequence[NamedDecoder]] = None,
        datamatrix_decoders: Optional[Sequence[NamedDecoder]] = None,
        linear_decoders: Optional[Sequence[NamedDecoder]] = None,
        remote_decoder: Optional[RemoteDecoder] = None,
        ensemble: Optional[DecodeStrategyEnsemble] = None,
        locator: Optional[RegionLocator] = None,
        threshold: int = DARK_THRESHOLD,
        min_accept_score: int = 1,
        on_event: Optional[Callable[[TierEvent], None]] = None,
    ):
        self.qr_decoder = qr_decoder
        self.pdf417_decoders = list(default_pdf417_decoders() if pdf417_decoders is None else pdf417_decoders)
        self.datamatrix_decoders = list(
            default_datamatrix_decoders() if datamatrix_decoders is None else datamatrix_decoders
        )
        self.linear_decoders = list(default_linear_decoders() if linear_decoders is None else linear_decoders)
        self.remote_decoder = remote_decoder
        self.ensemble = ensemble or DecodeStrategyEnsemble()
        self.locator = locator or RegionLocator(threshold=threshold)
        self.threshold = threshold
        self.min_accept_score = min_accept_score
        self.on_event = on_event

    # ---- events ----

    def _emit(self, trace: List[TierEvent], event: TierEvent) -> None:
        trace.append(event)
        level = logging.INFO if event.outcome in ("hit", "cancelled") else logging.DEBUG
        if event.outcome == "error":
            level = logging.WARNING
        logger.log(
            level,
            "%s: %s source=%s score=%d %s",
            event.state.value,
            event.outcome,
            event.source or "-",
            event.score,
            event.detail,
        )
        if self.on_event is not None:
            self.on_event(event)

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _Cancelled()

    # ---- rungs ----

    def _run_library(
        self,
        state: DispatchState,
        fmt: BarcodeFormat,
        decoders: Sequence[NamedDecoder],
        image: np.ndarray,
        trace: List[TierEvent],
        cancel_event: Optional[threading.Event],
    ) -> Optional[DecodedPayload]:
        for name, decoder in decoders:
            self._check_cancel(cancel_event)
            try:
                text = decoder(image)
            except Exception as e:
                # A broken backend only costs its own attempt.
                self._emit(trace, TierEvent(state, "error", name, detail=repr(e)))
                continue
            if text:
                self._emit(trace, TierEvent(state, "hit", name, detail=f"{len(text)} chars"))
                return DecodedPayload(text, fmt, source=name)
            self._emit(trace, TierEvent(state, "miss", name))
        return None

    def _accept(self, cand: DecodeCandidate) -> bool:
        return bool(cand.text) and cand.score >= self.min_accept_score

    def _try_qr(self, image, trace, cancel_event) -> Optional[DecodedPayload]:
        if self.qr_decoder is None:
            self._emit(trace, TierEvent(DispatchState.TRIED_QR, "skipped", detail="no QR decoder"))
            return None
        return self._run_library(
            DispatchState.TRIED_QR, BarcodeFormat.QR, [("qr", self.qr_decoder)], image, trace, cancel_event
        )

    def _try_pdf417(self, image, trace, cancel_event) -> Optional[DecodedPayload]:
        state = DispatchState.TRIED_PDF417
        hit = self._run_library(state, BarcodeFormat.PDF417, self.pdf417_decoders, image, trace, cancel_event)
        if hit or self.remote_decoder is None:
            return hit

        self._check_cancel(cancel_event)
        try:
            text = self.remote_decoder(encode_png(image), cancel_event)
        except RemoteServiceUnavailable as e:
            self._emit(trace, TierEvent(state, "error", "remote", detail=str(e)))
            return None
        self._check_cancel(cancel_event)
        if text:
            self._emit(trace, TierEvent(state, "hit", "remote", detail=f"{len(text)} chars"))
            return DecodedPayload(text, BarcodeFormat.PDF417, source="remote")
        self._emit(trace, TierEvent(state, "miss", "remote"))
        return None

    def _try_datamatrix(self, image, trace, cancel_event) -> Optional[DecodedPayload]:
        state = DispatchState.TRIED_DATAMATRIX
        hit = self._run_library(state, BarcodeFormat.DATAMATRIX, self.datamatrix_decoders, image, trace, cancel_event)
        if hit:
            return hit

        for located in self.locator.iter_tier_hits(image):
            self._check_cancel(cancel_event)
            bits = extract_bits(image, located.region, self.threshold)
            cand = self.ensemble.decode(bits)
            tier = located.tier.value
            if self._accept(cand):
                self._emit(trace, TierEvent(state, "hit", cand.label, cand.score, detail=f"tier={tier}"))
                return DecodedPayload(cand.text, BarcodeFormat.DATAMATRIX, source=cand.label, score=cand.score)
            self._emit(trace, TierEvent(state, "miss", cand.label, cand.score, detail=f"tier={tier}"))
        return None

    def _try_linear(self, image, trace, cancel_event) -> Optional[DecodedPayload]:
        state = DispatchState.TRIED_LINEAR
        hit = self._run_library(state, BarcodeFormat.LINEAR, self.linear_decoders, image, trace, cancel_event)
        if hit:
            return hit

        self._check_cancel(cancel_event)
        pattern = bar_pattern(image, self.threshold)
        if not pattern:
            self._emit(trace, TierEvent(state, "miss", "bar-width", detail="no bar row"))
            return None
        cand = self.ensemble.decode(pattern)
        if self._accept(cand):
            self._emit(trace, TierEvent(state, "hit", cand.label, cand.score, detail="bar-width"))
            return DecodedPayload(cand.text, BarcodeFormat.LINEAR, source=cand.label, score=cand.score)
        self._emit(trace, TierEvent(state, "miss", cand.label, cand.score, detail="bar-width"))
        return None

    # ---- entry point ----

    def dispatch(self, image: np.ndarray, cancel_event: Optional[threading.Event] = None) -> DispatchOutcome:
        trace: List[TierEvent] = []
        ladder = (
            (DispatchState.TRIED_QR, self._try_qr),
            (DispatchState.TRIED_PDF417, self._try_pdf417),
            (DispatchState.TRIED_DATAMATRIX, self._try_datamatrix),
            (DispatchState.TRIED_LINEAR, self._try_linear),
        )
        last = DispatchState.START
        for state, rung in ladder:
            try:
                self._check_cancel(cancel_event)
                payload = rung(image, trace, cancel_event)
            except _Cancelled:
                self._emit(trace, TierEvent(state, "cancelled"))
                return DispatchOutcome(
                    None, DispatchReason.NO_BARCODE_FOUND, trace, detail="cancelled", last_tier=last
                )
            last = state
            if payload is not None:
                return DispatchOutcome(payload, DispatchReason.DECODED, trace, last_tier=last)
        return DispatchOutcome(None, DispatchReason.NO_BARCODE_FOUND, trace, detail="exhausted", last_tier=last)


def build_dispatcher(
    cfg: ScanConfig,
    on_event: Optional[Callable[[TierEvent], None]] = None,
) -> FormatDispatcher:
    """Wire a dispatcher from configuration (heuristics file, threshold, remote service)."""
    remote = RemoteDecodeClient.from_config(cfg) if cfg.remote_enabled else None
    return FormatDispatcher(
        remote_decoder=remote,
        ensemble=DecodeStrategyEnsemble(load_heuristics(cfg.heuristics_path)),
        locator=RegionLocator(threshold=cfg.dark_threshold),
        threshold=cfg.dark_threshold,
        min_accept_score=cfg.min_accept_score,
        on_event=on_event,
    )
