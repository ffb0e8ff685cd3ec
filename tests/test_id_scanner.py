from __future__ import annotations

import threading
import unittest
from unittest.mock import MagicMock, patch

import numpy as np

import ID_Scanner
from ID_Scanner import (
    BarcodeFormat,
    DispatchReason,
    DispatchState,
    FormatDispatcher,
    build_dispatcher,
)
from region_locator import RegionLocator
from scan_config import ScanConfig
from scan_errors import RemoteServiceUnavailable

PAYLOAD = "DCSSMITH\nDACJOHN\nDCKS1234"


def blank(h: int = 150, w: int = 200) -> np.ndarray:
    img = np.full((h, w), 255, dtype=np.uint8)
    img.flags.writeable = False
    return img


def checkerboard_canvas() -> np.ndarray:
    img = np.full((150, 200), 255, dtype=np.uint8)
    yy, xx = np.mgrid[0:20, 0:20]
    img[40:60, 60:80] = np.where((xx + yy) % 2 == 0, 0, 255).astype(np.uint8)
    return img


def bars_canvas() -> np.ndarray:
    img = np.full((60, 200), 255, dtype=np.uint8)
    x = 5
    for i in range(15):
        w = 2 if i % 2 == 0 else 4
        img[:, x : x + w] = 0
        x += w + 3
    return img


def offline(**kwargs) -> FormatDispatcher:
    """Dispatcher with every library rung stubbed out unless given."""
    opts = dict(
        qr_decoder=None,
        pdf417_decoders=[],
        datamatrix_decoders=[],
        linear_decoders=[],
        remote_decoder=None,
    )
    opts.update(kwargs)
    return FormatDispatcher(**opts)


class TestFormatDispatcher(unittest.TestCase):
    def test_qr_fast_path_wins_first(self) -> None:
        pdf = MagicMock(return_value="other")
        d = offline(qr_decoder=lambda img: PAYLOAD, pdf417_decoders=[("pdf", pdf)])
        out = d.dispatch(blank())
        self.assertEqual(out.reason, DispatchReason.DECODED)
        self.assertEqual(out.payload.text, PAYLOAD)
        self.assertEqual(out.payload.format, BarcodeFormat.QR)
        self.assertEqual(out.last_tier, DispatchState.TRIED_QR)
        pdf.assert_not_called()

    def test_remote_pdf417_hit_gets_png_bytes(self) -> None:
        remote = MagicMock(return_value=PAYLOAD)
        d = offline(remote_decoder=remote)
        out = d.dispatch(blank())
        self.assertEqual(out.payload.format, BarcodeFormat.PDF417)
        self.assertEqual(out.payload.source, "remote")
        image_bytes, cancel = remote.call_args[0]
        self.assertTrue(image_bytes.startswith(b"\x89PNG"))
        self.assertIsNone(cancel)

    def test_remote_unavailable_falls_through_to_next_tier(self) -> None:
        remote = MagicMock(side_effect=RemoteServiceUnavailable("zxing", "timeout"))
        d = offline(remote_decoder=remote, datamatrix_decoders=[("dmtx", lambda img: PAYLOAD)])
        out = d.dispatch(blank())
        self.assertEqual(out.payload.format, BarcodeFormat.DATAMATRIX)
        self.assertEqual(out.payload.source, "dmtx")
        errors = [e for e in out.trace if e.outcome == "error"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].state, DispatchState.TRIED_PDF417)
        self.assertEqual(out.last_tier, DispatchState.TRIED_DATAMATRIX)

    def test_nothing_found(self) -> None:
        remote = MagicMock(return_value=None)
        out = offline(remote_decoder=remote).dispatch(blank())
        self.assertIsNone(out.payload)
        self.assertFalse(out.found)
        self.assertEqual(out.reason, DispatchReason.NO_BARCODE_FOUND)
        remote.assert_called_once()
        self.assertEqual(out.detail, "exhausted")
        self.assertEqual(out.last_tier, DispatchState.TRIED_LINEAR)

    def test_each_tier_tried_once_in_order(self) -> None:
        calls = []

        def rec(name):
            def _dec(img):
                calls.append(name)
                return None
            return _dec

        d = offline(
            qr_decoder=rec("qr"),
            pdf417_decoders=[("pdf", rec("pdf"))],
            datamatrix_decoders=[("dm", rec("dm"))],
            linear_decoders=[("lin", rec("lin"))],
        )
        out = d.dispatch(blank())
        self.assertEqual(calls, ["qr", "pdf", "dm", "lin"])
        states = [e.state for e in out.trace]
        self.assertEqual(states, sorted(states, key=list(DispatchState).index))

    def test_heuristic_chain_decodes_located_region(self) -> None:
        out = offline().dispatch(checkerboard_canvas())
        self.assertEqual(out.payload.format, BarcodeFormat.DATAMATRIX)
        self.assertTrue(out.payload.text)
        self.assertGreaterEqual(out.payload.score, 1)
        hit = out.trace[-1]
        self.assertEqual(hit.outcome, "hit")
        self.assertEqual(hit.detail, "tier=structured")

    def test_min_accept_score_rejects_weak_candidates(self) -> None:
        out = offline(min_accept_score=10**6).dispatch(checkerboard_canvas())
        self.assertIsNone(out.payload)
        self.assertTrue(any(e.detail.startswith("tier=") and e.outcome == "miss" for e in out.trace))

    def test_bar_width_heuristic_is_last_resort(self) -> None:
        d = offline(locator=RegionLocator(tiers=()))
        out = d.dispatch(bars_canvas())
        self.assertEqual(out.payload.format, BarcodeFormat.LINEAR)
        self.assertTrue(out.payload.text)

    def test_broken_backend_only_costs_its_attempt(self) -> None:
        def boom(img):
            raise RuntimeError("native crash")

        d = offline(pdf417_decoders=[("boom", boom), ("ok", lambda img: PAYLOAD)])
        out = d.dispatch(blank())
        self.assertEqual(out.payload.source, "ok")
        self.assertEqual([e.outcome for e in out.trace if e.state == DispatchState.TRIED_PDF417], ["error", "hit"])

    def test_cancel_before_start(self) -> None:
        qr = MagicMock(return_value=PAYLOAD)
        cancel = threading.Event()
        cancel.set()
        out = offline(qr_decoder=qr).dispatch(blank(), cancel)
        self.assertIsNone(out.payload)
        self.assertEqual(out.reason, DispatchReason.NO_BARCODE_FOUND)
        self.assertEqual(out.detail, "cancelled")
        self.assertEqual(out.last_tier, DispatchState.START)
        qr.assert_not_called()

    def test_cancel_during_remote_call_abandons_remaining_tiers(self) -> None:
        cancel = threading.Event()
        dm = MagicMock(return_value=PAYLOAD)

        def remote(image_bytes, ev):
            ev.set()
            return None

        out = offline(remote_decoder=remote, datamatrix_decoders=[("dm", dm)]).dispatch(blank(), cancel)
        self.assertEqual(out.detail, "cancelled")
        self.assertEqual(out.trace[-1].outcome, "cancelled")
        dm.assert_not_called()
        self.assertEqual(out.last_tier, DispatchState.TRIED_QR)

    def test_on_event_sees_the_trace(self) -> None:
        seen = []
        out = offline(qr_decoder=lambda img: None, on_event=seen.append).dispatch(blank())
        self.assertEqual(seen, out.trace)
        self.assertEqual(seen[0].state, DispatchState.TRIED_QR)
        self.assertEqual(seen[0].outcome, "miss")


class TestLibraryWrappers(unittest.TestCase):
    def test_missing_backends_read_as_no_result(self) -> None:
        img = blank()
        with patch("ID_Scanner.ZXING", None):
            self.assertIsNone(ID_Scanner.zxing_pdf417(img))
            self.assertIsNone(ID_Scanner.zxing_linear(img))
        with patch("ID_Scanner.DMTX_DECODE", None):
            self.assertIsNone(ID_Scanner.pylibdmtx_datamatrix(img))
        with patch("ID_Scanner.ZBAR_SYMBOL", None):
            self.assertIsNone(ID_Scanner.pyzbar_linear(img))

    def test_qr_detector_is_not_shared_between_calls(self) -> None:
        detector_cls = MagicMock()
        detector_cls.return_value.detectAndDecode.return_value = ("", None, None)
        gray = np.full((20, 20), 255, dtype=np.uint8)
        with patch("ID_Scanner.cv2.QRCodeDetector", detector_cls):
            self.assertIsNone(ID_Scanner._opencv_qr(gray))
            self.assertIsNone(ID_Scanner._opencv_qr(gray))
        self.assertEqual(detector_cls.call_count, 2)

    def test_concurrent_qr_reads_use_their_own_detector(self) -> None:
        seen = []
        lock = threading.Lock()

        def _make():
            det = MagicMock()
            det.detectAndDecode.return_value = (PAYLOAD, None, None)
            with lock:
                seen.append(det)
            return det

        gray = np.full((20, 20), 255, dtype=np.uint8)
        results = []
        with patch("ID_Scanner.cv2.QRCodeDetector", side_effect=_make):
            threads = [threading.Thread(target=lambda: results.append(ID_Scanner._opencv_qr(gray))) for _ in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(2)
        self.assertEqual(results, [PAYLOAD] * 4)
        self.assertEqual(len({id(d) for d in seen}), 4)
        for det in seen:
            det.detectAndDecode.assert_called_once()


class TestBuildDispatcher(unittest.TestCase):
    def test_remote_disabled(self) -> None:
        d = build_dispatcher(ScanConfig(remote_enabled=False, min_accept_score=3, dark_threshold=100))
        self.assertIsNone(d.remote_decoder)
        self.assertEqual(d.min_accept_score, 3)
        self.assertEqual(d.locator.threshold, 100)

    def test_remote_enabled(self) -> None:
        d = build_dispatcher(ScanConfig(remote_enabled=True))
        self.assertIsNotNone(d.remote_decoder)


if __name__ == "__main__":
    unittest.main()
