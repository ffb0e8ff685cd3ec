from __future__ import annotations

import hashlib
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import numpy as np

from aamva_parser import parse_aamva
from ID_Scanner import BarcodeFormat, DecodedPayload, DispatchOutcome, DispatchReason
from Scan_ID import (
    CONFIG_ERROR,
    IMAGE_LOAD_ERROR,
    MISSING_REQUIRED_FIELD,
    NO_BARCODE_FOUND,
    build_handoff,
    process_scan,
)
from scan_config import ScanConfig
from scan_errors import MissingRequiredField

PAYLOAD = "ANSI 636036\nDLDCSSMITH\nDACJOHN\nDBB04091990\nDCKS12345678"


def stub_dispatcher(text=None) -> MagicMock:
    d = MagicMock()
    if text is None:
        d.dispatch.return_value = DispatchOutcome(None, DispatchReason.NO_BARCODE_FOUND, detail="exhausted")
    else:
        payload = DecodedPayload(text, BarcodeFormat.PDF417, source="remote")
        d.dispatch.return_value = DispatchOutcome(payload, DispatchReason.DECODED)
    return d


class TestHandoff(unittest.TestCase):
    def test_hash_and_last_four(self) -> None:
        h = build_handoff(parse_aamva(PAYLOAD))
        self.assertEqual(h.id_hash, hashlib.sha256(b"S12345678").hexdigest())
        self.assertEqual(h.id_last_four, "5678")
        self.assertEqual(h.to_dict()["license"]["last_name"], "SMITH")

    def test_short_id_keeps_what_it_has(self) -> None:
        self.assertEqual(build_handoff(parse_aamva("DCKAB")).id_last_four, "AB")

    def test_missing_id_raises(self) -> None:
        with self.assertRaises(MissingRequiredField):
            build_handoff(parse_aamva("DCSSMITH"))


class TestProcessScan(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch("Scan_ID.enhance", return_value=np.zeros((10, 10), dtype=np.uint8))
        self.enhance = patcher.start()
        self.addCleanup(patcher.stop)

    def test_success(self) -> None:
        res = process_scan("id.jpg", dispatcher=stub_dispatcher(PAYLOAD))
        self.assertTrue(res.success)
        self.assertEqual(res.backend, "remote")
        self.assertEqual(res.raw, PAYLOAD)
        self.assertEqual(res.data["format"], "PDF417")
        self.assertEqual(res.data["id_last_four"], "5678")
        self.assertEqual(res.data["license"]["date_of_birth"], "04-09-1990")
        self.enhance.assert_called_once_with("id.jpg")

    def test_no_barcode(self) -> None:
        res = process_scan("id.jpg", dispatcher=stub_dispatcher(None))
        self.assertFalse(res.success)
        self.assertEqual(res.error_code, NO_BARCODE_FOUND)

    def test_missing_unique_id(self) -> None:
        res = process_scan("id.jpg", dispatcher=stub_dispatcher("DCSSMITH\nDACJOHN"))
        self.assertFalse(res.success)
        self.assertEqual(res.error_code, MISSING_REQUIRED_FIELD)
        self.assertEqual(res.message, "Invalid or missing unique_id in parsed data")
        self.assertEqual(res.data["license"]["first_name"], "JOHN")

    def test_cancel_event_is_passed_through(self) -> None:
        d = stub_dispatcher(None)
        cancel = MagicMock()
        process_scan("id.jpg", dispatcher=d, cancel_event=cancel)
        d.dispatch.assert_called_once()
        self.assertIs(d.dispatch.call_args[0][1], cancel)


class TestProcessScanFiles(unittest.TestCase):
    def test_unreadable_image(self) -> None:
        res = process_scan("/nonexistent/id.jpg", dispatcher=stub_dispatcher(PAYLOAD))
        self.assertFalse(res.success)
        self.assertEqual(res.error_code, IMAGE_LOAD_ERROR)

    def test_delete_after_removes_upload(self) -> None:
        fd, path = tempfile.mkstemp(suffix=".jpg")
        with os.fdopen(fd, "wb") as f:
            f.write(b"not an image")
        res = process_scan(path, dispatcher=stub_dispatcher(PAYLOAD), delete_after=True)
        self.assertEqual(res.error_code, IMAGE_LOAD_ERROR)
        self.assertFalse(os.path.exists(path))


class TestProcessScanConfig(unittest.TestCase):
    def test_bad_heuristics_file_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "heuristics.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("alphanumeric_table: AAB\n")
            with patch("Scan_ID.enhance") as enhance:
                res = process_scan("id.jpg", ScanConfig(remote_enabled=False, heuristics_path=path))
        self.assertFalse(res.success)
        self.assertEqual(res.error_code, CONFIG_ERROR)
        self.assertIn("alphanumeric_table", res.message)
        enhance.assert_not_called()

    def test_unparseable_heuristics_file_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "heuristics.yaml")
            with open(path, "w", encoding="utf-8") as f:
                f.write("weights: [unclosed\n")
            res = process_scan("id.jpg", ScanConfig(remote_enabled=False, heuristics_path=path))
        self.assertEqual(res.error_code, CONFIG_ERROR)

    def test_bad_environment_is_reported(self) -> None:
        with patch.dict(os.environ, {"SCAN_DARK_THRESHOLD": "dark"}, clear=True):
            res = process_scan("id.jpg")
        self.assertFalse(res.success)
        self.assertEqual(res.error_code, CONFIG_ERROR)


if __name__ == "__main__":
    unittest.main()
