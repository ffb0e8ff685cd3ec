"""
Overview
Entry point that turns one ID photo into a structured identity record.
enhance -> FormatDispatcher -> parse_aamva -> require unique id -> hand-off.

The hand-off is what the persistence layer stores and matches on: the
parsed record plus the last four characters of the ID number and a SHA-256
of the full number. Nothing is stored here.

Usage
  scan-id license.jpg
  scan-id license.jpg --no-remote --verbose --output result.json
"""

from __future__ import annotations

# --- Standard library ---
import argparse
import hashlib
import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

# --- Local modules ---
from aamva_parser import IdentityRecord, parse_aamva, require_unique_id
from ID_Scanner import DispatchOutcome, FormatDispatcher, TierEvent, build_dispatcher
from image_helper import enhance
from scan_config import ScanConfig, load_config
from scan_errors import ConfigError, ImageLoadError, MissingRequiredField, ScanError

logger = logging.getLogger(__name__)

NO_BARCODE_FOUND = "NO_BARCODE_FOUND"
MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
IMAGE_LOAD_ERROR = "IMAGE_LOAD_ERROR"
CONFIG_ERROR = "CONFIG_ERROR"
SCAN_ERROR = "SCAN_ERROR"


@dataclass(frozen=True)
class IdentityHandoff:
    record: IdentityRecord
    id_last_four: str
    id_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "license": self.record.to_dict(),
            "id_last_four": self.id_last_four,
            "id_hash": self.id_hash,
        }


@dataclass
class ScanResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    message: str = ""
    raw: Optional[str] = None
    backend: Optional[str] = None
    error_code: Optional[str] = None


def build_handoff(record: IdentityRecord) -> IdentityHandoff:
    record = require_unique_id(record)
    full_id = record.unique_id
    return IdentityHandoff(
        record=record,
        id_last_four=full_id[-4:],
        id_hash=hashlib.sha256(full_id.encode("utf-8")).hexdigest(),
    )


def _trace_dicts(outcome: DispatchOutcome):
    return [
        {"state": e.state.value, "outcome": e.outcome, "source": e.source, "score": e.score, "detail": e.detail}
        for e in outcome.trace
    ]


def process_scan(
    path: str,
    cfg: Optional[ScanConfig] = None,
    *,
    dispatcher: Optional[FormatDispatcher] = None,
    cancel_event: Optional[threading.Event] = None,
    on_event: Optional[Callable[[TierEvent], None]] = None,
    delete_after: bool = False,
) -> ScanResult:
    """Scan one image file and return a ScanResult; scanner errors are reported, not raised.

    Returns a ScanResult: {success, data, message, raw, backend, error_code}
    error_code is one of NO_BARCODE_FOUND, MISSING_REQUIRED_FIELD,
    IMAGE_LOAD_ERROR, CONFIG_ERROR (or SCAN_ERROR for anything else from the scanner).
    """
    try:
        if dispatcher is None:
            try:
                dispatcher = build_dispatcher(cfg or load_config(), on_event=on_event)
            except ConfigError as e:
                logger.error("Bad scanner configuration: %s", e)
                return ScanResult(False, message=str(e), error_code=CONFIG_ERROR)

        try:
            image = enhance(path)
        except ImageLoadError as e:
            return ScanResult(False, message=str(e), error_code=IMAGE_LOAD_ERROR)

        outcome = dispatcher.dispatch(image, cancel_event)
        if outcome.payload is None:
            msg = "Scan cancelled." if outcome.detail == "cancelled" else "No barcode found in image."
            return ScanResult(False, data={"trace": _trace_dicts(outcome)}, message=msg, error_code=NO_BARCODE_FOUND)

        payload = outcome.payload
        record = parse_aamva(payload.text)
        try:
            handoff = build_handoff(record)
        except MissingRequiredField as e:
            return ScanResult(
                False,
                data={"license": record.to_dict()},
                message=str(e),
                raw=payload.text,
                backend=payload.source,
                error_code=MISSING_REQUIRED_FIELD,
            )

        data = handoff.to_dict()
        data["format"] = payload.format.value
        data["score"] = payload.score
        return ScanResult(True, data=data, message="OK", raw=payload.text, backend=payload.source)
    except ScanError as e:
        logger.exception("Scan failed")
        return ScanResult(False, message=str(e), error_code=SCAN_ERROR)
    finally:
        if delete_after and os.path.exists(path):
            os.remove(path)


# ------------------------------ CLI ------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Scan an ID barcode image and print the parsed record as JSON.")
    parser.add_argument("image", help="path to the ID photo")
    parser.add_argument("--no-remote", action="store_true", help="skip the remote PDF417 decode service")
    parser.add_argument("--timeout", type=float, default=None, help="overall remote decode deadline in seconds")
    parser.add_argument("--env", type=str, default=None, help=".env file to load")
    parser.add_argument("--output", type=str, default=None)
    parser.add_argument("--verbose", action="store_true")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.env)
        overrides: Dict[str, Any] = {}
        if args.no_remote:
            overrides["remote_enabled"] = False
        if args.timeout is not None:
            overrides["remote_timeout_s"] = args.timeout
        if overrides:
            cfg = replace(cfg, **overrides).validate()
    except ConfigError as e:
        print(json.dumps({"success": False, "error": f"Bad configuration: {e}"}, indent=2))
        sys.exit(1)

    res = process_scan(args.image, cfg)

    if not res.success:
        print(json.dumps({"success": False, "error": res.message, "error_code": res.error_code}, indent=2))
        sys.exit(1)

    payload = {
        "success": True,
        "source": "id_scanner",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "backend": res.backend,
        "result": res.data,
    }
    txt = json.dumps(payload, indent=2, ensure_ascii=False)
    print(txt)
    if args.output:
        try:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(txt)
        except OSError as e:
            print(json.dumps({"success": False, "error": f"Failed to write output: {e}"}), file=sys.stderr)


if __name__ == "__main__":
    main()
