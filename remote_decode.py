"""
Remote PDF417 decoding.

Two services are tried in order, each optional:
  1. a JSON barcode API (base64 image in, {"barcode": "..."} out)
  2. a zxing.org-style multipart decoder that answers with an HTML page

The HTTP work runs on a daemon worker thread; the caller polls a one-slot
queue so the overall deadline and a cancel event are honoured even while a
request is in flight.
"""

from __future__ import annotations

import base64
import html as html_lib
import logging
import queue
import re
import threading
import time
from typing import Any, List, Optional, Tuple

import requests

from scan_config import ScanConfig
from scan_errors import RemoteServiceUnavailable

logger = logging.getLogger(__name__)

NOT_FOUND_PHRASES = ("No barcode found", "could not find", "Failed to decode")

PARSED_RESULT_RE = re.compile(r"Parsed Result</th></tr>\s*<tr><td[^>]*>([\s\S]*?)</td>")
RAW_TEXT_RE = re.compile(r"Raw text</th></tr>\s*<tr><td[^>]*>([\s\S]*?)</td>")
ANY_CELL_RE = re.compile(r"<td[^>]*>([\s\S]{20,}?)</td>")
TAG_RE = re.compile(r"<[^>]*>")

AAMVA_MARKERS = ("ANSI", "DAC", "DCS", "636")
MIN_RESULT_LEN = 10
MIN_CELL_LEN = 50


def _cell_text(fragment: str) -> str:
    return html_lib.unescape(TAG_RE.sub("", fragment)).replace("\xa0", " ").strip()


def parse_zxing_html(page: str) -> Optional[str]:
    """Pull the decoded payload out of a zxing.org result page.

    Tried in order: the "Parsed Result" cell, the "Raw text" cell, then any
    long table cell that looks like AAMVA data. Returns None when the page
    says nothing was found or no pattern yields usable text.
    """
    if any(phrase in page for phrase in NOT_FOUND_PHRASES):
        return None

    for rx in (PARSED_RESULT_RE, RAW_TEXT_RE):
        m = rx.search(page)
        if m:
            text = _cell_text(m.group(1))
            if len(text) > MIN_RESULT_LEN:
                return text

    for m in ANY_CELL_RE.finditer(page):
        text = _cell_text(m.group(1))
        if len(text) > MIN_CELL_LEN and any(k in text for k in AAMVA_MARKERS):
            return text
    return None


class RemoteDecodeClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        zxing_url: Optional[str] = None,
        api_timeout_s: float = 10.0,
        zxing_timeout_s: float = 30.0,
        deadline_s: float = 45.0,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.zxing_url = zxing_url
        self.api_timeout_s = api_timeout_s
        self.zxing_timeout_s = zxing_timeout_s
        self.deadline_s = deadline_s

    @classmethod
    def from_config(cls, cfg: ScanConfig) -> "RemoteDecodeClient":
        return cls(
            api_url=cfg.barcode_api_url,
            api_key=cfg.barcode_api_key,
            zxing_url=cfg.zxing_decode_url,
            api_timeout_s=cfg.api_timeout_s,
            zxing_timeout_s=cfg.zxing_timeout_s,
            deadline_s=cfg.remote_timeout_s,
        )

    # ---- individual services ----

    def call_barcode_api(self, image_bytes: bytes, session: requests.Session) -> Optional[str]:
        if not self.api_url:
            return None
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        try:
            resp = session.post(
                self.api_url,
                json={"image": base64.b64encode(image_bytes).decode("ascii")},
                headers=headers,
                timeout=self.api_timeout_s,
            )
        except requests.RequestException as e:
            raise RemoteServiceUnavailable("barcode-api", str(e)) from e

        if resp.status_code >= 500:
            raise RemoteServiceUnavailable("barcode-api", f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RemoteServiceUnavailable("barcode-api", f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data: Any = resp.json()
        except ValueError as e:
            raise RemoteServiceUnavailable("barcode-api", "response is not JSON") from e

        text = data.get("barcode") if isinstance(data, dict) else None
        return str(text) if text else None

    def call_zxing(self, image_bytes: bytes, session: requests.Session) -> Optional[str]:
        if not self.zxing_url:
            return None
        try:
            resp = session.post(
                self.zxing_url,
                files={"f": ("scan.png", image_bytes, "image/png")},
                timeout=self.zxing_timeout_s,
            )
        except requests.RequestException as e:
            raise RemoteServiceUnavailable("zxing", str(e)) from e

        if resp.status_code >= 500:
            raise RemoteServiceUnavailable("zxing", f"HTTP {resp.status_code}")
        logger.debug("zxing answered HTTP %d (%d bytes)", resp.status_code, len(resp.text))
        return parse_zxing_html(resp.text)

    # ---- orchestration ----

    def decode_sync(
        self,
        image_bytes: bytes,
        session: Optional[requests.Session] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Try each configured service in turn. Returns (text, service) on a hit,
        (None, None) when at least one service answered cleanly with no barcode
        or stop_event was set, and raises RemoteServiceUnavailable when every
        configured service failed.
        """
        services = []
        if self.api_url:
            services.append(("barcode-api", self.call_barcode_api))
        if self.zxing_url:
            services.append(("zxing", self.call_zxing))
        if not services:
            return None, None

        own_session = session is None
        http = requests.Session() if session is None else session
        failures: List[RemoteServiceUnavailable] = []
        try:
            for name, call in services:
                if stop_event is not None and stop_event.is_set():
                    return None, None
                try:
                    text = call(image_bytes, http)
                except RemoteServiceUnavailable as e:
                    logger.warning("Remote decoder %s unavailable: %s", name, e.reason)
                    failures.append(e)
                    continue
                if text:
                    logger.info("Remote decoder %s returned %d chars", name, len(text))
                    return text, name
                logger.info("Remote decoder %s: no barcode", name)
        finally:
            if own_session:
                http.close()

        if len(failures) == len(services):
            raise failures[-1]
        return None, None

    def decode(self, image_bytes: bytes, cancel_event: Optional[threading.Event] = None) -> Optional[str]:
        """Decode with an overall deadline; None on no-match or cancel.

        On cancel or deadline the worker's session is closed, which drops the
        in-flight connection, and no further service is tried.
        """
        out_q: "queue.Queue[Tuple[str, Any]]" = queue.Queue(maxsize=1)
        session = requests.Session()
        abandoned = threading.Event()

        def _worker():
            try:
                text, _service = self.decode_sync(image_bytes, session=session, stop_event=abandoned)
                out_q.put(("ok", text))
            except RemoteServiceUnavailable as e:
                out_q.put(("err", e))
            except Exception as e:  # pragma: no cover
                out_q.put(("err", RemoteServiceUnavailable("remote", repr(e))))

        worker = threading.Thread(target=_worker, daemon=True)
        worker.start()

        deadline = time.time() + self.deadline_s
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Remote decode cancelled")
                    return None
                try:
                    kind, value = out_q.get(timeout=0.05)
                except queue.Empty:
                    if time.time() > deadline:
                        raise RemoteServiceUnavailable("remote", f"no answer within {self.deadline_s:.0f}s")
                    continue
                if kind == "err":
                    raise value
                return value
        finally:
            abandoned.set()
            session.close()

    __call__ = decode
