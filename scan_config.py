# scan_config.py
# ----------------------------------------------------------------------
# Runtime configuration for the ID scanner, read from the environment
# (optionally seeded from a .env file next to this module).
#
#   SCAN_DARK_THRESHOLD     luminance below this is "dark"        (128)
#   SCAN_MIN_ACCEPT_SCORE   minimum ensemble score to accept      (1)
#   SCAN_REMOTE_ENABLED     1/0, consult the remote decode service (1)
#   SCAN_REMOTE_TIMEOUT_S   overall deadline for the remote tier  (45)
#   BARCODE_API_URL         optional JSON barcode API endpoint
#   BARCODE_API_KEY         X-Api-Key for the JSON API
#   ZXING_DECODE_URL        zxing.org-style multipart decoder
#   SCAN_HEURISTICS_PATH    optional YAML overriding scoring tables
# ----------------------------------------------------------------------

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from scan_errors import ConfigError

HERE = Path(__file__).resolve().parent

DEFAULT_ZXING_URL = "https://zxing.org/w/decode"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class ScanConfig:
    dark_threshold: int = 128
    min_accept_score: int = 1
    remote_enabled: bool = True
    remote_timeout_s: float = 45.0
    api_timeout_s: float = 10.0
    zxing_timeout_s: float = 30.0
    barcode_api_url: Optional[str] = None
    barcode_api_key: Optional[str] = None
    zxing_decode_url: Optional[str] = DEFAULT_ZXING_URL
    heuristics_path: Optional[str] = None

    def validate(self) -> "ScanConfig":
        if not 1 <= self.dark_threshold <= 255:
            raise ConfigError("dark_threshold must be in 1..255")
        if self.min_accept_score < 0:
            raise ConfigError("min_accept_score must be >= 0")
        if self.remote_timeout_s <= 0 or self.api_timeout_s <= 0 or self.zxing_timeout_s <= 0:
            raise ConfigError("remote timeouts must be > 0")
        if self.barcode_api_url and not self.barcode_api_url.startswith(("http://", "https://")):
            raise ConfigError("BARCODE_API_URL must be an http(s) URL")
        if self.zxing_decode_url and not self.zxing_decode_url.startswith(("http://", "https://")):
            raise ConfigError("ZXING_DECODE_URL must be an http(s) URL")
        return self


def load_config(env_path: Optional[str] = None) -> ScanConfig:
    """Read ScanConfig from the environment; values already set in os.environ win over the .env file."""
    load_dotenv(dotenv_path=env_path or HERE / ".env", override=False)

    return ScanConfig(
        dark_threshold=_env_int("SCAN_DARK_THRESHOLD", 128),
        min_accept_score=_env_int("SCAN_MIN_ACCEPT_SCORE", 1),
        remote_enabled=_env_bool("SCAN_REMOTE_ENABLED", True),
        remote_timeout_s=_env_float("SCAN_REMOTE_TIMEOUT_S", 45.0),
        barcode_api_url=os.getenv("BARCODE_API_URL") or None,
        barcode_api_key=os.getenv("BARCODE_API_KEY") or None,
        zxing_decode_url=os.getenv("ZXING_DECODE_URL", DEFAULT_ZXING_URL) or None,
        heuristics_path=os.getenv("SCAN_HEURISTICS_PATH") or None,
    ).validate()
