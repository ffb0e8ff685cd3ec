# dl_decoder.py
# ----------------------------------------------------------------------
# Bit-width / charset decode ensemble for raw bitstreams:
# - load_heuristics(path=None)      tunable scoring tables (YAML, optional)
# - DecodeStrategyEnsemble.decode(bits) -> best DecodeCandidate
#
# No frame or start-pattern synchronisation is attempted, so every
# strategy is run at every bit offset 0..bit_width-1 and the scoring
# function picks the most plausible text. The weights are empirical
# and are meant to be tuned, not trusted.
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
import pathlib
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import yaml

from scan_errors import ConfigError, InvalidBitstream

logger = logging.getLogger(__name__)

# ----------------------------- Heuristics -----------------------------

# QR alphanumeric set plus '#' and ',' which show up in street addresses.
ALPHANUMERIC_TABLE = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ $%*+-./:#,"

AAMVA_FIELD_BONUSES: Dict[str, int] = {
    "ANSI": 50,
    "ID": 20,
    "DCS": 30,
    "DAC": 20,
    "DAD": 20,
    "DAG": 20,
    "DAI": 20,
    "DAJ": 20,
    "DAK": 20,
    "DBB": 20,
    "DBA": 20,
    "DBD": 20,
}

ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
US_DATE_RE = re.compile(r"\d{2}/\d{2}/\d{4}")
EIGHT_DIGIT_RE = re.compile(r"\d{8}")


@dataclass(frozen=True)
class Heuristics:
    alphanumeric_weight: int = 2
    printable_weight: int = 1
    non_printable_weight: int = -1

    at_sign_bonus: int = 5
    http_bonus: int = 10
    id_bonus: int = 5
    date_bonus: int = 10

    # counted once per occurrence, so a repeated code always adds to the score
    field_bonuses: Dict[str, int] = field(default_factory=lambda: dict(AAMVA_FIELD_BONUSES))
    state_codes: Tuple[str, ...] = ("NJ", "NY", "CA")
    state_bonus: int = 25
    us_date_bonus: int = 30
    eight_digit_bonus: int = 20

    alphanumeric_table: str = ALPHANUMERIC_TABLE

    def validate(self) -> None:
        if not self.alphanumeric_table or len(self.alphanumeric_table) > 64:
            raise ConfigError("alphanumeric_table must hold 1..64 characters (6-bit values)")
        if len(set(self.alphanumeric_table)) != len(self.alphanumeric_table):
            raise ConfigError("alphanumeric_table must not repeat characters")
        if any(not code for code in self.field_bonuses):
            raise ConfigError("AAMVA field codes must be non-empty")
        bonuses = [self.state_bonus, self.us_date_bonus, self.eight_digit_bonus, *self.field_bonuses.values()]
        if any(v < 0 for v in bonuses):
            raise ConfigError("AAMVA bonuses must be >= 0")


DEFAULT_HEURISTICS = Heuristics()


def load_heuristics(path: Optional[str] = None) -> Heuristics:
    """
    Build a Heuristics from an optional YAML file. Any key left out keeps its
    built-in default; a missing or unset path returns the defaults. A file
    that does not parse, or holds values of the wrong type, raises ConfigError.

        weights:  {alphanumeric: 2, printable: 1, non_printable: -1}
        bonuses:  {at_sign: 5, http: 10, id: 5, date: 10}
        aamva:
          field_codes: {ANSI: 50, DCS: 30, DAC: 20}
          state_codes: [NJ, NY, CA]
          state_bonus: 25
          us_date_bonus: 30
          eight_digit_bonus: 20
        alphanumeric_table: "0123456789ABC..."
    """
    if not path:
        return DEFAULT_HEURISTICS
    p = pathlib.Path(path)
    if not p.exists():
        logger.warning("Heuristics file %s not found; using defaults", p)
        return DEFAULT_HEURISTICS

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Heuristics file {p} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Heuristics file {p} must hold a mapping")

    d = DEFAULT_HEURISTICS
    try:
        weights = data.get("weights") or {}
        bonuses = data.get("bonuses") or {}
        aamva = data.get("aamva") or {}
        h = Heuristics(
            alphanumeric_weight=int(weights.get("alphanumeric", d.alphanumeric_weight)),
            printable_weight=int(weights.get("printable", d.printable_weight)),
            non_printable_weight=int(weights.get("non_printable", d.non_printable_weight)),
            at_sign_bonus=int(bonuses.get("at_sign", d.at_sign_bonus)),
            http_bonus=int(bonuses.get("http", d.http_bonus)),
            id_bonus=int(bonuses.get("id", d.id_bonus)),
            date_bonus=int(bonuses.get("date", d.date_bonus)),
            field_bonuses={str(k): int(v) for k, v in (aamva.get("field_codes") or d.field_bonuses).items()},
            state_codes=tuple(str(s) for s in (aamva.get("state_codes") or d.state_codes)),
            state_bonus=int(aamva.get("state_bonus", d.state_bonus)),
            us_date_bonus=int(aamva.get("us_date_bonus", d.us_date_bonus)),
            eight_digit_bonus=int(aamva.get("eight_digit_bonus", d.eight_digit_bonus)),
            alphanumeric_table=str(data.get("alphanumeric_table") or d.alphanumeric_table),
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigError(f"Heuristics file {p} has a malformed value: {e}") from e
    h.validate()
    return h

# ------------------------------ Scoring -------------------------------

def score_text(text: str, heuristics: Heuristics = DEFAULT_HEURISTICS) -> int:
    """Generic plausibility score; never negative."""
    if not text:
        return 0
    h = heuristics

    chars = 0
    for ch in text:
        if ch.isascii() and ch.isalnum():
            chars += h.alphanumeric_weight
        elif " " <= ch <= "~":
            chars += h.printable_weight
        else:
            chars += h.non_printable_weight
    score = max(0, chars)

    if "@" in text:
        score += h.at_sign_bonus
    if "http" in text:
        score += h.http_bonus
    if "id" in text.lower():
        score += h.id_bonus
    if ISO_DATE_RE.search(text) or US_DATE_RE.search(text):
        score += h.date_bonus
    return score


def score_aamva(text: str, heuristics: Heuristics = DEFAULT_HEURISTICS) -> int:
    """score_text plus rewards for AAMVA field codes, date shapes and state abbreviations."""
    score = score_text(text, heuristics)
    if not text:
        return score
    h = heuristics
    score += sum(text.count(code) * bonus for code, bonus in h.field_bonuses.items())
    if US_DATE_RE.search(text):
        score += h.us_date_bonus
    if EIGHT_DIGIT_RE.search(text):
        score += h.eight_digit_bonus
    if any(state in text for state in h.state_codes):
        score += h.state_bonus
    return score


SCORERS: Dict[str, Callable[[str, Heuristics], int]] = {
    "text": score_text,
    "aamva": score_aamva,
}

# ----------------------------- Strategies -----------------------------

def _ascii_printable(v: int, h: Heuristics) -> str:
    return chr(v) if 0x20 <= v <= 0x7E else ""


def _hex_nibble(v: int, h: Heuristics) -> str:
    return format(v, "x")


def _base64_like(v: int, h: Heuristics) -> str:
    return chr(0x20 + v)


def _numeric(v: int, h: Heuristics) -> str:
    return str(v) if v < 10 else ""


def _alphanumeric(v: int, h: Heuristics) -> str:
    return h.alphanumeric_table[v] if v < len(h.alphanumeric_table) else ""


def _aamva_6bit(v: int, h: Heuristics) -> str:
    if v < 26:
        return chr(ord("A") + v)
    if v < 36:
        return chr(ord("0") + v - 26)
    if v < 42:
        return " "
    if v < 48:
        return chr(32 + v - 42)
    return ""


def _aamva_enhanced(v: int, h: Heuristics) -> str:
    if v < 26:
        return chr(ord("A") + v)
    if v < 36:
        return chr(ord("0") + v - 26)
    if v == 36:
        return " "
    if v == 37:
        return "\n"
    return chr(32 + v - 38)


@dataclass(frozen=True)
class DecodeStrategy:
    name: str
    bit_width: int
    charset: Callable[[int, Heuristics], str]
    scorer: str = "text"

    def table(self, heuristics: Heuristics) -> List[str]:
        return [self.charset(v, heuristics) for v in range(1 << self.bit_width)]


# Declaration order is the tie-break order.
STRATEGIES: Tuple[DecodeStrategy, ...] = (
    DecodeStrategy("ASCII-8bit", 8, _ascii_printable),
    DecodeStrategy("ASCII-7bit", 7, _ascii_printable),
    DecodeStrategy("Hex", 4, _hex_nibble),
    DecodeStrategy("Base64-like", 6, _base64_like),
    DecodeStrategy("Numeric", 4, _numeric),
    DecodeStrategy("Alphanumeric", 6, _alphanumeric),
    DecodeStrategy("AAMVA-6bit", 6, _aamva_6bit, scorer="aamva"),
    DecodeStrategy("AAMVA-Enhanced", 6, _aamva_enhanced, scorer="aamva"),
)


@dataclass(frozen=True)
class DecodeCandidate:
    strategy_name: str
    text: str
    score: int
    offset: int = 0

    @property
    def label(self) -> str:
        return f"{self.strategy_name}@{self.offset}"


_BITS_RE = re.compile(r"[01]*")


def bits_to_array(bits: str) -> np.ndarray:
    if not isinstance(bits, str) or not _BITS_RE.fullmatch(bits):
        raise InvalidBitstream("bitstream may only contain '0' and '1'")
    return np.frombuffer(bits.encode("ascii"), dtype=np.uint8) - ord("0")


def chunk_values(bit_array: np.ndarray, bit_width: int, offset: int) -> np.ndarray:
    """Integer value of every whole bit_width chunk starting at offset."""
    usable = max(0, (bit_array.size - offset) // bit_width)
    if usable == 0:
        return np.zeros(0, dtype=np.int64)
    chunks = bit_array[offset : offset + usable * bit_width].reshape(usable, bit_width).astype(np.int64)
    weights = 1 << np.arange(bit_width - 1, -1, -1, dtype=np.int64)
    return chunks @ weights


class DecodeStrategyEnsemble:
    def __init__(
        self,
        heuristics: Heuristics = DEFAULT_HEURISTICS,
        strategies: Tuple[DecodeStrategy, ...] = STRATEGIES,
    ):
        self.heuristics = heuristics
        self.strategies = strategies
        self._tables = {s.name: s.table(heuristics) for s in strategies}

    def interpret(self, strategy: DecodeStrategy, bit_array: np.ndarray, offset: int) -> DecodeCandidate:
        table = self._tables[strategy.name]
        text = "".join(table[v] for v in chunk_values(bit_array, strategy.bit_width, offset).tolist())
        score = SCORERS[strategy.scorer](text, self.heuristics)
        return DecodeCandidate(strategy.name, text, score, offset)

    def decode_all(self, bits: str) -> List[DecodeCandidate]:
        """Every strategy at every offset, in production order."""
        arr = bits_to_array(bits)
        out: List[DecodeCandidate] = []
        for strategy in self.strategies:
            for offset in range(strategy.bit_width):
                out.append(self.interpret(strategy, arr, offset))
        return out

    def decode(self, bits: str) -> DecodeCandidate:
        best: Optional[DecodeCandidate] = None
        for cand in self.decode_all(bits):
            logger.debug("%s: score %d, %r", cand.label, cand.score, cand.text[:60])
            # strict '>' keeps the earliest candidate on ties
            if best is None or cand.score > best.score:
                best = cand
        if best is None:
            first = self.strategies[0].name if self.strategies else ""
            return DecodeCandidate(first, "", 0, 0)
        return best
