# aamva_parser.py
# ----------------------------------------------------------------------
# Line-oriented AAMVA field parser:
# - parse_aamva(text) -> IdentityRecord
# - require_unique_id(record)  raises MissingRequiredField without a DCK value
#
# Input is whatever text a decoder produced, so it is cleaned first:
# non-printables dropped (CR/LF kept), line endings unified, blank lines
# collapsed. Each line is then matched against the known element IDs.
# ----------------------------------------------------------------------

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from scan_errors import MissingRequiredField

# Element IDs recognised at the start of a line
FIELD_CODES: List[str] = [
    "DCS", "DAC", "DAD", "DBD", "DBB", "DBA", "DBC", "DAU", "DAY",
    "DAG", "DAI", "DAJ", "DAK", "DCG", "DCK", "DDB", "DDAN",
]

CODE_TO_FIELD: Dict[str, str] = {
    "DCS": "last_name",
    "DAC": "first_name",
    "DAD": "middle_name",
    "DBD": "issue_date",
    "DBB": "date_of_birth",
    "DBA": "expiry_date",
    "DBC": "gender_code",
    "DAU": "height",
    "DAY": "eye_color",
    "DAG": "address",
    "DAI": "city",
    "DAJ": "state",
    "DAK": "zip_code",
    "DCG": "country",
    "DCK": "unique_id",
}

DATE_CODES = ("DBD", "DBB", "DBA")

_CODES = "|".join(FIELD_CODES)
LINE_RE = re.compile(rf"^({_CODES}|ZN[A-Z]*)(.*)$")

# Subfile designator glued to the first element, e.g. "DLDCSSMITH"
SUBFILE_RE = re.compile(rf"^(?:DL|ID)(?=(?:{_CODES}))")

NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7E\r\n]")
EIGHT_DIGITS_RE = re.compile(r"^(\d{2})(\d{2})(\d{4})$")


@dataclass(frozen=True)
class IdentityRecord:
    last_name: str = ""
    first_name: str = ""
    middle_name: str = ""
    issue_date: str = ""
    date_of_birth: str = ""
    expiry_date: str = ""
    gender_code: str = ""
    height: str = ""
    eye_color: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    unique_id: str = ""
    raw_fields: Dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.raw_fields

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_date(value: str) -> str:
    """Positional regroup 12345678 -> 12-34-5678; anything that is not exactly 8 digits is returned as-is."""
    m = EIGHT_DIGITS_RE.match(value)
    if not m:
        return value
    return "-".join(m.groups())


def normalize_text(text: str) -> List[str]:
    cleaned = NON_PRINTABLE_RE.sub("", text or "")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"\n{2,}", "\n", cleaned).strip()
    if not cleaned:
        return []
    return [ln.strip() for ln in cleaned.split("\n")]


def parse_aamva(text: str) -> IdentityRecord:
    """Parse decoded barcode text into an IdentityRecord.

    - First non-empty value per element ID wins; later repeats are ignored
    - Dates (DBD/DBB/DBA) are regrouped only when exactly 8 digits
    - Unknown lines (header, subfile directory, junk) are skipped
    - No codes found -> all-empty record
    """
    by_code: Dict[str, str] = {}

    for line in normalize_text(text):
        line = SUBFILE_RE.sub("", line, count=1)
        m = LINE_RE.match(line)
        if not m:
            continue
        code, value = m.group(1), m.group(2).strip()
        if not value or code in by_code:
            continue
        by_code[code] = value

    fields: Dict[str, str] = {}
    for code, name in CODE_TO_FIELD.items():
        value = by_code.get(code, "")
        if code in DATE_CODES:
            value = format_date(value)
        fields[name] = value

    return IdentityRecord(**fields, raw_fields=by_code)


def require_unique_id(record: IdentityRecord) -> IdentityRecord:
    if not record.unique_id:
        raise MissingRequiredField("unique_id")
    return record
