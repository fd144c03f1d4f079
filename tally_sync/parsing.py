"""
Value helpers for Tally report output.

Provides:
- XML sanitization
- Date parsing
- Amount / integer parsing ("missing or unparseable -> 0")
- Boolean parsing
"""
from __future__ import annotations
import re
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Optional
from loguru import logger

_INVALID_DEC_REF = re.compile(r"&#([0-8]|1[124-9]|2[0-9]|3[01]);")
_INVALID_HEX_REF = re.compile(r"&#x([0-8bBcCeEfF]|1[0-9a-fA-F]);")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_BARE_AMPERSAND = re.compile(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)")


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally emits character references such as ``&#4;`` and raw control
    characters that XML 1.0 forbids, and occasionally a bare ``&`` inside
    ledger names.
    """
    if not xml_text:
        return xml_text
    xml_text = _INVALID_DEC_REF.sub("", xml_text)
    xml_text = _INVALID_HEX_REF.sub("", xml_text)
    xml_text = _CONTROL_CHARS.sub("", xml_text)
    return _BARE_AMPERSAND.sub("&amp;", xml_text)


_DATE_FORMATS = (
    "%Y%m%d",      # 20240401
    "%Y-%m-%d",    # 2024-04-01
    "%d-%b-%Y",    # 01-Apr-2024
    "%d-%b-%y",    # 01-Apr-24
    "%d-%m-%Y",    # 01-04-2024
    "%d/%m/%Y",    # 01/04/2024
)


def parse_tally_date(s: str | None) -> Optional[date]:
    """
    Parse a Tally date string.

    Returns None for empty or unparseable strings.
    """
    if not s:
        return None
    s = str(s).strip()
    if not s or s.lower() in ("null", "none"):
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    logger.warning(f"Could not parse date: {s}")
    return None


def parse_amount(s: str | None, default: Decimal = Decimal("0")) -> Decimal:
    """
    Parse a Tally amount into a Decimal.

    Handles comma separators, currency symbols, parentheses for negatives
    and Dr/Cr suffixes (Cr is negative).
    """
    if s is None:
        return default
    s = str(s).strip()
    if not s or s.lower() in ("null", "none"):
        return default

    is_negative = s.startswith("(") and s.endswith(")")
    if is_negative:
        s = s[1:-1]

    lowered = s.lower()
    if lowered.endswith("cr"):
        s = s[:-2]
        is_negative = not is_negative
    elif lowered.endswith("dr"):
        s = s[:-2]

    s = re.sub(r"[,₹$€£¥\s]", "", s)
    try:
        val = Decimal(s)
    except InvalidOperation:
        logger.warning(f"Could not parse amount: {s}")
        return default
    if not val.is_finite():
        logger.warning(f"Could not parse amount: {s}")
        return default
    return -val if is_negative else val


def parse_int(s: str | None, default: int | None = 0) -> int | None:
    """Parse a Tally integer; Tally sometimes groups digits with spaces ("1 234")."""
    if s is None:
        return default
    s = str(s).strip().replace(",", "").replace(" ", "")
    if not s or s.lower() in ("null", "none"):
        return default
    try:
        return int(Decimal(s))
    except (InvalidOperation, ValueError, OverflowError):
        logger.warning(f"Could not parse int: {s}")
        return default


def parse_bool(s: str | None, default: bool = False) -> bool:
    """Parse Yes/No, True/False and 1/0."""
    if s is None:
        return default
    s = str(s).strip().lower()
    if s in ("yes", "true", "1", "y"):
        return True
    elif s in ("no", "false", "0", "n", ""):
        return False
    return default
