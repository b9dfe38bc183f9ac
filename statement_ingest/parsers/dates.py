"""Date normalization for bank statement date tokens.

Statements are Nigerian-locale, so every ambiguous numeric date is read
day-first (DD/MM/YYYY). Normalization never raises: an unreadable token
degrades to today's date and the result is flagged as a fallback.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

MIN_YEAR = 1990
MAX_YEAR = 2100

# Tried in order; the first format that fits wins.
DATED_FORMATS = [
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%d-%B-%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d.%m.%y",
    "%d %b %y",
    "%d-%b-%y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%Y-%m-%d",
    "%Y/%m/%d",
]

YEARLESS_FORMATS = [
    "%d/%m",
    "%d-%m",
    "%d.%m",
    "%d %b",
    "%d %B",
    "%d-%b",
    "%d-%B",
    "%b %d",
]

_MONTHS = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)\b"
)

# Date-looking substrings inside a statement row. The lookarounds keep
# amounts such as "12,500.00" from being read as "500.00" or "12,5".
DATE_TOKEN_RE = re.compile(
    r"(?<![\d.,])(?:"
    r"\d{4}-\d{2}-\d{2}"
    rf"|\d{{1,2}}[-/. ]{_MONTHS}\.?(?:[-/. ]\d{{2,4}}(?![\d,]|\.\d))?"
    r"|\d{1,2}[-/]\d{1,2}(?:[-/]\d{2,4}(?![\d,]|\.\d))?"
    r"|\d{1,2}\.\d{1,2}\.\d{2,4}"
    r")(?![\d,]|\.\d)",
    re.IGNORECASE,
)

_YEAR_RE = re.compile(r"(?<![\d.,])(199[1-9]|20\d\d)(?![\d,]|\.\d)")
_TIME_SUFFIX_RE = re.compile(r"\s+\d{1,2}:\d{2}(?::\d{2})?.*$")


@dataclass(frozen=True)
class DateResult:
    """A normalized calendar date and whether it had to be defaulted."""

    value: date
    is_fallback: bool = False

    @property
    def timestamp(self) -> str:
        return datetime.combine(self.value, datetime.min.time()).isoformat()


def _in_range(value: date) -> bool:
    return MIN_YEAR < value.year < MAX_YEAR


def normalize_date(token: str | None, context_year: int | None = None) -> DateResult:
    """
    Convert a statement date token into a calendar date.

    Tries ISO-8601, then day-first formats with a year, then yearless
    formats completed with ``context_year`` (current year if None), then
    a permissive parse. Falls back to today's date.
    """
    if not token or not str(token).strip():
        logger.warning("Empty date token, falling back to current date")
        return DateResult(date.today(), is_fallback=True)

    trimmed = str(token).strip()
    year = context_year or date.today().year

    # 1. Strict ISO
    try:
        parsed = datetime.fromisoformat(trimmed).date()
        if _in_range(parsed):
            return DateResult(parsed)
    except ValueError:
        pass

    # Remove time if present (e.g. "07/01/26 00:22:59" -> "07/01/26")
    normalized = " ".join(trimmed.split())
    normalized = _TIME_SUFFIX_RE.sub("", normalized)

    # 2. Explicit formats carrying a year
    for fmt in DATED_FORMATS:
        try:
            parsed = datetime.strptime(normalized, fmt).date()
        except ValueError:
            continue
        if _in_range(parsed):
            return DateResult(parsed)

    # 3. Yearless formats; strptime needs the year to validate Feb 29
    for fmt in YEARLESS_FORMATS:
        try:
            parsed = datetime.strptime(f"{normalized} {year}", f"{fmt} %Y").date()
        except ValueError:
            continue
        if _in_range(parsed):
            return DateResult(parsed)

    # 4. Permissive parse as a last resort
    try:
        parsed = dateutil_parser.parse(normalized, dayfirst=True, default=datetime(year, 1, 1)).date()
        if _in_range(parsed):
            return DateResult(parsed)
    except (ValueError, OverflowError):
        pass

    logger.warning(f"⚠️ Failed to parse date string: '{token}'. Falling back to current date.")
    return DateResult(date.today(), is_fallback=True)


def find_date_token(text: str) -> re.Match | None:
    """Find the first date-looking substring in a row of text."""
    return DATE_TOKEN_RE.search(text)


def infer_statement_year(lines: Iterable[str], max_lines: int = 50) -> int | None:
    """Seed a contextual year from the first 4-digit year in a document header."""
    for index, line in enumerate(lines):
        if index >= max_lines:
            break
        match = _YEAR_RE.search(line or "")
        if match:
            year = int(match.group(1))
            logger.info(f"📅 Detected statement year {year} from header: '{line[:50]}'")
            return year
    return None


# 9999-12-31 in the 1900 date system
MAX_EXCEL_SERIAL = 2958465


def excel_serial_to_date(serial: float) -> date:
    """
    Convert a spreadsheet serial day number (1900 date system) to a date.

    Raises:
        ValueError: If the serial is outside 1..MAX_EXCEL_SERIAL
    """
    if not 1 <= float(serial) <= MAX_EXCEL_SERIAL:
        raise ValueError(f"Spreadsheet serial {serial} out of range")
    return (datetime(1899, 12, 30) + timedelta(days=float(serial))).date()
