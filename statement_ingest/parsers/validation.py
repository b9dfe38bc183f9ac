"""Shared validation utilities for statement parsers."""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from statement_ingest.models import Direction

logger = logging.getLogger("statement_ingest.parsers")

_CURRENCY_SYMBOLS_RE = re.compile(r"(?i)[₦$£€\s]|\bNGN\b|\bUSD\b|\bGBP\b|\bEUR\b")


@dataclass
class ParseResult:
    """Candidates from one structural parser plus what it had to skip."""

    transactions: list[Any]
    total_rows_processed: int = 0
    rows_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Percentage of processed rows that produced a candidate."""
        if self.total_rows_processed == 0:
            return 0.0
        parsed = len(self.transactions)
        return (parsed / self.total_rows_processed) * 100

    def skip(self, reason: str) -> None:
        """Record a skipped row without failing the document."""
        self.rows_skipped += 1
        self.warnings.append(reason)


class ValidationError(Exception):
    """Raised when an uploaded file is unusable before parsing starts."""

    pass


def validate_file_contents(contents: bytes, min_size: int = 10) -> None:
    """
    Validate file contents before parsing.

    Args:
        contents: Raw file bytes
        min_size: Minimum expected file size in bytes

    Raises:
        ValidationError: If validation fails
    """
    if not contents:
        raise ValidationError("File is empty")

    if len(contents) < min_size:
        raise ValidationError(f"File too small ({len(contents)} bytes), minimum {min_size} bytes expected")


def decode_text_contents(contents: bytes) -> str:
    """
    Decode text-based file contents.

    Args:
        contents: Raw file bytes

    Returns:
        Decoded text content

    Raises:
        ValidationError: If validation fails
    """
    validate_file_contents(contents, min_size=1)

    for encoding in ("utf-8-sig", "utf-8", "latin-1", "cp1252"):
        try:
            return contents.decode(encoding)
        except UnicodeDecodeError:
            continue

    raise ValidationError("Could not decode file with any supported encoding (utf-8, latin-1, cp1252)")


def validate_amount(amount: float, max_val: float = 1_000_000_000_000) -> bool:
    """
    Validate that a magnitude is positive and within reasonable bounds.

    Naira statements routinely run into the hundreds of millions.
    """
    if amount is None:
        return False

    # Check for NaN or infinity
    if amount != amount or abs(amount) == float("inf"):
        return False

    return 0 < amount <= max_val


def validate_date(txn_date: date, min_year: int = 1990, max_year: int = 2100) -> bool:
    """Validate that a date falls strictly between min_year and max_year."""
    if txn_date is None:
        return False

    return min_year < txn_date.year < max_year


def clean_amount_string(amount_str: str) -> str:
    """Strip currency markers and separators; "(1,200.00)" and "1,200.00-" become "-1200.00"."""
    if not amount_str:
        return "0"

    # Remove currency symbols/codes and whitespace
    cleaned = _CURRENCY_SYMBOLS_RE.sub("", amount_str).strip()

    # Remove thousand separators
    cleaned = cleaned.replace(",", "")

    # Handle parentheses for negative numbers
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]

    # Handle trailing minus sign
    if cleaned.endswith("-"):
        cleaned = "-" + cleaned[:-1]

    return cleaned


def parse_amount_safe(value: Any, default: float = 0.0) -> tuple[float, bool]:
    """
    Parse a cell or token into an absolute amount.

    Numeric cells are used as-is; strings go through clean_amount_string.

    Returns:
        Tuple of (absolute amount, success flag)
    """
    if value is None:
        return default, False

    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            amount = abs(float(value))
        else:
            cleaned = clean_amount_string(str(value))
            if not cleaned or cleaned == "-":
                return default, False
            amount = abs(float(cleaned))

        if not validate_amount(amount):
            return default, False

        return amount, True
    except (ValueError, TypeError):
        return default, False


def log_parse_result(result: ParseResult, parser_name: str) -> None:
    """Summarize one parse run; only the first few skip reasons are logged."""
    logger.info(
        f"📊 {parser_name}: {len(result.transactions)} transactions from {result.total_rows_processed} rows "
        f"({result.success_rate:.0f}%, {result.rows_skipped} skipped)"
    )

    for error in result.errors[:5]:
        logger.warning(f"{parser_name}: {error}")

    for warning in result.warnings[:5]:
        logger.debug(f"{parser_name}: {warning}")


# Explicit markers, e.g. "... 12,500.00 CR" or "12,500.00CR"
_CR_MARKER_RE = re.compile(r"(?<![A-Za-z])CR(?![A-Za-z])")
_DR_MARKER_RE = re.compile(r"(?<![A-Za-z])DR(?![A-Za-z])")

INCOME_KEYWORDS = ["credit", "deposit", "salary", "transfer from", "inward"]
EXPENSE_KEYWORDS = ["debit", "withdrawal", "transfer to", "payment to", "pos", "atm"]


def detect_direction(line: str, description: str = "") -> Direction:
    """Infer money-in/money-out from a statement row, defaulting to expense."""
    if _CR_MARKER_RE.search(line):
        return Direction.INCOME
    if _DR_MARKER_RE.search(line):
        return Direction.EXPENSE

    lower = f"{line} {description}".lower()
    if any(keyword in lower for keyword in INCOME_KEYWORDS):
        return Direction.INCOME
    if any(keyword in lower for keyword in EXPENSE_KEYWORDS):
        return Direction.EXPENSE

    return Direction.EXPENSE
