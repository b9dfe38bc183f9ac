"""Line-oriented regex parser for plain statement text.

Last structural resort before AI extraction: any line that contains a date
and an amount becomes a candidate, and whatever text is left over is the
description.
"""

import re

from pydantic import ValidationError as ModelValidationError

from statement_ingest.models import CandidateSource, Direction, DocumentContext, TransactionCandidate
from statement_ingest.parsers.dates import find_date_token, infer_statement_year, normalize_date
from statement_ingest.parsers.validation import (
    ParseResult,
    detect_direction,
    log_parse_result,
    logger,
    parse_amount_safe,
)
from statement_ingest.services.categorizer import categorize, parse_import_rules

GENERIC_CONFIDENCE = 0.5
MIN_DESCRIPTION_LENGTH = 4

# Optional currency prefix, then a grouped or plain number with optional cents.
# Digits glued to letters (reference numbers like "REF12345") are not amounts.
AMOUNT_RE = re.compile(
    r"(?:(?:[₦$£€]|\bNGN)\s?|(?<![\w.,]))((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?)(?!\d|,\d|\.\d)"
)


def parse_generic_text(text: str, context: DocumentContext) -> ParseResult:
    """
    Scan statement text line by line for date + amount pairs.

    The date substring is removed first, then the LAST amount on the line
    is taken and removed; the remainder is the description.
    """
    result = ParseResult(transactions=[])
    lines = [line.strip() for line in (text or "").splitlines()]

    if not any(lines):
        logger.warning("Generic text: No text to parse")
        return result

    if context.inferred_year is None:
        context.inferred_year = infer_statement_year(lines)

    overrides = parse_import_rules(context.account.import_rules)

    for line_number, line in enumerate(lines, start=1):
        match = find_date_token(line)
        if not match:
            continue
        result.total_rows_processed += 1

        remaining = f"{line[: match.start()]} {line[match.end() :]}".strip()
        amounts = list(AMOUNT_RE.finditer(remaining))
        if not amounts:
            result.skip(f"Line {line_number}: date but no amount")
            continue

        last = amounts[-1]
        amount, amount_ok = parse_amount_safe(last.group(1))
        if not amount_ok:
            result.skip(f"Line {line_number}: invalid amount '{last.group(0)}'")
            continue

        description = " ".join(f"{remaining[: last.start()]} {remaining[last.end() :]}".split())
        if len(description) < MIN_DESCRIPTION_LENGTH:
            result.skip(f"Line {line_number}: description too short")
            continue

        date_result = normalize_date(match.group(0), context.inferred_year)
        if date_result.is_fallback:
            result.errors.append(f"Line {line_number}: unreadable date '{match.group(0)}', used today's date")

        direction = detect_direction(line, description)
        try:
            candidate = TransactionCandidate(
                date=date_result.value,
                description=description,
                amount=amount,
                direction=direction,
                category=categorize(description, direction == Direction.INCOME, overrides),
                confidence=GENERIC_CONFIDENCE,
                source=CandidateSource.GENERIC_TEXT,
            )
        except ModelValidationError as e:
            result.skip(f"Line {line_number}: {e.errors()[0]['msg']}")
            continue

        result.transactions.append(candidate)

    log_parse_result(result, "Generic text")
    return result
