"""Parser for PDF bank statements using positional text layout.

pdfplumber gives each word with its coordinates. Words sharing a baseline
are rebuilt into rows, and rows are read as date | description | amount.
Narrations that wrap onto the next line are stitched back together.
"""

import re
from collections import defaultdict
from dataclasses import dataclass
from io import BytesIO

import pdfplumber
from pydantic import ValidationError as ModelValidationError

from statement_ingest.models import CandidateSource, Direction, DocumentContext, TransactionCandidate
from statement_ingest.parsers.dates import find_date_token, infer_statement_year, normalize_date
from statement_ingest.parsers.validation import (
    ParseResult,
    ValidationError,
    detect_direction,
    log_parse_result,
    logger,
    parse_amount_safe,
)
from statement_ingest.services.categorizer import categorize, parse_import_rules

POSITIONAL_CONFIDENCE = 0.6
MIN_DESCRIPTION_LENGTH = 3

_AMOUNT_STRIP_RE = re.compile(r"[₦$£€\s(),]")
_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")


@dataclass(frozen=True)
class TextToken:
    """A positioned piece of text from a PDF page."""

    text: str
    x: float
    y: float
    page: int = 1


def extract_pdf_tokens(contents: bytes) -> list[TextToken]:
    """
    Extract positioned words from every page of a PDF.

    Raises:
        ValidationError: If the PDF cannot be opened
    """
    tokens: list[TextToken] = []
    try:
        with pdfplumber.open(BytesIO(contents)) as pdf:
            for page_number, page in enumerate(pdf.pages, start=1):
                for word in page.extract_words(keep_blank_chars=True):
                    tokens.append(
                        TextToken(text=word["text"], x=float(word["x0"]), y=float(word["top"]), page=page_number)
                    )
    except Exception as e:
        logger.error(f"PDF token extraction error: {e}")
        raise ValidationError(f"Could not read PDF: {e}") from e

    logger.debug(f"Extracted {len(tokens)} tokens from PDF")
    return tokens


def extract_pdf_text(contents: bytes) -> str:
    """
    Extract plain text from a PDF, one page after another.

    Raises:
        ValidationError: If the PDF cannot be opened
    """
    try:
        with pdfplumber.open(BytesIO(contents)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        logger.error(f"PDF text extraction error: {e}")
        raise ValidationError(f"Could not read PDF: {e}") from e

    return "\n".join(pages)


def group_rows(tokens: list[TextToken]) -> list[list[TextToken]]:
    """Group tokens into rows by (page, rounded y), top to bottom, left to right."""
    rows: dict[tuple[int, float], list[TextToken]] = defaultdict(list)
    for token in tokens:
        rows[(token.page, round(token.y, 1))].append(token)

    return [sorted(rows[key], key=lambda t: t.x) for key in sorted(rows)]


def _is_amount(text: str) -> bool:
    cleaned = _AMOUNT_STRIP_RE.sub("", text)
    return bool(cleaned) and bool(_NUMERIC_RE.match(cleaned))


@dataclass
class _Row:
    tokens: list[TextToken]
    text: str
    spans: list[tuple[int, int]]

    @property
    def page(self) -> int:
        return self.tokens[0].page

    @classmethod
    def build(cls, tokens: list[TextToken]) -> "_Row":
        spans, parts, cursor = [], [], 0
        for token in tokens:
            piece = token.text.strip()
            spans.append((cursor, cursor + len(piece)))
            parts.append(piece)
            cursor += len(piece) + 1
        return cls(tokens=tokens, text=" ".join(parts), spans=spans)


def parse_positional(tokens: list[TextToken], context: DocumentContext) -> ParseResult:
    """
    Rebuild statement rows from positioned tokens and extract candidates.

    For each row holding a date: the first numeric token after the date
    is the amount and the text between them is the description. Rows with
    neither a date nor a number that follow on the same page continue the
    description.
    """
    result = ParseResult(transactions=[])
    rows = [_Row.build(r) for r in group_rows([t for t in tokens if t.text.strip()])]

    if not rows:
        logger.warning("Positional: No text found (image-only PDF?)")
        return result

    if context.inferred_year is None:
        context.inferred_year = infer_statement_year(row.text for row in rows)

    overrides = parse_import_rules(context.account.import_rules)

    i = 0
    while i < len(rows):
        row = rows[i]
        i += 1

        match = find_date_token(row.text)
        if not match:
            logger.debug(f"Positional: no date in row '{row.text[:60]}', discarded")
            continue
        result.total_rows_processed += 1

        amount_idx = next(
            (
                idx
                for idx, (start, _) in enumerate(row.spans)
                if start >= match.end() and _is_amount(row.tokens[idx].text)
            ),
            None,
        )
        if amount_idx is None:
            result.skip(f"Row '{row.text[:60]}': date but no amount")
            continue

        amount, amount_ok = parse_amount_safe(row.tokens[amount_idx].text)
        description = row.text[match.end() : row.spans[amount_idx][0]].strip()

        while i < len(rows) and rows[i].page == row.page:
            follower = rows[i]
            if find_date_token(follower.text) or any(_is_amount(t.text) for t in follower.tokens):
                break
            description = f"{description} {follower.text}".strip()
            i += 1

        if not amount_ok:
            result.skip(f"Row '{row.text[:60]}': invalid amount")
            continue

        if len(description) < MIN_DESCRIPTION_LENGTH:
            result.skip(f"Row '{row.text[:60]}': description too short")
            continue

        date_result = normalize_date(match.group(0), context.inferred_year)
        if date_result.is_fallback:
            result.errors.append(f"Unreadable date '{match.group(0)}', used today's date")

        direction = detect_direction(row.text, description)
        try:
            candidate = TransactionCandidate(
                date=date_result.value,
                description=description,
                amount=amount,
                direction=direction,
                category=categorize(description, direction == Direction.INCOME, overrides),
                confidence=POSITIONAL_CONFIDENCE,
                source=CandidateSource.POSITIONAL_PDF,
            )
        except ModelValidationError as e:
            result.skip(f"Row '{row.text[:60]}': {e.errors()[0]['msg']}")
            continue

        result.transactions.append(candidate)

    log_parse_result(result, "Positional PDF")
    return result
