"""Parser for spreadsheet statement exports (xlsx, xls, csv)."""

import csv
import re
from dataclasses import dataclass
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import Any

import pandas as pd
from pydantic import ValidationError as ModelValidationError

from statement_ingest.models import (
    CandidateSource,
    Direction,
    DocumentContext,
    DocumentFormat,
    TransactionCandidate,
)
from statement_ingest.parsers.dates import excel_serial_to_date, infer_statement_year, normalize_date
from statement_ingest.parsers.validation import (
    ParseResult,
    ValidationError,
    decode_text_contents,
    log_parse_result,
    logger,
    parse_amount_safe,
    validate_date,
)
from statement_ingest.services.categorizer import categorize, parse_import_rules

TABULAR_CONFIDENCE = 0.9

HEADER_KEYWORDS = ["date", "description", "narration", "amount", "debit", "credit", "balance", "value", "remarks"]
HEADER_SCAN_ROWS = 50
MIN_HEADER_HITS = 3

# Checked keyword-first, so "narration" beats a "Transaction Type" column
DATE_KEYWORDS = ["date", "time"]
DESCRIPTION_KEYWORDS = ["narration", "description", "desc", "remarks", "details", "particulars", "transaction"]
CREDIT_KEYWORDS = ["money in", "credit", "deposit", "paid in", "inflow"]
DEBIT_KEYWORDS = ["money out", "debit", "withdrawal", "paid out", "outflow"]
AMOUNT_KEYWORDS = ["amount", "value", "tran amt"]
TYPE_KEYWORDS = ["type", "cr/dr", "dr/cr", "indicator", "direction"]

_CR_DR_PAIR_RE = re.compile(r"\b(?:cr\s*/\s*dr|dr\s*/\s*cr)\b")
_SERIAL_RE = re.compile(r"^\d{5}(?:\.\d+)?$")


@dataclass
class ColumnMap:
    """Column index for each role; None when the header has no such column."""

    date: int
    description: int
    amount: int
    credit: int | None = None
    debit: int | None = None
    type: int | None = None


def load_rows(contents: bytes, fmt: DocumentFormat) -> list[list[Any]]:
    """
    Load the first sheet (or the CSV) as a list of raw rows.

    Raises:
        ValidationError: If the workbook cannot be read
    """
    if fmt == DocumentFormat.CSV:
        text = decode_text_contents(contents)
        return [[cell if cell.strip() else None for cell in row] for row in csv.reader(StringIO(text))]

    try:
        df = pd.read_excel(BytesIO(contents), sheet_name=0, header=None)
    except Exception as e:
        raise ValidationError(f"Could not read spreadsheet: {e}") from e

    df = df.astype(object).where(pd.notna(df), None)
    return df.values.tolist()


def _cell_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _row_text(row: list[Any]) -> str:
    return " ".join(_cell_text(cell) for cell in row if _cell_text(cell))


def find_header_row(rows: list[list[Any]]) -> int:
    """Index of the first row (within the first 50) that looks like a header."""
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        line = _row_text(row).lower()
        hits = sum(1 for keyword in HEADER_KEYWORDS if keyword in line)
        if hits >= MIN_HEADER_HITS:
            return index
    return 0


def _find_column(
    header: list[str],
    taken: set[int],
    keywords: list[str],
    words: tuple[str, ...] = (),
    skip: re.Pattern | None = None,
) -> int | None:
    for keyword in keywords:
        for index, cell in enumerate(header):
            if index not in taken and keyword in cell and not (skip and skip.search(cell)):
                return index

    for index, cell in enumerate(header):
        if index in taken or (skip and skip.search(cell)):
            continue
        if set(re.findall(r"[a-z]+", cell)) & set(words):
            return index

    return None


def map_columns(header: list[Any]) -> ColumnMap:
    """
    Assign a role to each header column.

    Roles are claimed in priority order (date, description, credit, debit,
    amount, type) and a column holds at most one role. The short markers
    "cr"/"dr" only match as whole words.
    """
    cells = [_cell_text(cell).lower() for cell in header]
    taken: set[int] = set()

    def claim(index: int | None) -> int | None:
        if index is not None:
            taken.add(index)
        return index

    date_idx = claim(_find_column(cells, taken, DATE_KEYWORDS))
    desc_idx = claim(_find_column(cells, taken, DESCRIPTION_KEYWORDS))
    credit_idx = claim(_find_column(cells, taken, CREDIT_KEYWORDS, words=("cr",), skip=_CR_DR_PAIR_RE))
    debit_idx = claim(_find_column(cells, taken, DEBIT_KEYWORDS, words=("dr",), skip=_CR_DR_PAIR_RE))
    amount_idx = claim(_find_column(cells, taken, AMOUNT_KEYWORDS))
    type_idx = claim(_find_column(cells, taken, TYPE_KEYWORDS))

    return ColumnMap(
        date=date_idx if date_idx is not None else 0,
        description=desc_idx if desc_idx is not None else 1,
        amount=amount_idx if amount_idx is not None else 2,
        credit=credit_idx,
        debit=debit_idx,
        type=type_idx,
    )


def _cell(row: list[Any], index: int | None) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


def _numeric_cell_date(value: float) -> date | None:
    """Numeric date cell: YYYYMMDD integers first, then spreadsheet serials."""
    if float(value).is_integer() and len(str(int(value))) == 8:
        try:
            return datetime.strptime(str(int(value)), "%Y%m%d").date()
        except ValueError:
            pass
    try:
        return excel_serial_to_date(value)
    except ValueError:
        return None


def _parse_cell_date(value: Any, context_year: int | None) -> date | None:
    """Spreadsheet date cell to a date; None when it cannot be read."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _numeric_cell_date(value)

    text = _cell_text(value)
    if not text:
        return None
    if _SERIAL_RE.match(text):
        return excel_serial_to_date(float(text))

    result = normalize_date(text, context_year)
    return None if result.is_fallback else result.value


def _detect_income(row: list[Any], columns: ColumnMap, description: str) -> bool:
    """Direction for single-amount-column sheets."""
    type_text = _cell_text(_cell(row, columns.type)).lower()
    if type_text:
        words = set(re.findall(r"[a-z]+", type_text))
        if words & {"cr", "credit", "in", "inflow", "deposit"}:
            return True
        if words & {"dr", "debit", "out", "outflow", "withdrawal"}:
            return False

    lower = description.lower()
    if any(keyword in lower for keyword in ("salary", "credit", "payment from")):
        return True
    return False


def parse_rows(rows: list[list[Any]], context: DocumentContext) -> ParseResult:
    """Turn raw spreadsheet rows into transaction candidates."""
    result = ParseResult(transactions=[])

    if not rows:
        logger.warning("Tabular: No rows found")
        return result

    if context.inferred_year is None:
        context.inferred_year = infer_statement_year(_row_text(row) for row in rows)

    header_idx = find_header_row(rows)
    columns = map_columns(rows[header_idx])
    logger.debug(f"Tabular: header at row {header_idx}, columns {columns}")

    overrides = parse_import_rules(context.account.import_rules)

    for offset, row in enumerate(rows[header_idx + 1 :], start=header_idx + 2):
        result.total_rows_processed += 1

        if not row or not _row_text(row):
            result.skip(f"Row {offset}: Empty row")
            continue

        date_value = _cell(row, columns.date)
        txn_date = _parse_cell_date(date_value, context.inferred_year)
        if txn_date is None or not validate_date(txn_date):
            result.skip(f"Row {offset}: Invalid date '{date_value}'")
            continue

        description = _cell_text(_cell(row, columns.description))
        if not description:
            description = _cell_text(_cell(row, columns.description + 1))

        # A zero in a credit/debit column means the other side holds the amount
        amount, is_income = None, False
        credit, credit_ok = parse_amount_safe(_cell(row, columns.credit))
        if credit_ok:
            amount, is_income = credit, True
        else:
            debit, debit_ok = parse_amount_safe(_cell(row, columns.debit))
            if debit_ok:
                amount, is_income = debit, False
            else:
                single, single_ok = parse_amount_safe(_cell(row, columns.amount))
                if single_ok:
                    amount, is_income = single, _detect_income(row, columns, description)

        if amount is None:
            result.skip(f"Row {offset}: No amount")
            continue

        try:
            candidate = TransactionCandidate(
                date=txn_date,
                description=description,
                amount=amount,
                direction=Direction.INCOME if is_income else Direction.EXPENSE,
                category=categorize(description, is_income, overrides),
                confidence=TABULAR_CONFIDENCE,
                source=CandidateSource.TABULAR,
            )
        except ModelValidationError as e:
            result.skip(f"Row {offset}: {e.errors()[0]['msg']}")
            continue

        result.transactions.append(candidate)

    log_parse_result(result, "Tabular")
    return result


def parse_tabular(contents: bytes, context: DocumentContext) -> ParseResult:
    """
    Parse a spreadsheet export into candidates.

    Raises:
        ValidationError: If the file cannot be read at all
    """
    rows = load_rows(contents, context.format)
    return parse_rows(rows, context)
