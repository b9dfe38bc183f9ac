"""Statement extraction pipeline: routes a document through the parser tiers."""

import logging
from typing import Any

from statement_ingest.config import settings
from statement_ingest.db.sqlite import get_db
from statement_ingest.errors import (
    AllProvidersFailed,
    IngestError,
    InsufficientCredits,
    NoTransactionsFound,
    UnparseableDocument,
)
from statement_ingest.models import (
    AccountContext,
    DocumentContext,
    DocumentFormat,
    ExtractionFailure,
    ExtractionResponse,
    ProviderAttempt,
)
from statement_ingest.parsers.dates import infer_statement_year
from statement_ingest.parsers.generic_text import parse_generic_text
from statement_ingest.parsers.llm_client import ExtractionOrchestrator
from statement_ingest.parsers.positional import extract_pdf_text, extract_pdf_tokens, parse_positional
from statement_ingest.parsers.tabular import load_rows, parse_tabular
from statement_ingest.parsers.validation import (
    ParseResult,
    ValidationError,
    decode_text_contents,
    validate_file_contents,
)
from statement_ingest.services.quota import QuotaGate

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


def _failure(error: IngestError, attempts: list[ProviderAttempt] | None = None) -> ExtractionResponse:
    return ExtractionResponse(
        status="error",
        attempts=attempts or [],
        error=ExtractionFailure(kind=error.kind.value, message=error.message),
    )


def _parse_warnings(result: ParseResult) -> list[str]:
    warnings = list(result.errors)
    if result.rows_skipped:
        warnings.append(f"{result.rows_skipped} rows skipped")
    return warnings


def _run_structural(contents: bytes, context: DocumentContext) -> tuple[ParseResult, str | None]:
    """Run the deterministic parsers for the declared format."""
    fmt = context.format
    try:
        if fmt.is_spreadsheet:
            return parse_tabular(contents, context), "tabular"

        if fmt == DocumentFormat.PDF:
            result = parse_positional(extract_pdf_tokens(contents), context)
            if result.transactions:
                return result, "positional-pdf"
            logger.info("Positional parser found nothing, trying generic text")
            return parse_generic_text(extract_pdf_text(contents), context), "generic-text"

        return parse_generic_text(decode_text_contents(contents), context), "generic-text"
    except ValidationError as e:
        logger.warning(f"Structural parsing failed: {e}")
        result = ParseResult(transactions=[])
        result.errors.append(str(e))
        return result, None


def _cell_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def build_ai_content(contents: bytes, context: DocumentContext) -> tuple[str, bytes | None, str]:
    """
    Render a document for a provider.

    Returns:
        Tuple of (text, raw bytes to attach or None, MIME type)

    Raises:
        ValidationError: If the document cannot be read
    """
    fmt = context.format
    if fmt == DocumentFormat.PDF:
        text = extract_pdf_text(contents)
        single_chunk = len(text) <= settings.ai_chunk_threshold
        binary = contents if settings.ai_send_pdf_binary and single_chunk else None
        return text, binary, PDF_MIME_TYPE

    if fmt.is_spreadsheet:
        rows = load_rows(contents, fmt)
        lines = [" | ".join(_cell_text(cell) for cell in row) for row in rows]
        return "\n".join(line for line in lines if line.strip(" |")), None, "text/plain"

    return decode_text_contents(contents), None, "text/plain"


async def _run_ai(
    contents: bytes,
    context: DocumentContext,
    orchestrator: ExtractionOrchestrator,
    quota: QuotaGate,
    warnings: list[str],
) -> ExtractionResponse:
    account_id = context.account.account_id

    try:
        quota.check(account_id)
    except InsufficientCredits as e:
        return _failure(e)

    try:
        text, binary, mime_type = build_ai_content(contents, context)
    except ValidationError as e:
        return _failure(UnparseableDocument(str(e)))

    if context.inferred_year is None:
        context.inferred_year = infer_statement_year(text.splitlines())

    try:
        result = await orchestrator.extract_document(text, context, binary=binary, mime_type=mime_type)
    except AllProvidersFailed as e:
        if isinstance(e.last_error, NoTransactionsFound):
            return _failure(NoTransactionsFound(), attempts=e.attempts)
        return _failure(e, attempts=e.attempts)

    # Charge only once a provider actually delivered transactions
    try:
        balance = quota.debit(account_id)
    except InsufficientCredits as e:
        return _failure(e, attempts=result.attempts)

    logger.info(f"🤖 AI extraction via {', '.join(result.providers)}: {len(result.transactions)} transactions")
    return ExtractionResponse(
        transactions=result.transactions,
        warnings=warnings + result.warnings,
        source_tier="ai",
        credits_remaining=balance,
        attempts=result.attempts,
    )


async def run_extraction(
    contents: bytes,
    fmt: DocumentFormat,
    account: AccountContext | None = None,
    *,
    use_ai: bool = False,
    orchestrator: ExtractionOrchestrator | None = None,
    quota: QuotaGate | None = None,
) -> ExtractionResponse:
    """
    Extract transactions from one uploaded document.

    Structural parsers run first unless AI is requested. AI extraction is
    used on request, or when the structural tiers find nothing and a
    provider is configured. Domain failures come back as an error
    response, never as an exception.
    """
    account = account or AccountContext()
    context = DocumentContext(format=fmt, account=account)

    try:
        validate_file_contents(contents, min_size=1)
    except ValidationError as e:
        return _failure(UnparseableDocument(str(e)))

    if orchestrator is None:
        orchestrator = ExtractionOrchestrator.from_settings(settings)

    def get_quota() -> QuotaGate:
        return quota if quota is not None else QuotaGate(get_db())

    warnings: list[str] = []

    if use_ai:
        if orchestrator.available:
            return await _run_ai(contents, context, orchestrator, get_quota(), warnings)
        warnings.append("AI extraction is not configured; used structural parsers")

    result, tier = _run_structural(contents, context)
    if result.transactions:
        return ExtractionResponse(
            transactions=result.transactions,
            warnings=warnings + _parse_warnings(result),
            source_tier=tier,
        )

    if orchestrator.available and not use_ai:
        logger.info("Structural parsers found no transactions, escalating to AI")
        warnings.append("Structural parsers found no transactions; used AI extraction")
        return await _run_ai(contents, context, orchestrator, get_quota(), warnings)

    return _failure(UnparseableDocument())
