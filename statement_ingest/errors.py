"""Error taxonomy for the extraction pipeline."""

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from statement_ingest.models import ProviderAttempt


class ErrorKind(str, Enum):
    NO_TRANSACTIONS_FOUND = "NoTransactionsFound"
    PROVIDER_RATE_LIMITED = "ProviderRateLimited"
    PROVIDER_FAILED = "ProviderFailed"
    ALL_PROVIDERS_FAILED = "AllProvidersFailed"
    MALFORMED_OUTPUT = "MalformedOutput"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    UNPARSEABLE_DOCUMENT = "UnparseableDocument"


class IngestError(Exception):
    """Base class for pipeline errors. The message is safe to show users."""

    kind: ErrorKind = ErrorKind.PROVIDER_FAILED
    user_message: str = "Extraction failed; please try again"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class NoTransactionsFound(IngestError):
    """A parser or provider ran but produced zero candidates."""

    kind = ErrorKind.NO_TRANSACTIONS_FOUND
    user_message = "No transactions found in this document"


class ProviderFailed(IngestError):
    """Hard failure of a single provider; the chain moves on."""

    kind = ErrorKind.PROVIDER_FAILED
    user_message = "The extraction service failed"


class ProviderRateLimited(IngestError):
    """Transient rate-limit signal; retried against the same provider."""

    kind = ErrorKind.PROVIDER_RATE_LIMITED
    user_message = "The extraction service is busy"


class MalformedOutput(ProviderFailed):
    """Provider output could not be parsed even after repair."""

    kind = ErrorKind.MALFORMED_OUTPUT
    user_message = "The extraction service returned unreadable output"


class AllProvidersFailed(IngestError):
    """Every provider in the fallback chain failed."""

    kind = ErrorKind.ALL_PROVIDERS_FAILED
    user_message = "AI extraction is unavailable right now; try again later"

    def __init__(
        self,
        last_error: Exception | None = None,
        attempts: list["ProviderAttempt"] | None = None,
    ):
        self.last_error = last_error
        self.attempts = attempts or []
        detail = f" (last error: {summarize_error(last_error)})" if last_error else ""
        super().__init__(f"{self.user_message}{detail}")


class InsufficientCredits(IngestError):
    kind = ErrorKind.INSUFFICIENT_CREDITS
    user_message = "Insufficient credits for AI extraction. Please top up."


class UnparseableDocument(IngestError):
    kind = ErrorKind.UNPARSEABLE_DOCUMENT
    user_message = "No transactions could be extracted; try a different file"


def summarize_error(error: Exception, limit: int = 160) -> str:
    """Single-line error summary without stack traces."""
    text = str(error).splitlines()[0] if str(error) else type(error).__name__
    return text if len(text) <= limit else text[: limit - 3] + "..."
