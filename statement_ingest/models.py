"""Data models for statement-ingest."""

from datetime import date
from enum import Enum
from pathlib import PurePath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Direction(str, Enum):
    """Whether money came in or went out."""

    INCOME = "income"
    EXPENSE = "expense"


class TaxCategory(str, Enum):
    """Fixed tax taxonomy every candidate is mapped onto."""

    # Income
    SALARY = "salary"
    BUSINESS_REVENUE = "business revenue"
    FREELANCE_INCOME = "freelance income"
    FOREIGN_INCOME = "foreign income"
    CAPITAL_GAINS = "capital gains"
    CRYPTO_SALE = "crypto sale"
    OTHER_INCOME = "other income"

    # Expenses
    TRANSPORTATION = "transportation"
    FOOD = "food"
    RENT = "rent"
    UTILITIES = "utilities"
    BANK_CHARGES = "bank_charges"
    TAX_PAYMENTS = "tax_payments"
    SUBSCRIPTIONS = "subscriptions"
    PENSION_CONTRIBUTIONS = "pension contributions"
    NHF_CONTRIBUTIONS = "nhf_contributions"
    PROFESSIONAL_FEES = "professional_fees"
    MAINTENANCE = "maintenance"
    HEALTH = "health"
    DONATIONS = "donations"
    BUSINESS_EXPENSES = "business expenses"
    INSURANCE = "insurance"
    TRANSFERS = "transfers"
    CRYPTO_PURCHASE = "crypto purchase"
    PERSONAL_EXPENSE = "personal expense"
    MISCELLANEOUS = "miscellaneous"


# Provider spellings that differ from the canonical value
_CATEGORY_ALIASES = {
    "expense": TaxCategory.BUSINESS_EXPENSES,
    "expenses": TaxCategory.BUSINESS_EXPENSES,
    "business expense": TaxCategory.BUSINESS_EXPENSES,
    "misc": TaxCategory.MISCELLANEOUS,
    "transfer": TaxCategory.TRANSFERS,
    "transport": TaxCategory.TRANSPORTATION,
    "bank charges": TaxCategory.BANK_CHARGES,
    "tax payments": TaxCategory.TAX_PAYMENTS,
    "professional fees": TaxCategory.PROFESSIONAL_FEES,
    "nhf contributions": TaxCategory.NHF_CONTRIBUTIONS,
    "pension": TaxCategory.PENSION_CONTRIBUTIONS,
    "revenue": TaxCategory.BUSINESS_REVENUE,
}


def _category_key(value: str) -> str:
    return " ".join(value.strip().lower().replace("_", " ").split())


_CATEGORY_LOOKUP = {_category_key(c.value): c for c in TaxCategory}
_CATEGORY_LOOKUP.update(_CATEGORY_ALIASES)


def coerce_category(value: str | None) -> TaxCategory | None:
    """Map a free-form category string onto the taxonomy, or None if unknown."""
    if not value:
        return None
    return _CATEGORY_LOOKUP.get(_category_key(value))


class CandidateSource(str, Enum):
    """Which stage produced a candidate."""

    POSITIONAL_PDF = "positional-pdf"
    TABULAR = "tabular"
    GENERIC_TEXT = "generic-text"
    AI = "ai"
    RULE_FALLBACK = "rule-fallback"


class TransactionCandidate(BaseModel):
    """One extracted financial movement."""

    model_config = ConfigDict(frozen=True)

    date: date
    description: str = Field(min_length=1)
    amount: float = Field(gt=0)  # Magnitude only, sign lives in direction
    direction: Direction
    category: TaxCategory = TaxCategory.MISCELLANEOUS
    confidence: float = Field(ge=0.0, le=1.0)
    source: CandidateSource
    reasoning: str | None = None

    @field_validator("date")
    @classmethod
    def _year_in_range(cls, value: date) -> date:
        if not 1990 < value.year < 2100:
            raise ValueError(f"year {value.year} outside 1991-2099")
        return value

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description is blank")
        return stripped

    @property
    def is_income(self) -> bool:
        return self.direction == Direction.INCOME


class EmploymentType(str, Enum):
    SALARY_EARNER = "salary_earner"
    SELF_EMPLOYED = "self_employed"
    BUSINESS_OWNER = "business_owner"
    REMOTE_WORKER = "remote_worker"


class AccountType(str, Enum):
    PERSONAL = "personal"
    BUSINESS = "business"
    MIXED = "mixed"


class AccountContext(BaseModel):
    """Caller-provided context about the account a document belongs to."""

    account_id: str = "anonymous"
    employment_type: EmploymentType | None = None
    account_type: AccountType = AccountType.MIXED
    import_rules: str | None = None  # Free text "keyword -> category" lines


class DocumentFormat(str, Enum):
    """Declared format of an uploaded document."""

    PDF = "pdf"
    XLSX = "xlsx"
    XLS = "xls"
    CSV = "csv"
    TEXT = "text"

    @property
    def is_spreadsheet(self) -> bool:
        return self in (DocumentFormat.XLSX, DocumentFormat.XLS, DocumentFormat.CSV)

    @classmethod
    def from_filename(cls, filename: str, mime_type: str | None = None) -> "DocumentFormat":
        """Detect format from the extension first, then the MIME type."""
        suffix = PurePath(filename or "").suffix.lower().lstrip(".")
        if suffix in ("pdf", "xlsx", "xls", "csv"):
            return cls(suffix)
        if suffix == "txt":
            return cls.TEXT

        mime = (mime_type or "").lower()
        if mime == "application/pdf":
            return cls.PDF
        if "spreadsheetml" in mime:
            return cls.XLSX
        if mime == "application/vnd.ms-excel":
            return cls.XLS
        if mime == "text/csv":
            return cls.CSV
        return cls.TEXT


class DocumentContext(BaseModel):
    """Per-document state built once and shared by every stage of one run."""

    format: DocumentFormat
    account: AccountContext = Field(default_factory=AccountContext)
    inferred_year: int | None = None


class ProviderOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate-limited"
    FAILED = "failed"


class ProviderAttempt(BaseModel):
    """One call to one provider during a single extraction."""

    provider: str
    position: int  # Index in the fallback chain
    retry: int = 0  # 0 for the first try against this provider
    outcome: ProviderOutcome
    error: str | None = None


class ExtractionFailure(BaseModel):
    """Structured failure returned to the caller."""

    kind: str
    message: str


class ExtractionResponse(BaseModel):
    """Result of one pipeline run: either transactions or a failure."""

    status: Literal["ok", "error"] = "ok"
    transactions: list[TransactionCandidate] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    source_tier: str | None = None
    credits_remaining: int | None = None
    attempts: list[ProviderAttempt] = Field(default_factory=list)
    error: ExtractionFailure | None = None

    @property
    def degraded(self) -> bool:
        """True when the run completed but something was skipped or defaulted."""
        return self.status == "ok" and bool(self.warnings)


class ClassifyRequest(BaseModel):
    """Single transaction classification request."""

    description: str = Field(min_length=1)
    is_income: bool = False
    account_type: AccountType = AccountType.MIXED
    employment_type: EmploymentType | None = None


class ClassifyResponse(BaseModel):
    category: TaxCategory
    confidence: float
    reasoning: str | None = None


class CreditBalanceResponse(BaseModel):
    account_id: str
    credit_balance: int
