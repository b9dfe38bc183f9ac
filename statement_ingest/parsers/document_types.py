"""Pydantic models for LLM-based document parsing."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from statement_ingest.parsers.validation import clean_amount_string


class RawTransaction(BaseModel):
    """Raw transaction data extracted from a statement via LLM."""

    date: str = Field(min_length=1)
    description: str = Field(min_length=1)
    amount: float
    is_income: bool
    category: str | None = None
    reasoning: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("amount", mode="before")
    @classmethod
    def _clean_amount(cls, value: Any) -> Any:
        # Models sometimes return "₦12,500.00" instead of a number
        if isinstance(value, str):
            return clean_amount_string(value)
        return value

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description is blank")
        return stripped


class ClassificationResult(BaseModel):
    """Single-transaction classification returned by an LLM."""

    category: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str | None = None
