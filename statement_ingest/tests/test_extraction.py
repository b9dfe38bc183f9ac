"""End-to-end tests for the extraction pipeline."""

import json
from datetime import date
from io import BytesIO
from unittest.mock import AsyncMock, patch

import pytest
from openpyxl import Workbook

from statement_ingest.db.sqlite import Database
from statement_ingest.errors import ProviderFailed, ProviderRateLimited
from statement_ingest.models import AccountContext, CandidateSource, Direction, DocumentFormat, TaxCategory
from statement_ingest.parsers.llm_client import ExtractionOrchestrator, ExtractionProvider
from statement_ingest.parsers.positional import TextToken
from statement_ingest.services.extraction import run_extraction
from statement_ingest.services.quota import QuotaGate

AI_RESPONSE = json.dumps(
    {
        "transactions": [
            {"date": "2025-03-15", "description": "POS Purchase Shoprite", "amount": 12500, "is_income": False, "category": "food"},
            {"date": "2025-03-16", "description": "Salary March", "amount": 450000, "is_income": True, "category": "salary"},
        ]
    }
)


class ScriptedProvider(ExtractionProvider):
    def __init__(self, name: str, outcomes: list):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls = 0

    async def complete(self, messages):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def quota(tmp_path):
    database = Database(db_path=tmp_path / "credits.db", default_balance=0)
    database.set_credit_balance("acct", 5)
    return QuotaGate(database)


def _orchestrator(*providers) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(list(providers), sleep=AsyncMock())


ACCOUNT = AccountContext(account_id="acct")


class TestStructuralExtraction:
    """Documents handled without AI."""

    @pytest.mark.asyncio
    async def test_csv_money_in_row(self, quota):
        contents = b"Date, Narration, Money In, Money Out\n01/03/2025, Salary Payment, 500000, \n"

        response = await run_extraction(contents, DocumentFormat.CSV, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert response.status == "ok"
        assert response.source_tier == "tabular"
        assert response.credits_remaining is None
        txn = response.transactions[0]
        assert (txn.date, txn.description, txn.amount) == (date(2025, 3, 1), "Salary Payment", 500000)
        assert txn.direction == Direction.INCOME
        assert txn.category == TaxCategory.SALARY
        assert quota.balance("acct") == 5

    @pytest.mark.asyncio
    async def test_pdf_positional_row(self, quota):
        tokens = [
            TextToken("Account Statement March 2025", 50, 80),
            TextToken("15-Mar", 50, 200),
            TextToken("POS Purchase Shoprite", 120, 200),
            TextToken("12,500.00", 400, 200),
        ]
        with patch("statement_ingest.services.extraction.extract_pdf_tokens", return_value=tokens):
            response = await run_extraction(b"%PDF-1.4", DocumentFormat.PDF, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert response.source_tier == "positional-pdf"
        txn = response.transactions[0]
        assert txn.date == date(2025, 3, 15)
        assert txn.amount == 12500.00
        assert txn.direction == Direction.EXPENSE
        assert txn.category == TaxCategory.BUSINESS_EXPENSES

    @pytest.mark.asyncio
    async def test_pdf_falls_back_to_generic_text(self, quota):
        with patch("statement_ingest.services.extraction.extract_pdf_tokens", return_value=[]), patch(
            "statement_ingest.services.extraction.extract_pdf_text",
            return_value="Statement 2025\n02/03/2025 Uber trip to Lekki 3,500.00",
        ):
            response = await run_extraction(b"%PDF-1.4", DocumentFormat.PDF, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert response.source_tier == "generic-text"
        assert response.transactions[0].source == CandidateSource.GENERIC_TEXT

    @pytest.mark.asyncio
    async def test_skipped_rows_are_reported_as_warnings(self, quota):
        contents = b"Date,Narration,Money Out\n01/03/2025,Fuel,5000\nnot a date,Nothing,1\n"

        response = await run_extraction(contents, DocumentFormat.CSV, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert len(response.transactions) == 1
        assert response.degraded is True
        assert "1 rows skipped" in response.warnings

    @pytest.mark.asyncio
    async def test_unparseable_without_ai(self, quota):
        response = await run_extraction(b"nothing useful here", DocumentFormat.TEXT, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert response.status == "error"
        assert response.error.kind == "UnparseableDocument"
        assert response.error.message == "No transactions could be extracted; try a different file"

    @pytest.mark.asyncio
    async def test_xlsx_with_numeric_dates(self, quota):
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(["Date", "Narration", "Money In", "Money Out"])
        sheet.append([20250301, "Salary Payment", 500000, None])
        sheet.append([987654321, "Reference line", None, 100])
        buffer = BytesIO()
        workbook.save(buffer)

        response = await run_extraction(buffer.getvalue(), DocumentFormat.XLSX, ACCOUNT, orchestrator=_orchestrator(), quota=quota)

        assert response.status == "ok"
        assert [t.date for t in response.transactions] == [date(2025, 3, 1)]
        assert "1 rows skipped" in response.warnings

    @pytest.mark.asyncio
    async def test_empty_file(self, quota):
        response = await run_extraction(b"", DocumentFormat.CSV, ACCOUNT, orchestrator=_orchestrator(), quota=quota)
        assert response.error.kind == "UnparseableDocument"


class TestAiExtraction:
    """Documents routed through the provider chain."""

    @pytest.mark.asyncio
    async def test_rate_limited_provider_recovers_and_debits_once(self, quota):
        provider = ScriptedProvider("kimi", [ProviderRateLimited(), ProviderRateLimited(), AI_RESPONSE])

        response = await run_extraction(
            b"some statement text", DocumentFormat.TEXT, ACCOUNT, use_ai=True, orchestrator=_orchestrator(provider), quota=quota
        )

        assert response.status == "ok"
        assert response.source_tier == "ai"
        assert len(response.transactions) == 2
        assert [a.outcome.value for a in response.attempts] == ["rate-limited", "rate-limited", "success"]
        assert response.credits_remaining == 4
        assert quota.balance("acct") == 4

    @pytest.mark.asyncio
    async def test_insufficient_credits_skips_extraction(self, quota):
        provider = ScriptedProvider("kimi", [AI_RESPONSE])
        broke = AccountContext(account_id="broke")

        response = await run_extraction(
            b"some statement text", DocumentFormat.TEXT, broke, use_ai=True, orchestrator=_orchestrator(provider), quota=quota
        )

        assert response.error.kind == "InsufficientCredits"
        assert response.error.message == "Insufficient credits for AI extraction. Please top up."
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_all_providers_failed_does_not_debit(self, quota):
        providers = [ScriptedProvider("kimi", [ProviderFailed("down")]), ScriptedProvider("openai", [ProviderFailed("down")])]

        response = await run_extraction(
            b"some statement text", DocumentFormat.TEXT, ACCOUNT, use_ai=True, orchestrator=_orchestrator(*providers), quota=quota
        )

        assert response.error.kind == "AllProvidersFailed"
        assert len(response.attempts) == 2
        assert quota.balance("acct") == 5

    @pytest.mark.asyncio
    async def test_no_transactions_from_any_provider(self, quota):
        provider = ScriptedProvider("kimi", ['{"transactions": []}'])

        response = await run_extraction(
            b"some statement text", DocumentFormat.TEXT, ACCOUNT, use_ai=True, orchestrator=_orchestrator(provider), quota=quota
        )

        assert response.error.kind == "NoTransactionsFound"
        assert quota.balance("acct") == 5

    @pytest.mark.asyncio
    async def test_structural_miss_escalates_to_ai(self, quota):
        provider = ScriptedProvider("openai", [AI_RESPONSE])

        response = await run_extraction(
            b"a statement layout no regex understands", DocumentFormat.TEXT, ACCOUNT, orchestrator=_orchestrator(provider), quota=quota
        )

        assert response.source_tier == "ai"
        assert response.credits_remaining == 4
        assert any("used AI extraction" in warning for warning in response.warnings)

    @pytest.mark.asyncio
    async def test_ai_requested_but_not_configured(self, quota):
        contents = b"Date,Narration,Money Out\n01/03/2025,Fuel,5000\n"

        response = await run_extraction(contents, DocumentFormat.CSV, ACCOUNT, use_ai=True, orchestrator=_orchestrator(), quota=quota)

        assert response.source_tier == "tabular"
        assert "AI extraction is not configured" in response.warnings[0]

    @pytest.mark.asyncio
    async def test_spreadsheet_is_rendered_as_rows(self, quota):
        provider = ScriptedProvider("openai", [AI_RESPONSE])
        provider.complete = AsyncMock(return_value=AI_RESPONSE)
        contents = b"Date,Narration,Money Out\n01/03/2025,Fuel,5000\n"

        await run_extraction(contents, DocumentFormat.CSV, ACCOUNT, use_ai=True, orchestrator=_orchestrator(provider), quota=quota)

        prompt = provider.complete.await_args.args[0][1]["content"]
        assert "01/03/2025 | Fuel | 5000" in prompt
