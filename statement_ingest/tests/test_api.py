"""Tests for the FastAPI endpoints."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from statement_ingest.db.sqlite import Database
from statement_ingest.errors import ProviderFailed
from statement_ingest.main import app, get_orchestrator, get_quota_gate
from statement_ingest.parsers.llm_client import ExtractionOrchestrator, ExtractionProvider
from statement_ingest.services.quota import QuotaGate


class StaticProvider(ExtractionProvider):
    def __init__(self, reply):
        self.name = "static"
        self.reply = reply

    async def complete(self, messages):
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


@pytest.fixture
def database(tmp_path):
    database = Database(db_path=tmp_path / "credits.db", default_balance=0)
    database.set_credit_balance("acct", 2)
    return database


@pytest.fixture
def providers() -> list[ExtractionProvider]:
    return []


@pytest.fixture
def client(database, providers):
    app.dependency_overrides[get_quota_gate] = lambda: QuotaGate(database)
    app.dependency_overrides[get_orchestrator] = lambda: ExtractionOrchestrator(providers, sleep=AsyncMock())
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestExtractEndpoint:
    """Test POST /extract."""

    def test_extracts_csv(self, client):
        csv_bytes = b"Date,Narration,Money In,Money Out\n01/03/2025,Salary Payment,500000,\n"
        response = client.post(
            "/extract",
            files={"file": ("statement.csv", csv_bytes, "text/csv")},
            data={"account_id": "acct"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["source_tier"] == "tabular"
        assert body["transactions"][0]["category"] == "salary"
        assert body["transactions"][0]["direction"] == "income"
        assert body["transactions"][0]["date"] == "2025-03-01"

    def test_unparseable_is_422(self, client):
        response = client.post("/extract", files={"file": ("notes.txt", b"hello there", "text/plain")})

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "UnparseableDocument"

    def test_empty_file_is_400(self, client):
        response = client.post("/extract", files={"file": ("statement.csv", b"", "text/csv")})
        assert response.status_code == 400

    def test_insufficient_credits_is_402(self, client, providers):
        providers.append(StaticProvider('{"transactions": []}'))
        response = client.post(
            "/extract",
            files={"file": ("notes.txt", b"hello there", "text/plain")},
            data={"account_id": "nobody", "use_ai": "true"},
        )

        assert response.status_code == 402
        assert response.json()["error"]["kind"] == "InsufficientCredits"

    def test_all_providers_failed_is_502(self, client, providers):
        providers.append(StaticProvider(ProviderFailed("down")))
        response = client.post(
            "/extract",
            files={"file": ("notes.txt", b"hello there", "text/plain")},
            data={"account_id": "acct", "use_ai": "true"},
        )

        assert response.status_code == 502
        assert response.json()["error"]["kind"] == "AllProvidersFailed"

    def test_ai_extraction_reports_credits(self, client, providers, database):
        reply = '{"transactions": [{"date": "2025-03-02", "description": "Uber trip", "amount": 3500, "is_income": false, "category": "transportation"}]}'
        providers.append(StaticProvider(reply))
        response = client.post(
            "/extract",
            files={"file": ("notes.txt", b"02/03 uber", "text/plain")},
            data={"account_id": "acct", "use_ai": "true", "import_rules": "uber -> business expenses"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["credits_remaining"] == 1
        assert body["transactions"][0]["category"] == "business expenses"
        assert database.get_credit_balance("acct") == 1


class TestCreditsEndpoint:
    def test_returns_balance(self, client):
        response = client.get("/credits/acct")
        assert response.status_code == 200
        assert response.json() == {"account_id": "acct", "credit_balance": 2}


class TestClassifyEndpoint:
    def test_classifies_with_provider(self, client, providers):
        providers.append(StaticProvider('{"category": "rent", "confidence": 0.7, "reasoning": "Office"}'))
        response = client.post("/classify", json={"description": "Office space Q1", "is_income": False})

        assert response.status_code == 200
        assert response.json() == {"category": "rent", "confidence": 0.7, "reasoning": "Office"}

    def test_falls_back_to_rules(self, client):
        response = client.post("/classify", json={"description": "Salary March", "is_income": True})

        assert response.status_code == 200
        body = response.json()
        assert body["category"] == "salary"
        assert body["confidence"] == 0.0

    def test_rejects_blank_description(self, client):
        response = client.post("/classify", json={"description": "", "is_income": False})
        assert response.status_code == 422
