"""Tests for the credit store and quota gate."""

import threading

import pytest

from statement_ingest.db.sqlite import Database
from statement_ingest.errors import InsufficientCredits
from statement_ingest.services.quota import QuotaGate


@pytest.fixture
def database(tmp_path):
    return Database(db_path=tmp_path / "credits.db", default_balance=0)


class TestDatabase:
    """Test credit balance storage."""

    def test_unknown_account_gets_default_balance(self, tmp_path):
        database = Database(db_path=tmp_path / "credits.db", default_balance=3)
        assert database.get_credit_balance("new-user") == 3

    def test_set_and_add_credits(self, database):
        database.set_credit_balance("acct", 5)
        assert database.add_credits("acct", 2) == 7
        assert database.get_credit_balance("acct") == 7

    def test_rejects_negative_balance(self, database):
        with pytest.raises(ValueError):
            database.set_credit_balance("acct", -1)

    def test_debit_decrements(self, database):
        database.set_credit_balance("acct", 2)
        assert database.try_debit_credit("acct") == 1
        assert database.try_debit_credit("acct") == 0

    def test_debit_refused_at_zero(self, database):
        database.set_credit_balance("acct", 0)
        assert database.try_debit_credit("acct") is None
        assert database.get_credit_balance("acct") == 0

    def test_debit_unknown_account(self, database):
        assert database.try_debit_credit("ghost") is None


class TestQuotaGate:
    """Test the credit gate."""

    def test_check_passes_with_credit(self, database):
        database.set_credit_balance("acct", 1)
        assert QuotaGate(database).check("acct") == 1

    def test_check_raises_without_credit(self, database):
        with pytest.raises(InsufficientCredits):
            QuotaGate(database).check("broke")

    def test_debit_returns_new_balance(self, database):
        database.set_credit_balance("acct", 4)
        assert QuotaGate(database).debit("acct") == 3

    def test_debit_raises_when_exhausted(self, database):
        database.set_credit_balance("acct", 0)
        with pytest.raises(InsufficientCredits):
            QuotaGate(database).debit("acct")

    def test_concurrent_debits_never_overspend(self, database):
        """50 threads racing for 10 credits: exactly 10 succeed, balance ends at 0."""
        database.set_credit_balance("shared", 10)
        gate = QuotaGate(database)
        barrier = threading.Barrier(50)
        successes, refusals = [], []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                balance = gate.debit("shared")
            except InsufficientCredits:
                with lock:
                    refusals.append(1)
            else:
                with lock:
                    successes.append(balance)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 10
        assert len(refusals) == 40
        assert sorted(successes) == list(range(10))
        assert database.get_credit_balance("shared") == 0
