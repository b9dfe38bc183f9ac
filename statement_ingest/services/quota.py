"""Credit gate for AI-assisted extraction."""

import logging

from statement_ingest.db.sqlite import Database
from statement_ingest.errors import InsufficientCredits

logger = logging.getLogger(__name__)


class QuotaGate:
    """Checks and spends per-account extraction credits."""

    def __init__(self, database: Database):
        self.db = database

    def balance(self, account_id: str) -> int:
        return self.db.get_credit_balance(account_id)

    def check(self, account_id: str) -> int:
        """
        Make sure the account can pay for one AI extraction.

        Raises:
            InsufficientCredits: If the balance is below one credit
        """
        balance = self.balance(account_id)
        if balance < 1:
            logger.info(f"💳 Account {account_id} has no credits left")
            raise InsufficientCredits()
        return balance

    def debit(self, account_id: str) -> int:
        """
        Spend exactly one credit.

        Raises:
            InsufficientCredits: If another request spent the last credit first
        """
        new_balance = self.db.try_debit_credit(account_id)
        if new_balance is None:
            logger.warning(f"💳 Debit refused for {account_id}: balance already exhausted")
            raise InsufficientCredits()

        logger.info(f"💳 Debited 1 credit from {account_id}, {new_balance} remaining")
        return new_balance
