"""Wallet ledger: credits and debits user wallets.

The ledger is the only owner of wallet balances. Every posting may carry a
reference id; posting the same (user, type, reference id) twice returns the
original transaction instead of moving money again, which is what makes
settlement safe to retry.
"""

import sqlite3
import uuid
from typing import Any, Optional

from src.config import config
from src.database import Database
from src.errors import TransientError, ValidationError
from src.logging_utils import get_logger
from src.models import LedgerResult, WalletTransaction

logger = get_logger(__name__)


class WalletLedger:
    """Posts wallet transactions."""

    def __init__(self, database: Database, currency: Optional[str] = None):
        self.db = database
        self.currency = currency or config.ledger_currency

    async def credit(
        self,
        user_id: str,
        amount: int,
        description: str,
        category: str = "General",
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        """Credit a user's wallet.

        Args:
            user_id: Wallet owner.
            amount: Positive amount in minor units.
            description: Human-readable description.
            category: Transaction category.
            reference_id: Idempotency key; repeated postings are not applied twice.
            metadata: Extra context stored with the transaction.

        Returns:
            The posted (or previously posted) transaction and the new balance.
        """
        return await self._post("credit", user_id, amount, description, category, reference_id, metadata)

    async def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        category: str = "General",
        reference_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LedgerResult:
        """Debit a user's wallet.

        Raises:
            InsufficientBalanceError: If the balance does not cover the amount.
        """
        return await self._post("debit", user_id, amount, description, category, reference_id, metadata)

    async def get_balance(self, user_id: str) -> int:
        try:
            return await self.db.get_balance(user_id)
        except sqlite3.OperationalError as e:
            raise TransientError(f"Ledger unavailable: {e}") from e

    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        try:
            return await self.db.list_transactions(user_id)
        except sqlite3.OperationalError as e:
            raise TransientError(f"Ledger unavailable: {e}") from e

    async def _post(
        self,
        tx_type: str,
        user_id: str,
        amount: int,
        description: str,
        category: str,
        reference_id: Optional[str],
        metadata: Optional[dict[str, Any]],
    ) -> LedgerResult:
        if not user_id or not description:
            raise ValidationError("Missing required fields: userId, amount, description")
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0", field="amount")

        transaction = WalletTransaction(
            id=f"tx-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            type=tx_type,
            amount=amount,
            currency=self.currency,
            description=description,
            category=category,
            reference_id=reference_id,
            metadata=metadata or {},
        )
        logger.info(f"Posting {tx_type} of {amount} {self.currency} for {user_id} (ref={reference_id})")

        try:
            return await self.db.post_transaction(transaction)
        except sqlite3.OperationalError as e:
            logger.error(f"Ledger posting failed for {user_id}: {e}", exc_info=True)
            raise TransientError(f"Ledger unavailable: {e}") from e
