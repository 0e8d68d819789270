"""Credit balance checks, debits and the credit ledger."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from static_engine.db.database import Database

logger = logging.getLogger(__name__)

GENERATION_CREDIT_COST = 5
FIX_ERRORS_CREDIT_COST = 2
REGENERATE_CREDIT_COST = 2


class CreditTransactionType(str, Enum):
    GENERATION = "generation"
    FIX_ERRORS = "fix_errors"
    REGENERATE_SINGLE = "regenerate_single"
    REFUND = "refund"


class InsufficientCreditsError(Exception):
    """The user's balance is lower than the cost of the action."""

    def __init__(self, available: int, required: int):
        super().__init__(f"Insufficient credits: {available} available, {required} required")
        self.available = available
        self.required = required


class CreditDebitError(Exception):
    """The debit could not be written (missing user or persistent write conflict)."""

    pass


@dataclass
class CreditDebit:
    """A completed debit, used for the ledger entry and for refunds."""

    user_id: str
    amount: int
    balance_before: int
    balance_after: int


def credit_balance(user: dict[str, Any]) -> int:
    """Remaining credits: plan limit minus used plus add-on credits."""
    return (
        (user.get("credits_limit") or 0)
        - (user.get("credits_used") or 0)
        + (user.get("addon_credits_remaining") or 0)
    )


class CreditService:
    """Debits credits with a read-then-conditional-write on ``credits_used``.

    The write only succeeds if ``credits_used`` still holds the value that was
    read, so two concurrent debits can never both spend the same credits.
    """

    def __init__(self, db: Database, max_retries: int = 3):
        self.db = db
        self.max_retries = max_retries

    async def get_balance(self, user_id: str) -> int:
        user = await self.db.get("users", user_id)
        if user is None:
            raise CreditDebitError(f"User not found: {user_id}")
        return credit_balance(user)

    async def debit(self, user_id: str, amount: int) -> CreditDebit:
        """Deduct ``amount`` credits from ``user_id``.

        Raises:
            InsufficientCreditsError: If the balance is lower than ``amount``
            CreditDebitError: If the user is missing or the write keeps conflicting
        """
        for attempt in range(1, self.max_retries + 1):
            user = await self.db.get("users", user_id)
            if user is None:
                raise CreditDebitError(f"User not found: {user_id}")

            balance = credit_balance(user)
            if balance < amount:
                raise InsufficientCreditsError(balance, amount)

            used = user.get("credits_used")
            updated = await self.db.update(
                "users",
                {"_id": user_id, "credits_used": used},
                {"credits_used": (used or 0) + amount},
            )
            if updated == 1:
                logger.info(
                    f"Debited {amount} credits from user {user_id} "
                    f"(balance {balance} -> {balance - amount})"
                )
                return CreditDebit(
                    user_id=user_id,
                    amount=amount,
                    balance_before=balance,
                    balance_after=balance - amount,
                )

            logger.warning(
                f"Concurrent credit update for user {user_id}, retrying "
                f"({attempt}/{self.max_retries})"
            )

        raise CreditDebitError(f"Could not debit credits for user {user_id}: write conflict")

    async def refund(self, debit: CreditDebit) -> bool:
        """Give back a debit whose work was never queued.

        Returns:
            True if the refund was written
        """
        new_used = await self.db.increment("users", debit.user_id, "credits_used", -debit.amount)
        if new_used is None:
            logger.error(f"Refund of {debit.amount} credits failed: user {debit.user_id} not found")
            return False
        logger.info(f"Refunded {debit.amount} credits to user {debit.user_id}")
        return True

    async def record_transaction(
        self,
        debit: CreditDebit,
        transaction_type: CreditTransactionType,
        reference_id: str,
        reference_type: str,
        refund: bool = False,
    ) -> Optional[dict[str, Any]]:
        """Append a ledger entry. Failures are logged and swallowed.

        Returns:
            The stored entry, or None if the write failed
        """
        amount = debit.amount if refund else -debit.amount
        before = debit.balance_after if refund else debit.balance_before
        try:
            return await self.db.insert(
                "credit_transactions",
                {
                    "user_id": debit.user_id,
                    "credits_amount": amount,
                    "transaction_type": transaction_type.value,
                    "reference_id": reference_id,
                    "reference_type": reference_type,
                    "balance_before": before,
                    "balance_after": before + amount,
                },
            )
        except Exception as e:
            logger.warning(f"credit_transactions insert failed (non-blocking): {e}")
            return None
