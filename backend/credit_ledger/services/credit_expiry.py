"""Expiry sweep for free credits.

Periodic job that removes unused BONUS/REFERRAL credits once their grant
has expired. Each user is processed in its own unit of work: the expired
grants are zeroed, the balance is decremented and one EXPIRED entry is
appended, so sum(amount) == balance holds after every user.

A storage failure for one user is logged and counted; the sweep carries on
with the remaining users.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from credit_ledger.models.credit import CreditTransactionType
from credit_ledger.repositories.ledger_store import (
    LedgerStore,
    NewTransaction,
    NotFound,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpirySweepResult:
    """Result of one expiry sweep.

    Attributes:
        processed_users: Users whose expired grants were settled.
        total_expired: Credits removed across all users.
        failed_users: Users skipped because of a storage error.
    """

    processed_users: int
    total_expired: int
    failed_users: int


class CreditExpiryService:
    """Settles expired free-credit grants.

    Args:
        store: Persistence collaborator.
        clock: Returns the current aware UTC time. Injectable for tests.
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _expire_user(self, user_id: str, now: datetime) -> int:
        """Settle one user's expired grants in a single unit of work.

        The expired amount is clamped to the current balance so the balance
        never goes negative.

        Returns:
            Credits removed from the user's balance.
        """
        async with self._store.transaction() as ledger:
            # Balance row before grant rows, the order every spend path uses
            balance = await ledger.get_balance(user_id, for_update=True) or 0
            grants = await ledger.list_expired_grants(
                now, user_id=user_id, for_update=True
            )
            if not grants:
                return 0

            unused = sum(g.remaining_amount or 0 for g in grants)
            expired_amount = min(unused, balance)
            if expired_amount < unused:
                logger.warning(
                    "Expired credits exceed balance for user %s "
                    "(unused=%d, balance=%d); clamping",
                    user_id,
                    unused,
                    balance,
                )

            grant_ids = [g.id for g in grants]
            await ledger.expire_grants(grant_ids)
            if expired_amount == 0:
                return 0

            outcome = await ledger.decrement_balance_if_sufficient(
                user_id, expired_amount
            )
            if isinstance(outcome, NotFound):
                # Balance row was locked above; a miss means it vanished
                logger.warning("Balance row missing for user %s during expiry", user_id)
                return 0

            await ledger.append_transaction(
                NewTransaction(
                    user_id=user_id,
                    amount=-expired_amount,
                    type=CreditTransactionType.EXPIRED,
                    description="Expired free credits",
                    created_at=now,
                    metadata={
                        "expired_transaction_ids": grant_ids,
                        "processed_at": now.isoformat(),
                    },
                )
            )
        return expired_amount

    async def process_expired_credits(self) -> ExpirySweepResult:
        """Expire every free grant past its expiry with credits left.

        Returns:
            ExpirySweepResult with per-sweep counts.

        Raises:
            SQLAlchemyError: If the initial scan for expired grants fails.
        """
        now = self._clock()
        async with self._store.transaction() as ledger:
            grants = await ledger.list_expired_grants(now)
        user_ids = list(dict.fromkeys(g.user_id for g in grants))

        processed = 0
        total_expired = 0
        failed = 0
        for user_id in user_ids:
            try:
                total_expired += await self._expire_user(user_id, now)
                processed += 1
            except SQLAlchemyError as exc:
                failed += 1
                logger.error("Credit expiry failed for user %s: %s", user_id, exc)

        logger.info(
            "Credit expiry sweep: %d users processed, %d credits expired, %d failed",
            processed,
            total_expired,
            failed,
        )
        return ExpirySweepResult(
            processed_users=processed,
            total_expired=total_expired,
            failed_users=failed,
        )
