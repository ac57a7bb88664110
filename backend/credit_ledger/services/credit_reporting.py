"""Read-only reporting over the credit ledger.

Transaction history pagination and full-history statistics. Statistics are
historical: expiry never reduces a past grant's contribution to the totals.
"""

from dataclasses import dataclass

from credit_ledger.core.errors import ValidationError
from credit_ledger.models.credit import CreditTransaction, CreditTransactionType
from credit_ledger.repositories.ledger_store import LedgerStore

_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class TransactionPage:
    """One newest-first page of a user's transaction history.

    Attributes:
        transactions: Entries on this page.
        total: Entries matching the filter across all pages.
        has_more: Whether entries exist beyond this page.
    """

    transactions: list[CreditTransaction]
    total: int
    has_more: bool


@dataclass(frozen=True)
class CreditStats:
    """Full-history totals for one user.

    total_used counts every negative entry, expiries included, so
    total_added - total_used == balance. total_expired is the expiry
    share of total_used.
    """

    balance: int
    total_added: int
    total_used: int
    total_purchased: int
    total_bonus: int
    total_referral: int
    total_generation: int
    total_upscale: int
    total_expired: int


class CreditReportingService:
    """Reporting queries for balance and history displays.

    Args:
        store: Persistence collaborator.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def get_credit_transactions(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        transaction_type: CreditTransactionType | str | None = None,
    ) -> TransactionPage:
        """List a user's transactions, newest first.

        Args:
            user_id: User to list.
            limit: Page size (1 to 100).
            offset: Entries to skip.
            transaction_type: Optional type filter.

        Returns:
            TransactionPage with has_more = offset + returned < total.

        Raises:
            ValidationError: If limit, offset or type is invalid.
        """
        if limit < 1 or limit > _MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {_MAX_PAGE_SIZE}",
                details=[{"field": "limit", "value": limit}],
            )
        if offset < 0:
            raise ValidationError(
                "offset must not be negative",
                details=[{"field": "offset", "value": offset}],
            )
        type_filter = None
        if transaction_type is not None:
            try:
                type_filter = CreditTransactionType(transaction_type)
            except ValueError:
                raise ValidationError(
                    f"Invalid transaction type: {transaction_type!r}",
                    details=[{"field": "type"}],
                ) from None

        async with self._store.transaction() as ledger:
            transactions, total = await ledger.list_transactions(
                user_id,
                offset=offset,
                limit=limit,
                transaction_type=type_filter,
            )

        return TransactionPage(
            transactions=transactions,
            total=total,
            has_more=offset + len(transactions) < total,
        )

    async def get_credit_stats(self, user_id: str) -> CreditStats:
        """Aggregate a user's full history by transaction type.

        Spend totals are reported as positive numbers.

        Args:
            user_id: User to aggregate.

        Returns:
            CreditStats including the current balance.
        """
        async with self._store.transaction() as ledger:
            balance = await ledger.get_balance(user_id) or 0
            sums = await ledger.sum_amounts_by_type(user_id)

        def total(txn_type: CreditTransactionType) -> int:
            return abs(sums.get(txn_type.value, 0))

        purchased = total(CreditTransactionType.PURCHASE)
        bonus = total(CreditTransactionType.BONUS)
        referral = total(CreditTransactionType.REFERRAL)
        generation = total(CreditTransactionType.GENERATION)
        upscale = total(CreditTransactionType.UPSCALE)
        expired = total(CreditTransactionType.EXPIRED)

        return CreditStats(
            balance=balance,
            total_added=purchased + bonus + referral,
            total_used=generation + upscale + expired,
            total_purchased=purchased,
            total_bonus=bonus,
            total_referral=referral,
            total_generation=generation,
            total_upscale=upscale,
            total_expired=expired,
        )
