"""Pydantic display schemas for ledger results."""

from credit_ledger.schemas.credits import (
    AvailableBalanceResponse,
    BalanceBreakdownResponse,
    CreditHoldRead,
    CreditStatsResponse,
    CreditTransactionRead,
    ExpiringCreditsResponse,
    TransactionPageResponse,
)

__all__ = [
    "AvailableBalanceResponse",
    "BalanceBreakdownResponse",
    "CreditHoldRead",
    "CreditStatsResponse",
    "CreditTransactionRead",
    "ExpiringCreditsResponse",
    "TransactionPageResponse",
]
