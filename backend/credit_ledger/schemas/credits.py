"""Credit ledger display schemas.

Serializable views of ledger results for balance and history displays.
The ledger itself returns dataclasses and ORM rows; an API or admin layer
converts them with these models.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from credit_ledger.models.credit import CreditHold, CreditTransaction
from credit_ledger.services.credit_ledger_service import (
    BalanceBreakdown,
    ExpiringCredits,
)
from credit_ledger.services.credit_holds import AvailableBalance
from credit_ledger.services.credit_reporting import CreditStats, TransactionPage

# =============================================================================
# Transactions
# =============================================================================


class CreditTransactionRead(BaseModel):
    """A ledger entry as shown in a user's history.

    Attributes:
        id: Transaction id.
        amount: Signed amount (+grant, -spend).
        type: Transaction type value.
        description: Audit string.
        metadata: Open key-value bag.
        remaining_amount: Unconsumed part of a free-credit grant.
        expires_at: Grant expiry, None for no expiry.
        created_at: Transaction timestamp.
    """

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    amount: int
    type: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    remaining_amount: int | None = None
    expires_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: CreditTransaction) -> "CreditTransactionRead":
        return cls.model_validate(txn)


class TransactionPageResponse(BaseModel):
    """Paginated transaction history."""

    model_config = ConfigDict(extra="forbid")

    transactions: list[CreditTransactionRead]
    total: int
    has_more: bool

    @classmethod
    def from_page(cls, page: TransactionPage) -> "TransactionPageResponse":
        return cls(
            transactions=[
                CreditTransactionRead.from_transaction(t) for t in page.transactions
            ],
            total=page.total,
            has_more=page.has_more,
        )


# =============================================================================
# Balances
# =============================================================================


class BalanceBreakdownResponse(BaseModel):
    """Balance split into free and purchased credits."""

    model_config = ConfigDict(extra="forbid")

    total: int
    free: int
    purchased: int

    @classmethod
    def from_breakdown(cls, breakdown: BalanceBreakdown) -> "BalanceBreakdownResponse":
        return cls(
            total=breakdown.total,
            free=breakdown.free,
            purchased=breakdown.purchased,
        )


class ExpiringCreditsResponse(BaseModel):
    """Free credits due to expire soon.

    Attributes:
        expiring_within_7_days: Credits expiring in the next 7 days.
        expiring_within_30_days: Credits expiring in the next 30 days
            (includes the 7-day amount).
        transactions: Contributing grants, soonest expiry first.
    """

    model_config = ConfigDict(extra="forbid")

    expiring_within_7_days: int
    expiring_within_30_days: int
    transactions: list[CreditTransactionRead]

    @classmethod
    def from_expiring(cls, expiring: ExpiringCredits) -> "ExpiringCreditsResponse":
        return cls(
            expiring_within_7_days=expiring.expiring_within_7_days,
            expiring_within_30_days=expiring.expiring_within_30_days,
            transactions=[
                CreditTransactionRead.from_transaction(t)
                for t in expiring.transactions
            ],
        )


class CreditStatsResponse(BaseModel):
    """Full-history credit totals for one user."""

    model_config = ConfigDict(extra="forbid")

    balance: int
    total_added: int
    total_used: int
    total_purchased: int
    total_bonus: int
    total_referral: int
    total_generation: int
    total_upscale: int
    total_expired: int

    @classmethod
    def from_stats(cls, stats: CreditStats) -> "CreditStatsResponse":
        return cls(
            balance=stats.balance,
            total_added=stats.total_added,
            total_used=stats.total_used,
            total_purchased=stats.total_purchased,
            total_bonus=stats.total_bonus,
            total_referral=stats.total_referral,
            total_generation=stats.total_generation,
            total_upscale=stats.total_upscale,
            total_expired=stats.total_expired,
        )


# =============================================================================
# Holds
# =============================================================================


class CreditHoldRead(BaseModel):
    """A credit hold as shown to the caller that opened it."""

    model_config = ConfigDict(from_attributes=True)

    request_id: str
    hold_amount: int
    status: str
    captured_amount: int | None = None
    refunded_amount: int | None = None
    created_at: datetime
    expires_at: datetime
    settled_at: datetime | None = None

    @classmethod
    def from_hold(cls, hold: CreditHold) -> "CreditHoldRead":
        return cls.model_validate(hold)


class AvailableBalanceResponse(BaseModel):
    """Balance, credits reserved by holds, and what is left to reserve."""

    model_config = ConfigDict(extra="forbid")

    balance: int
    pending_holds: int
    available: int

    @classmethod
    def from_available(cls, available: AvailableBalance) -> "AvailableBalanceResponse":
        return cls(
            balance=available.balance,
            pending_holds=available.pending_holds,
            available=available.available,
        )
