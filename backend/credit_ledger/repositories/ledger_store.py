"""Persistence interfaces for the credit ledger.

The ledger engine never talks to a database driver directly. It receives a
LedgerStore at construction and runs every balance-affecting operation
inside ``store.transaction()``, a single atomic unit that commits on clean
exit and rolls back on any exception.

Two implementations exist:
- SqlLedgerStore (credit_repository.py): SQLAlchemy async sessions.
- InMemoryLedgerStore (memory_store.py): lock-serialised dict store.
"""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from credit_ledger.models.credit import (
    CreditHold,
    CreditHoldStatus,
    CreditTransaction,
    CreditTransactionType,
)

# =============================================================================
# Conditional update outcome
# =============================================================================


@dataclass(frozen=True)
class Updated:
    """Conditional decrement matched the balance row.

    Attributes:
        balance: Balance after the decrement.
    """

    balance: int


@dataclass(frozen=True)
class NotFound:
    """Conditional decrement matched zero rows.

    Either the balance row does not exist or its balance was below the
    requested amount at the moment of the update.
    """


DecrementOutcome = Updated | NotFound


# =============================================================================
# Write model
# =============================================================================


@dataclass(frozen=True)
class NewTransaction:
    """Values for a ledger entry about to be appended.

    Attributes:
        user_id: Owner identifier.
        amount: Signed amount (+grant, -spend). Never zero.
        type: Transaction category.
        description: Human-readable audit string.
        created_at: Entry timestamp (aware, UTC).
        metadata: Open key-value bag stored with the entry.
        remaining_amount: Initial unconsumed amount for free-credit grants.
        expires_at: Expiry for free-credit grants, None for no expiry.
    """

    user_id: str
    amount: int
    type: CreditTransactionType
    description: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    remaining_amount: int | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class NewHold:
    """Values for a credit hold about to be opened.

    Attributes:
        request_id: Unique hold identifier handed back to the caller.
        user_id: Owner identifier.
        hold_amount: Credits reserved (positive).
        spend_type: Spend category written when the hold is captured.
        description: Audit string.
        created_at: Hold timestamp (aware, UTC).
        expires_at: End of the reservation.
        metadata: Key-values copied onto the capture entry.
    """

    request_id: str
    user_id: str
    hold_amount: int
    spend_type: CreditTransactionType
    description: str
    created_at: datetime
    expires_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Protocols
# =============================================================================


class LedgerSession(Protocol):
    """Primitives available inside one atomic unit of work."""

    async def get_balance(self, user_id: str, *, for_update: bool = False) -> int | None:
        """Read a user's balance, or None if no balance row exists."""
        ...

    async def ensure_balance(self, user_id: str) -> None:
        """Create a zero balance row if none exists."""
        ...

    async def increment_balance(self, user_id: str, amount: int) -> int:
        """Upsert the balance row, adding amount. Returns the new balance."""
        ...

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> DecrementOutcome:
        """Decrement by amount WHERE balance >= amount."""
        ...

    async def append_transaction(self, entry: NewTransaction) -> CreditTransaction:
        """Append a ledger entry and return it with its assigned id."""
        ...

    async def list_active_grants(
        self, user_id: str, now: datetime, *, for_update: bool = False
    ) -> list[CreditTransaction]:
        """Unexpired free grants with remaining credits, oldest first."""
        ...

    async def sum_free_remaining(self, user_id: str, now: datetime) -> int:
        """SUM(remaining_amount) over unexpired free grants."""
        ...

    async def consume_grant(self, transaction_id: int, amount: int) -> None:
        """Decrement a grant's remaining_amount, flooring at zero."""
        ...

    async def list_transactions(
        self,
        user_id: str,
        *,
        offset: int,
        limit: int,
        transaction_type: CreditTransactionType | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        """Newest-first page of a user's entries plus the filtered total."""
        ...

    async def sum_amounts_by_type(self, user_id: str) -> dict[str, int]:
        """SUM(amount) grouped by type over a user's full history."""
        ...

    async def list_expiring_grants(
        self, user_id: str, now: datetime, until: datetime
    ) -> list[CreditTransaction]:
        """Free grants with remaining credits expiring in (now, until]."""
        ...

    async def list_expired_grants(
        self,
        now: datetime,
        *,
        user_id: str | None = None,
        for_update: bool = False,
    ) -> list[CreditTransaction]:
        """Free grants with remaining credits and expires_at <= now."""
        ...

    async def expire_grants(self, transaction_ids: list[int]) -> None:
        """Set remaining_amount to zero on the given grants."""
        ...

    async def create_hold(self, hold: NewHold) -> CreditHold:
        """Insert a HELD hold and return it with its assigned id."""
        ...

    async def get_hold(
        self, request_id: str, *, for_update: bool = False
    ) -> CreditHold | None:
        """Read a hold by request id, or None if there is none."""
        ...

    async def sum_active_holds(self, user_id: str, now: datetime) -> int:
        """SUM(hold_amount) over HELD holds with expires_at > now."""
        ...

    async def list_pending_holds(
        self,
        *,
        user_id: str | None = None,
        expired_by: datetime | None = None,
    ) -> list[CreditHold]:
        """HELD holds, optionally for one user or expired by a moment."""
        ...

    async def settle_hold(
        self,
        request_id: str,
        status: CreditHoldStatus,
        settled_at: datetime,
        *,
        captured_amount: int | None = None,
        refunded_amount: int | None = None,
        transaction_id: int | None = None,
    ) -> bool:
        """Move a HELD hold to a terminal status. False if it was not HELD."""
        ...


class LedgerStore(Protocol):
    """Factory for atomic units of work over the ledger tables."""

    def transaction(self) -> AbstractAsyncContextManager[LedgerSession]:
        """Open an atomic unit. Commits on clean exit, rolls back on error."""
        ...
