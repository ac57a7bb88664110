"""In-memory ledger store for testing and local runs.

InMemoryLedgerStore satisfies the LedgerStore protocol without a database.
Units of work are serialised with an asyncio.Lock, which gives the same
guarantee as a serializable transaction: no two units for any user ever
interleave. A unit that raises is rolled back to its starting snapshot.
"""

import asyncio
import itertools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from credit_ledger.models.credit import (
    CreditHold,
    CreditHoldStatus,
    CreditTransaction,
    CreditTransactionType,
)
from credit_ledger.repositories.ledger_store import (
    DecrementOutcome,
    NewHold,
    NewTransaction,
    NotFound,
    Updated,
)


def _oldest_first(row: CreditTransaction | CreditHold) -> tuple[datetime, int]:
    return (row.created_at, row.id)


def _hold_state(hold: CreditHold) -> tuple:
    return (
        hold.status,
        hold.captured_amount,
        hold.refunded_amount,
        hold.transaction_id,
        hold.settled_at,
    )


class InMemoryLedgerSession:
    """Ledger primitives over the dicts owned by an InMemoryLedgerStore.

    Transactions are transient CreditTransaction instances (never attached
    to a SQLAlchemy session), so callers see the same record type as with
    the SQL store.
    """

    def __init__(self, store: "InMemoryLedgerStore") -> None:
        self._store = store

    async def get_balance(self, user_id: str, *, for_update: bool = False) -> int | None:
        return self._store.balances.get(user_id)

    async def ensure_balance(self, user_id: str) -> None:
        self._store.balances.setdefault(user_id, 0)

    async def increment_balance(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("increment_balance amount must be positive")
        new_balance = self._store.balances.get(user_id, 0) + amount
        self._store.balances[user_id] = new_balance
        return new_balance

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> DecrementOutcome:
        if amount <= 0:
            raise ValueError("decrement amount must be positive")
        current = self._store.balances.get(user_id)
        if current is None or current < amount:
            return NotFound()
        self._store.balances[user_id] = current - amount
        return Updated(balance=current - amount)

    async def append_transaction(self, entry: NewTransaction) -> CreditTransaction:
        txn = CreditTransaction(
            id=next(self._store.id_sequence),
            user_id=entry.user_id,
            amount=entry.amount,
            type=entry.type.value,
            description=entry.description,
            metadata_=dict(entry.metadata),
            remaining_amount=entry.remaining_amount,
            expires_at=entry.expires_at,
            created_at=entry.created_at,
        )
        self._store.transactions.append(txn)
        return txn

    def _user_transactions(self, user_id: str) -> list[CreditTransaction]:
        return [t for t in self._store.transactions if t.user_id == user_id]

    async def list_active_grants(
        self, user_id: str, now: datetime, *, for_update: bool = False
    ) -> list[CreditTransaction]:
        grants = [t for t in self._user_transactions(user_id) if t.is_active_at(now)]
        return sorted(grants, key=_oldest_first)

    async def sum_free_remaining(self, user_id: str, now: datetime) -> int:
        grants = await self.list_active_grants(user_id, now)
        return sum(g.remaining_amount or 0 for g in grants)

    async def consume_grant(self, transaction_id: int, amount: int) -> None:
        for txn in self._store.transactions:
            if txn.id == transaction_id:
                txn.remaining_amount = max((txn.remaining_amount or 0) - amount, 0)
                return

    async def list_transactions(
        self,
        user_id: str,
        *,
        offset: int,
        limit: int,
        transaction_type: CreditTransactionType | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        matching = self._user_transactions(user_id)
        if transaction_type is not None:
            matching = [t for t in matching if t.type == transaction_type.value]
        matching.sort(key=_oldest_first, reverse=True)
        return matching[offset : offset + limit], len(matching)

    async def sum_amounts_by_type(self, user_id: str) -> dict[str, int]:
        totals: dict[str, int] = {}
        for txn in self._user_transactions(user_id):
            totals[txn.type] = totals.get(txn.type, 0) + txn.amount
        return totals

    async def list_expiring_grants(
        self, user_id: str, now: datetime, until: datetime
    ) -> list[CreditTransaction]:
        grants = [
            t
            for t in self._user_transactions(user_id)
            if t.is_active_at(now)
            and t.expires_at is not None
            and t.expires_at <= until
        ]
        return sorted(grants, key=lambda t: (t.expires_at, t.id))

    async def list_expired_grants(
        self,
        now: datetime,
        *,
        user_id: str | None = None,
        for_update: bool = False,
    ) -> list[CreditTransaction]:
        expired = [
            t
            for t in self._store.transactions
            if t.is_free_grant
            and (t.remaining_amount or 0) > 0
            and t.expires_at is not None
            and t.expires_at <= now
            and (user_id is None or t.user_id == user_id)
        ]
        return sorted(expired, key=_oldest_first)

    async def expire_grants(self, transaction_ids: list[int]) -> None:
        targets = set(transaction_ids)
        for txn in self._store.transactions:
            if txn.id in targets:
                txn.remaining_amount = 0

    async def create_hold(self, hold: NewHold) -> CreditHold:
        if hold.request_id in self._store.holds:
            raise ValueError(f"duplicate hold request_id {hold.request_id!r}")
        row = CreditHold(
            id=next(self._store.id_sequence),
            request_id=hold.request_id,
            user_id=hold.user_id,
            hold_amount=hold.hold_amount,
            spend_type=hold.spend_type.value,
            status=CreditHoldStatus.HELD.value,
            description=hold.description,
            metadata_=dict(hold.metadata),
            created_at=hold.created_at,
            expires_at=hold.expires_at,
        )
        self._store.holds[hold.request_id] = row
        return row

    async def get_hold(
        self, request_id: str, *, for_update: bool = False
    ) -> CreditHold | None:
        return self._store.holds.get(request_id)

    async def sum_active_holds(self, user_id: str, now: datetime) -> int:
        return sum(
            h.hold_amount
            for h in self._store.holds.values()
            if h.user_id == user_id and h.is_active_at(now)
        )

    async def list_pending_holds(
        self,
        *,
        user_id: str | None = None,
        expired_by: datetime | None = None,
    ) -> list[CreditHold]:
        pending = [
            h
            for h in self._store.holds.values()
            if h.status == CreditHoldStatus.HELD.value
            and (user_id is None or h.user_id == user_id)
            and (expired_by is None or h.expires_at <= expired_by)
        ]
        return sorted(pending, key=_oldest_first)

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
        hold = self._store.holds.get(request_id)
        if hold is None or hold.status != CreditHoldStatus.HELD.value:
            return False
        hold.status = status.value
        hold.settled_at = settled_at
        hold.captured_amount = captured_amount
        hold.refunded_amount = refunded_amount
        hold.transaction_id = transaction_id
        return True


class InMemoryLedgerStore:
    """LedgerStore keeping balances and transactions in process memory.

    Attributes:
        balances: user_id -> current balance.
        transactions: Append-only list of ledger entries.
        holds: request_id -> credit hold.
        id_sequence: Monotonic id generator for new entries and holds.
    """

    def __init__(self) -> None:
        self.balances: dict[str, int] = {}
        self.transactions: list[CreditTransaction] = []
        self.holds: dict[str, CreditHold] = {}
        self.id_sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryLedgerSession]:
        """Run one unit of work under the store lock.

        Yields:
            Session over this store's data.
        """
        async with self._lock:
            balances_before = dict(self.balances)
            count_before = len(self.transactions)
            remaining_before = {t.id: t.remaining_amount for t in self.transactions}
            holds_before = {rid: _hold_state(h) for rid, h in self.holds.items()}
            try:
                yield InMemoryLedgerSession(self)
            except BaseException:
                self.balances = balances_before
                del self.transactions[count_before:]
                for txn in self.transactions:
                    txn.remaining_amount = remaining_before[txn.id]
                for rid in list(self.holds):
                    if rid not in holds_before:
                        del self.holds[rid]
                        continue
                    hold = self.holds[rid]
                    (
                        hold.status,
                        hold.captured_amount,
                        hold.refunded_amount,
                        hold.transaction_id,
                        hold.settled_at,
                    ) = holds_before[rid]
                raise
