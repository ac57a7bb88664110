"""Repository for credit balance and transaction operations.

Provides database access for the credit_balances, credit_transactions and
credit_holds tables. CreditRepository wraps one AsyncSession; SqlLedgerStore opens a
session and a database transaction per unit of work and hands the
repository to the ledger engine.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from types import ModuleType

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from credit_ledger.models.credit import (
    FREE_CREDIT_TYPES,
    CreditBalance,
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

_FREE_TYPE_VALUES = [t.value for t in FREE_CREDIT_TYPES]

# Dialects with INSERT ... ON CONFLICT support
_UPSERT_DIALECTS: dict[str, ModuleType] = {
    "postgresql": postgresql,
    "sqlite": sqlite,
}


class CreditRepository:
    """Ledger primitives bound to a single AsyncSession.

    The caller owns the transaction boundary. Every method only issues
    statements; nothing here commits.

    Args:
        db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    def _dialect_name(self) -> str:
        return self._db.get_bind().dialect.name

    def _upsert_module(self) -> ModuleType:
        dialect = self._dialect_name()
        try:
            return _UPSERT_DIALECTS[dialect]
        except KeyError:
            msg = f"Balance upsert is not supported on dialect '{dialect}'"
            raise NotImplementedError(msg) from None

    # =========================================================================
    # Balance row
    # =========================================================================

    async def get_balance(self, user_id: str, *, for_update: bool = False) -> int | None:
        """Read the user's current balance.

        Args:
            user_id: User to query balance for.
            for_update: Lock the row until the transaction ends.

        Returns:
            Current balance, or None if the user has no balance row.
        """
        stmt = select(CreditBalance.balance).where(CreditBalance.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_balance(self, user_id: str) -> None:
        """Create a zero balance row unless one already exists.

        Args:
            user_id: User to initialize.
        """
        dialect = self._upsert_module()
        stmt = (
            dialect.insert(CreditBalance)
            .values(user_id=user_id, balance=0)
            .on_conflict_do_nothing(index_elements=[CreditBalance.user_id])
        )
        await self._db.execute(stmt)

    async def increment_balance(self, user_id: str, amount: int) -> int:
        """Atomically add to a user's balance, creating the row if absent.

        Args:
            user_id: User to credit.
            amount: Amount to add (positive value).

        Returns:
            New balance after crediting.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("increment_balance amount must be positive")
        dialect = self._upsert_module()
        stmt = (
            dialect.insert(CreditBalance)
            .values(user_id=user_id, balance=amount)
            .on_conflict_do_update(
                index_elements=[CreditBalance.user_id],
                set_={
                    "balance": CreditBalance.balance + amount,
                    "updated_at": func.now(),
                },
            )
            .returning(CreditBalance.balance)
        )
        result = await self._db.execute(stmt)
        new_balance: int = result.scalar_one()
        return new_balance

    async def decrement_balance_if_sufficient(
        self, user_id: str, amount: int
    ) -> DecrementOutcome:
        """Atomically debit a user's balance.

        Uses WHERE balance >= amount to prevent overdraft. A missing row and
        an insufficient balance both match zero rows.

        Args:
            user_id: User to debit.
            amount: Amount to debit (positive value).

        Returns:
            Updated with the new balance, or NotFound if no row matched.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("decrement amount must be positive")
        stmt = (
            update(CreditBalance)
            .where(
                CreditBalance.user_id == user_id,
                CreditBalance.balance >= amount,
            )
            .values(
                balance=CreditBalance.balance - amount,
                updated_at=func.now(),
            )
            .returning(CreditBalance.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            return NotFound()
        return Updated(balance=new_balance)

    # =========================================================================
    # Transaction log
    # =========================================================================

    async def append_transaction(self, entry: NewTransaction) -> CreditTransaction:
        """Append a ledger entry.

        Args:
            entry: Values for the new entry.

        Returns:
            Created CreditTransaction with its database-generated id.
        """
        txn = CreditTransaction(
            user_id=entry.user_id,
            amount=entry.amount,
            type=entry.type.value,
            description=entry.description,
            metadata_=dict(entry.metadata),
            remaining_amount=entry.remaining_amount,
            expires_at=entry.expires_at,
            created_at=entry.created_at,
        )
        self._db.add(txn)
        await self._db.flush()
        await self._db.refresh(txn)
        return txn

    def _active_grant_conditions(self, user_id: str, now: datetime) -> list:
        return [
            CreditTransaction.user_id == user_id,
            CreditTransaction.type.in_(_FREE_TYPE_VALUES),
            CreditTransaction.remaining_amount > 0,
            (CreditTransaction.expires_at.is_(None))
            | (CreditTransaction.expires_at > now),
        ]

    async def list_active_grants(
        self, user_id: str, now: datetime, *, for_update: bool = False
    ) -> list[CreditTransaction]:
        """List unexpired free grants with credits left, oldest first.

        Args:
            user_id: Grant owner.
            now: Expiry reference time.
            for_update: Lock the grant rows until the transaction ends.

        Returns:
            Grants ordered by (created_at, id) ascending.
        """
        stmt = (
            select(CreditTransaction)
            .where(*self._active_grant_conditions(user_id, now))
            .order_by(CreditTransaction.created_at.asc(), CreditTransaction.id.asc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def sum_free_remaining(self, user_id: str, now: datetime) -> int:
        """Sum remaining credits across a user's unexpired free grants.

        Args:
            user_id: Grant owner.
            now: Expiry reference time.

        Returns:
            Total unconsumed free credits (0 when there are none).
        """
        stmt = select(
            func.coalesce(func.sum(CreditTransaction.remaining_amount), 0)
        ).where(*self._active_grant_conditions(user_id, now))
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def consume_grant(self, transaction_id: int, amount: int) -> None:
        """Decrement a grant's remaining_amount, flooring at zero.

        Args:
            transaction_id: Grant to consume from.
            amount: Credits drawn from this grant (positive value).
        """
        remaining_after = CreditTransaction.remaining_amount - amount
        stmt = (
            update(CreditTransaction)
            .where(CreditTransaction.id == transaction_id)
            .values(
                remaining_amount=case(
                    (remaining_after < 0, 0),
                    else_=remaining_after,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def list_transactions(
        self,
        user_id: str,
        *,
        offset: int,
        limit: int,
        transaction_type: CreditTransactionType | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        """List credit transactions for a user with pagination.

        Args:
            user_id: User to query transactions for.
            offset: Number of records to skip.
            limit: Maximum records to return.
            transaction_type: Optional type filter.

        Returns:
            Tuple of (transactions list newest first, total count).
        """
        conditions = [CreditTransaction.user_id == user_id]
        if transaction_type is not None:
            conditions.append(CreditTransaction.type == transaction_type.value)

        count_stmt = (
            select(func.count()).select_from(CreditTransaction).where(*conditions)
        )
        total_result = await self._db.execute(count_stmt)
        total = total_result.scalar_one()

        data_stmt = (
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._db.execute(data_stmt)
        txns = list(result.scalars().all())

        return txns, total

    async def sum_amounts_by_type(self, user_id: str) -> dict[str, int]:
        """Aggregate a user's full history by transaction type.

        Args:
            user_id: User to aggregate.

        Returns:
            Mapping of type value to SUM(amount). Absent types are omitted.
        """
        stmt = (
            select(CreditTransaction.type, func.sum(CreditTransaction.amount))
            .where(CreditTransaction.user_id == user_id)
            .group_by(CreditTransaction.type)
        )
        result = await self._db.execute(stmt)
        return {row[0]: int(row[1]) for row in result.all()}

    async def list_expiring_grants(
        self, user_id: str, now: datetime, until: datetime
    ) -> list[CreditTransaction]:
        """List free grants with credits left that expire in (now, until].

        Args:
            user_id: Grant owner.
            now: Lower bound (exclusive).
            until: Upper bound (inclusive).

        Returns:
            Grants ordered by expires_at ascending.
        """
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type.in_(_FREE_TYPE_VALUES),
                CreditTransaction.remaining_amount > 0,
                CreditTransaction.expires_at > now,
                CreditTransaction.expires_at <= until,
            )
            .order_by(CreditTransaction.expires_at.asc(), CreditTransaction.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_expired_grants(
        self,
        now: datetime,
        *,
        user_id: str | None = None,
        for_update: bool = False,
    ) -> list[CreditTransaction]:
        """List free grants that expired with credits still unconsumed.

        Args:
            now: Expiry reference time.
            user_id: Restrict to one user (all users when None).
            for_update: Lock the grant rows until the transaction ends.

        Returns:
            Grants ordered by (created_at, id) ascending.
        """
        conditions = [
            CreditTransaction.type.in_(_FREE_TYPE_VALUES),
            CreditTransaction.remaining_amount > 0,
            CreditTransaction.expires_at <= now,
        ]
        if user_id is not None:
            conditions.append(CreditTransaction.user_id == user_id)
        stmt = (
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.asc(), CreditTransaction.id.asc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def expire_grants(self, transaction_ids: list[int]) -> None:
        """Zero out remaining_amount on expired grants.

        Args:
            transaction_ids: Grants to zero.
        """
        if not transaction_ids:
            return
        stmt = (
            update(CreditTransaction)
            .where(CreditTransaction.id.in_(transaction_ids))
            .values(remaining_amount=0)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    # =========================================================================
    # Holds
    # =========================================================================

    async def create_hold(self, hold: NewHold) -> CreditHold:
        """Insert a HELD hold.

        Args:
            hold: Values for the new hold.

        Returns:
            Created CreditHold with its database-generated id.
        """
        row = CreditHold(
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
        self._db.add(row)
        await self._db.flush()
        await self._db.refresh(row)
        return row

    async def get_hold(
        self, request_id: str, *, for_update: bool = False
    ) -> CreditHold | None:
        """Read a hold by its request id.

        Always reloads from the database, so a hold settled earlier in the
        same session is returned with its new status.

        Args:
            request_id: Hold identifier.
            for_update: Lock the row until the transaction ends.

        Returns:
            CreditHold, or None if no hold has this id.
        """
        stmt = (
            select(CreditHold)
            .where(CreditHold.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def sum_active_holds(self, user_id: str, now: datetime) -> int:
        """Sum credits reserved by a user's unexpired HELD holds.

        Args:
            user_id: Hold owner.
            now: Expiry reference time.

        Returns:
            Total reserved credits (0 when there are none).
        """
        stmt = select(func.coalesce(func.sum(CreditHold.hold_amount), 0)).where(
            CreditHold.user_id == user_id,
            CreditHold.status == CreditHoldStatus.HELD.value,
            CreditHold.expires_at > now,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def list_pending_holds(
        self,
        *,
        user_id: str | None = None,
        expired_by: datetime | None = None,
    ) -> list[CreditHold]:
        """List HELD holds, oldest first.

        Args:
            user_id: Restrict to one user (all users when None).
            expired_by: Only holds with expires_at <= this moment.

        Returns:
            Holds ordered by (created_at, id) ascending.
        """
        conditions = [CreditHold.status == CreditHoldStatus.HELD.value]
        if user_id is not None:
            conditions.append(CreditHold.user_id == user_id)
        if expired_by is not None:
            conditions.append(CreditHold.expires_at <= expired_by)
        stmt = (
            select(CreditHold)
            .where(*conditions)
            .order_by(CreditHold.created_at.asc(), CreditHold.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

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
        """Move a hold out of HELD.

        Uses WHERE status = 'HELD' so two settlements racing on the same
        hold cannot both succeed.

        Args:
            request_id: Hold identifier.
            status: Terminal status to set.
            settled_at: Settlement time.
            captured_amount: Credits taken by a capture.
            refunded_amount: Credits released unspent.
            transaction_id: Spend entry written by a capture.

        Returns:
            True if the hold was HELD and is now settled.
        """
        stmt = (
            update(CreditHold)
            .where(
                CreditHold.request_id == request_id,
                CreditHold.status == CreditHoldStatus.HELD.value,
            )
            .values(
                status=status.value,
                settled_at=settled_at,
                captured_amount=captured_amount,
                refunded_amount=refunded_amount,
                transaction_id=transaction_id,
            )
            .returning(CreditHold.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None


class SqlLedgerStore:
    """LedgerStore backed by SQLAlchemy async sessions.

    Each unit of work runs in its own session and database transaction,
    committed on clean exit and rolled back on any exception.

    Args:
        session_factory: Factory producing AsyncSession instances.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CreditRepository]:
        """Open a session and a database transaction for one unit of work.

        Yields:
            CreditRepository bound to the open session.
        """
        async with self._session_factory() as session, session.begin():
            yield CreditRepository(session)
