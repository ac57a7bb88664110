"""Ledger engine: balance queries, grants and deductions.

Every balance-affecting operation runs inside one ``store.transaction()``
unit: the balance read, the balance write, the log append and (for typed
deductions) the per-grant remaining_amount updates commit together or not
at all. The engine never holds application-level locks; it relies on the
store's transactional and conditional-update guarantees.

Three deduction entry points share the no-overdraft invariant:
- deduct_credits: check-then-act under a row lock. Raises on shortfall.
- deduct_credits_atomic: single conditional decrement. A zero-row match is
  a routine business outcome and comes back as DeductionResult(success=False).
- deduct_credits_with_type: splits the spend between free grants (FIFO) and
  purchased balance and decides whether the output needs a watermark.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from credit_ledger.core.config import Settings
from credit_ledger.core.config import settings as default_settings
from credit_ledger.core.errors import InsufficientCreditsError, ValidationError
from credit_ledger.models.credit import (
    FREE_CREDIT_TYPES,
    GRANT_TYPES,
    SPEND_TYPES,
    CreditTransaction,
    CreditTransactionType,
)
from credit_ledger.repositories.ledger_store import (
    LedgerSession,
    LedgerStore,
    NewTransaction,
    NotFound,
)
from credit_ledger.services.grant_queue import ConsumptionPlan, GrantQueue

logger = structlog.get_logger()

_INSUFFICIENT_CREDITS = "insufficient credits"


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums and result types
# =============================================================================


class CreditPreference(str, Enum):
    """Which credit kind a typed deduction should draw from.

    Values:
        FREE: Free grants only. Fails if free credits cannot cover the spend.
        PURCHASED: Purchased balance only. Never touches grants.
        AUTO: Free grants first (oldest first), purchased for the remainder.
    """

    FREE = "free"
    PURCHASED = "purchased"
    AUTO = "auto"


class UsedCreditType(str, Enum):
    """Credit kind reported for a completed typed deduction."""

    FREE = "free"
    PURCHASED = "purchased"


@dataclass(frozen=True)
class BalanceBreakdown:
    """Total balance split into free (expiring) and purchased credits.

    Invariant: 0 <= free <= total and purchased == total - free.
    """

    total: int
    free: int
    purchased: int


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a grant.

    Attributes:
        balance: Balance after the grant.
        transaction: Appended ledger entry.
    """

    balance: int
    transaction: CreditTransaction


@dataclass(frozen=True)
class DeductionResult:
    """Non-throwing outcome of deduct_credits_atomic.

    Attributes:
        success: Whether the credits were taken.
        balance: Balance after the deduction, or the freshly read balance
            when the deduction did not happen.
        error: Failure reason when success is False.
        transaction: Appended spend entry when success is True.
    """

    success: bool
    balance: int
    error: str | None = None
    transaction: CreditTransaction | None = None


@dataclass(frozen=True)
class TypedDeductionResult:
    """Outcome of deduct_credits_with_type.

    Attributes:
        balance: Balance after the deduction.
        used_credit_type: FREE if any part came from a free grant.
        apply_watermark: True exactly when used_credit_type is FREE.
        free_amount: Credits drawn from free grants.
        purchased_amount: Credits drawn from purchased balance.
        transaction: Appended spend entry.
    """

    balance: int
    used_credit_type: UsedCreditType
    apply_watermark: bool
    free_amount: int
    purchased_amount: int
    transaction: CreditTransaction


@dataclass(frozen=True)
class ExpiringCredits:
    """Free credits due to expire within each look-ahead window.

    Windows are cumulative: the 30-day total includes the 7-day one.

    Attributes:
        totals_by_window: Window length in days -> remaining credits
            expiring within that window.
        transactions: Contributing grants (widest window), soonest first.
    """

    totals_by_window: dict[int, int]
    transactions: list[CreditTransaction] = field(default_factory=list)

    def expiring_within(self, days: int) -> int:
        """Credits expiring within a configured window (0 if not computed)."""
        return self.totals_by_window.get(days, 0)

    @property
    def expiring_within_7_days(self) -> int:
        return self.expiring_within(7)

    @property
    def expiring_within_30_days(self) -> int:
        return self.expiring_within(30)


# =============================================================================
# Validation helpers
# =============================================================================


def require_positive_amount(amount: int) -> None:
    """Reject non-positive or non-integer amounts before any store access.

    Raises:
        ValidationError: If amount is not a positive integer.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            "Amount must be a positive integer",
            details=[{"field": "amount", "value": repr(amount)}],
        )


def coerce_transaction_type(
    value: CreditTransactionType | str,
    allowed: frozenset[CreditTransactionType],
    operation: str,
) -> CreditTransactionType:
    """Resolve a transaction type and check it is valid for the operation.

    Raises:
        ValidationError: If the type is unknown or not allowed here.
    """
    try:
        txn_type = CreditTransactionType(value)
    except ValueError:
        txn_type = None
    if txn_type is None or txn_type not in allowed:
        allowed_values = sorted(t.value for t in allowed)
        raise ValidationError(
            f"Invalid transaction type for {operation}: {value!r}",
            details=[{"field": "type", "allowed": allowed_values}],
        )
    return txn_type


def _coerce_preference(value: CreditPreference | str) -> CreditPreference:
    try:
        return CreditPreference(value)
    except ValueError:
        raise ValidationError(
            f"Invalid preferred credit type: {value!r}",
            details=[
                {
                    "field": "preferred_type",
                    "allowed": [p.value for p in CreditPreference],
                }
            ],
        ) from None


# =============================================================================
# Service
# =============================================================================


class CreditLedgerService:
    """Central ledger engine.

    Args:
        store: Persistence collaborator providing atomic units of work.
        clock: Returns the current aware UTC time. Injectable for tests.
        settings: Ledger settings (defaults to the environment settings).
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or _utc_now
        self._settings = settings or default_settings

    @property
    def store(self) -> LedgerStore:
        """Persistence collaborator shared with reporting and expiry."""
        return self._store

    def now(self) -> datetime:
        """Current time according to the injected clock."""
        return self._clock()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_balance(self, user_id: str) -> int:
        """Get a user's current balance.

        Args:
            user_id: User to query.

        Returns:
            Current balance, 0 for a user with no balance row.
        """
        async with self._store.transaction() as ledger:
            balance = await ledger.get_balance(user_id)
        return balance or 0

    def _clamp_free(self, user_id: str, free_remaining: int, total: int) -> int:
        """Cap free credits at the total balance, logging any overshoot."""
        if free_remaining > total:
            logger.warning(
                "credit_breakdown_anomaly",
                user_id=user_id,
                free_remaining=free_remaining,
                balance=total,
                overshoot=free_remaining - total,
            )
            return total
        return max(free_remaining, 0)

    async def _breakdown(self, ledger: LedgerSession, user_id: str) -> BalanceBreakdown:
        total = await ledger.get_balance(user_id) or 0
        free_remaining = await ledger.sum_free_remaining(user_id, self._clock())
        free = self._clamp_free(user_id, free_remaining, total)
        return BalanceBreakdown(total=total, free=free, purchased=total - free)

    async def get_balance_breakdown(self, user_id: str) -> BalanceBreakdown:
        """Split the balance into free and purchased credits.

        Free credits are the remaining amounts of unexpired BONUS/REFERRAL
        grants. If they add up to more than the balance, free is clamped to
        the balance and a credit_breakdown_anomaly warning is logged.

        Args:
            user_id: User to query.

        Returns:
            BalanceBreakdown with total, free and purchased.
        """
        async with self._store.transaction() as ledger:
            return await self._breakdown(ledger, user_id)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        """Check whether the balance covers amount (equality counts)."""
        return await self.get_balance(user_id) >= amount

    async def get_purchased_credits_remaining(self, user_id: str) -> int:
        """Get the purchased part of the balance."""
        breakdown = await self.get_balance_breakdown(user_id)
        return breakdown.purchased

    async def has_purchased_credits(self, user_id: str) -> bool:
        """Check whether any purchased credits remain."""
        return await self.get_purchased_credits_remaining(user_id) > 0

    async def get_expiring_credits(
        self,
        user_id: str,
        windows_days: list[int] | None = None,
    ) -> ExpiringCredits:
        """Project how many free credits expire within each window.

        Args:
            user_id: User to query.
            windows_days: Look-ahead windows in days. Defaults to the
                configured windows (7 and 30).

        Returns:
            ExpiringCredits with cumulative per-window totals and the
            grants expiring within the widest window.

        Raises:
            ValidationError: If a window is not positive.
        """
        if windows_days is None:
            windows_days = self._settings.expiring_windows_days
        windows = sorted(set(windows_days))
        if not windows or windows[0] <= 0:
            raise ValidationError(
                "Expiry windows must be positive day counts",
                details=[{"field": "windows_days", "value": windows_days}],
            )

        now = self._clock()
        async with self._store.transaction() as ledger:
            grants = await ledger.list_expiring_grants(
                user_id, now, now + timedelta(days=windows[-1])
            )

        totals: dict[int, int] = {}
        for days in windows:
            until = now + timedelta(days=days)
            totals[days] = sum(
                g.remaining_amount or 0
                for g in grants
                if g.expires_at is not None and g.expires_at <= until
            )
        return ExpiringCredits(totals_by_window=totals, transactions=grants)

    # =========================================================================
    # Grants
    # =========================================================================

    async def initialize_credit(self, user_id: str) -> int:
        """Create a zero balance row for a new account.

        A no-op when the row already exists.

        Args:
            user_id: User to initialize.

        Returns:
            Current balance after initialization.
        """
        async with self._store.transaction() as ledger:
            await ledger.ensure_balance(user_id)
            balance = await ledger.get_balance(user_id)
        logger.info("credit_account_initialized", user_id=user_id)
        return balance or 0

    async def grant(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str,
        description: str,
        expires_in_days: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> GrantResult:
        """Add credits and return both the new balance and the ledger entry.

        BONUS and REFERRAL grants are tracked per grant: remaining_amount
        starts at amount and expires_at is now + expires_in_days (None means
        the grant never expires). PURCHASE grants are fungible and never
        expire, so expires_in_days is ignored for them.

        Args:
            user_id: User to credit.
            amount: Credits to add (positive).
            type: PURCHASE, BONUS or REFERRAL.
            description: Audit string.
            expires_in_days: Expiry window for free-credit grants.
            metadata: Extra key-values stored on the entry.

        Returns:
            GrantResult with the post-grant balance and the entry.

        Raises:
            ValidationError: If amount, type or expiry window is invalid.
        """
        require_positive_amount(amount)
        txn_type = coerce_transaction_type(type, GRANT_TYPES, "grant")
        if expires_in_days is not None and expires_in_days < 0:
            raise ValidationError(
                "expires_in_days must not be negative",
                details=[{"field": "expires_in_days", "value": expires_in_days}],
            )

        now = self._clock()
        remaining_amount = None
        expires_at = None
        if txn_type in FREE_CREDIT_TYPES:
            remaining_amount = amount
            if expires_in_days is not None:
                expires_at = now + timedelta(days=expires_in_days)

        async with self._store.transaction() as ledger:
            new_balance = await ledger.increment_balance(user_id, amount)
            txn = await ledger.append_transaction(
                NewTransaction(
                    user_id=user_id,
                    amount=amount,
                    type=txn_type,
                    description=description,
                    created_at=now,
                    metadata=dict(metadata or {}),
                    remaining_amount=remaining_amount,
                    expires_at=expires_at,
                )
            )

        logger.info(
            "credits_granted",
            user_id=user_id,
            amount=amount,
            type=txn_type.value,
            balance=new_balance,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return GrantResult(balance=new_balance, transaction=txn)

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str,
        description: str,
        expires_in_days: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        """Add credits to a user's balance.

        See grant() for the per-type bookkeeping.

        Returns:
            Balance after the grant.

        Raises:
            ValidationError: If amount, type or expiry window is invalid.
        """
        result = await self.grant(
            user_id,
            amount,
            type,
            description,
            expires_in_days=expires_in_days,
            metadata=metadata,
        )
        return result.balance

    # =========================================================================
    # Deductions
    # =========================================================================

    def _spend_entry(
        self,
        user_id: str,
        amount: int,
        txn_type: CreditTransactionType,
        description: str,
        metadata: Mapping[str, Any] | None,
        now: datetime,
    ) -> NewTransaction:
        return NewTransaction(
            user_id=user_id,
            amount=-amount,
            type=txn_type,
            description=description,
            created_at=now,
            metadata=dict(metadata or {}),
        )

    async def deduct_credits(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        """Deduct credits with a check-then-act sequence in one unit.

        The balance row is read with a row lock, so a concurrent spend for
        the same user waits rather than interleaving. Grant remaining
        amounts are not touched.

        Args:
            user_id: User to charge.
            amount: Credits to take (positive).
            type: GENERATION or UPSCALE.
            description: Audit string.
            metadata: Extra key-values stored on the spend entry.

        Returns:
            Balance after the deduction.

        Raises:
            ValidationError: If amount or type is invalid.
            InsufficientCreditsError: If the balance is below amount.
        """
        require_positive_amount(amount)
        txn_type = coerce_transaction_type(type, SPEND_TYPES, "deduction")
        now = self._clock()

        async with self._store.transaction() as ledger:
            balance = await ledger.get_balance(user_id, for_update=True) or 0
            if balance < amount:
                logger.info(
                    "credit_deduction_rejected",
                    user_id=user_id,
                    amount=amount,
                    balance=balance,
                )
                raise InsufficientCreditsError(balance=balance, required=amount)

            outcome = await ledger.decrement_balance_if_sufficient(user_id, amount)
            if isinstance(outcome, NotFound):
                current = await ledger.get_balance(user_id) or 0
                raise InsufficientCreditsError(balance=current, required=amount)

            await ledger.append_transaction(
                self._spend_entry(user_id, amount, txn_type, description, metadata, now)
            )

        logger.info(
            "credits_deducted",
            user_id=user_id,
            amount=amount,
            type=txn_type.value,
            balance=outcome.balance,
        )
        return outcome.balance

    async def deduct_credits_atomic(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> DeductionResult:
        """Deduct credits with a single conditional decrement.

        Issues "decrement WHERE balance >= amount". When that matches no
        row, a concurrent spend (or a plain shortfall) got there first: the
        balance is re-read and returned as a failed result instead of an
        exception.

        Args:
            user_id: User to charge.
            amount: Credits to take (positive).
            type: GENERATION or UPSCALE.
            description: Audit string.
            metadata: Extra key-values stored on the spend entry.

        Returns:
            DeductionResult. success=False carries the fresh balance and
            the error "insufficient credits".

        Raises:
            ValidationError: If amount or type is invalid.
        """
        require_positive_amount(amount)
        txn_type = coerce_transaction_type(type, SPEND_TYPES, "deduction")
        now = self._clock()

        async with self._store.transaction() as ledger:
            outcome = await ledger.decrement_balance_if_sufficient(user_id, amount)
            if isinstance(outcome, NotFound):
                current = await ledger.get_balance(user_id) or 0
                txn = None
            else:
                txn = await ledger.append_transaction(
                    self._spend_entry(
                        user_id, amount, txn_type, description, metadata, now
                    )
                )

        if txn is None:
            logger.info(
                "credit_atomic_deduction_conflict",
                user_id=user_id,
                amount=amount,
                balance=current,
            )
            return DeductionResult(
                success=False, balance=current, error=_INSUFFICIENT_CREDITS
            )

        logger.info(
            "credits_deducted",
            user_id=user_id,
            amount=amount,
            type=txn_type.value,
            balance=outcome.balance,
        )
        return DeductionResult(success=True, balance=outcome.balance, transaction=txn)

    def _plan_typed_spend(
        self,
        preference: CreditPreference,
        queue: GrantQueue,
        breakdown: BalanceBreakdown,
        amount: int,
    ) -> ConsumptionPlan:
        """Pick the free/purchased split for a typed deduction.

        Raises:
            InsufficientCreditsError: If the chosen credit kind cannot cover
                the amount.
        """
        if preference is CreditPreference.FREE:
            if breakdown.free < amount:
                raise InsufficientCreditsError(
                    balance=breakdown.free, required=amount, credit_kind="free"
                )
            return queue.plan(amount, cap=breakdown.free)

        if preference is CreditPreference.PURCHASED:
            if breakdown.purchased < amount:
                raise InsufficientCreditsError(
                    balance=breakdown.purchased,
                    required=amount,
                    credit_kind="purchased",
                )
            return ConsumptionPlan(draws=(), free_amount=0, purchased_amount=amount)

        if breakdown.total < amount:
            raise InsufficientCreditsError(balance=breakdown.total, required=amount)
        return queue.plan(amount, cap=breakdown.free)

    async def deduct_credits_with_type(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str,
        description: str,
        preferred_type: CreditPreference | str = CreditPreference.AUTO,
        metadata: Mapping[str, Any] | None = None,
    ) -> TypedDeductionResult:
        """Deduct credits, tracking which credit kind paid for the spend.

        AUTO draws free grants oldest first and falls back to purchased
        balance for the shortfall. FREE requires free credits to cover the
        whole amount. PURCHASED requires purchased credits to cover the
        whole amount and never touches grants.

        Any free portion makes the result FREE with apply_watermark=True;
        only a spend paid entirely from purchased balance is unmarked.

        Args:
            user_id: User to charge.
            amount: Credits to take (positive).
            type: GENERATION or UPSCALE.
            description: Audit string.
            preferred_type: free, purchased or auto.
            metadata: Extra key-values stored on the spend entry. The
                credit split and consumed grants are added to it.

        Returns:
            TypedDeductionResult with the new balance and watermark decision.

        Raises:
            ValidationError: If amount, type or preference is invalid.
            InsufficientCreditsError: If the chosen credit kind is short.
        """
        require_positive_amount(amount)
        txn_type = coerce_transaction_type(type, SPEND_TYPES, "deduction")
        preference = _coerce_preference(preferred_type)
        now = self._clock()

        async with self._store.transaction() as ledger:
            result = await self.apply_typed_deduction(
                ledger,
                user_id,
                amount,
                txn_type,
                description,
                preference=preference,
                metadata=metadata,
                now=now,
            )

        logger.info(
            "credits_deducted",
            user_id=user_id,
            amount=amount,
            type=txn_type.value,
            balance=result.balance,
            used_credit_type=result.used_credit_type.value,
            free_amount=result.free_amount,
            purchased_amount=result.purchased_amount,
        )
        return result

    async def apply_typed_deduction(
        self,
        ledger: LedgerSession,
        user_id: str,
        amount: int,
        txn_type: CreditTransactionType,
        description: str,
        *,
        preference: CreditPreference = CreditPreference.AUTO,
        metadata: Mapping[str, Any] | None = None,
        now: datetime,
    ) -> TypedDeductionResult:
        """Run a typed deduction inside a unit of work the caller opened.

        Locks the balance row, then the active grant rows, plans the split,
        decrements the balance, draws the grants and appends the spend
        entry. Inputs must already be validated. Hold captures use this so
        they share the watermark decision with deduct_credits_with_type.

        Raises:
            InsufficientCreditsError: If the chosen credit kind is short.
        """
        total = await ledger.get_balance(user_id, for_update=True) or 0
        grants = await ledger.list_active_grants(user_id, now, for_update=True)
        queue = GrantQueue(grants)
        free = self._clamp_free(user_id, queue.free_remaining, total)
        breakdown = BalanceBreakdown(total=total, free=free, purchased=total - free)

        try:
            plan = self._plan_typed_spend(preference, queue, breakdown, amount)
        except InsufficientCreditsError as exc:
            logger.info(
                "credit_deduction_rejected",
                user_id=user_id,
                amount=amount,
                preferred_type=preference.value,
                credit_kind=exc.credit_kind,
                available=exc.balance,
            )
            raise

        outcome = await ledger.decrement_balance_if_sufficient(user_id, amount)
        if isinstance(outcome, NotFound):
            current = await ledger.get_balance(user_id) or 0
            raise InsufficientCreditsError(balance=current, required=amount)

        for draw in plan.draws:
            await ledger.consume_grant(draw.transaction_id, draw.amount)

        used = UsedCreditType.FREE if plan.uses_free else UsedCreditType.PURCHASED
        entry_metadata = dict(metadata or {})
        entry_metadata.update(
            credit_type=used.value,
            free_amount=plan.free_amount,
            purchased_amount=plan.purchased_amount,
            consumed_grants=[
                {"transaction_id": d.transaction_id, "amount": d.amount}
                for d in plan.draws
            ],
        )
        txn = await ledger.append_transaction(
            self._spend_entry(user_id, amount, txn_type, description, entry_metadata, now)
        )
        return TypedDeductionResult(
            balance=outcome.balance,
            used_credit_type=used,
            apply_watermark=used is UsedCreditType.FREE,
            free_amount=plan.free_amount,
            purchased_amount=plan.purchased_amount,
            transaction=txn,
        )
