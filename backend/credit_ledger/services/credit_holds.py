"""Two-phase charging for metered work: hold, then capture or refund.

A caller reserves credits before starting expensive work, then settles the
reservation once the outcome is known:

- hold_credits: reserve against the available balance (balance minus
  other active holds). Nothing is written to the balance or the log.
- capture_credits / partial_capture: spend the held credits through the
  ledger engine's typed deduction, in the same unit that settles the hold.
  A partial capture releases the rest of the hold.
- refund_credits / refund_all_pending_holds: release holds unspent.
- release_expired_holds: periodic sweep for holds nobody settled.

Every hold is settled at most once; the store's conditional settle rejects
a second capture or refund even when two callers race.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from credit_ledger.core.config import Settings
from credit_ledger.core.config import settings as default_settings
from credit_ledger.core.errors import (
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
)
from credit_ledger.models.credit import (
    SPEND_TYPES,
    CreditHold,
    CreditHoldStatus,
    CreditTransactionType,
)
from credit_ledger.repositories.ledger_store import LedgerSession, NewHold
from credit_ledger.services.credit_ledger_service import (
    CreditLedgerService,
    TypedDeductionResult,
    coerce_transaction_type,
    require_positive_amount,
)

logger = structlog.get_logger()

_DEFAULT_HOLD_DESCRIPTION = "Credit hold"


@dataclass(frozen=True)
class AvailableBalance:
    """Balance net of credits reserved by active holds.

    Attributes:
        balance: Current balance.
        pending_holds: Credits reserved by unexpired HELD holds.
        available: max(balance - pending_holds, 0).
    """

    balance: int
    pending_holds: int
    available: int


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of a capture.

    Attributes:
        hold: The settled hold.
        deduction: Spend applied to the balance, with the watermark decision.
    """

    hold: CreditHold
    deduction: TypedDeductionResult

    @property
    def captured_amount(self) -> int:
        return self.hold.captured_amount or 0

    @property
    def released_amount(self) -> int:
        return self.hold.refunded_amount or 0


@dataclass(frozen=True)
class HoldRefundSummary:
    """Result of refunding every pending hold of one user.

    Attributes:
        refunded: Holds released.
        total_amount: Credits those holds had reserved.
    """

    refunded: int
    total_amount: int


class CreditHoldService:
    """Reserve-then-settle charging on top of the ledger engine.

    Args:
        ledger: Ledger engine; its store and clock are shared.
        settings: Ledger settings (defaults to the environment settings).
    """

    def __init__(
        self,
        ledger: CreditLedgerService,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._store = ledger.store
        self._settings = settings or default_settings

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_available_balance(self, user_id: str) -> AvailableBalance:
        """Read the balance together with what active holds reserve."""
        now = self._ledger.now()
        async with self._store.transaction() as ledger:
            balance = await ledger.get_balance(user_id) or 0
            pending = await ledger.sum_active_holds(user_id, now)
        return AvailableBalance(
            balance=balance,
            pending_holds=pending,
            available=max(balance - pending, 0),
        )

    async def get_hold(self, request_id: str) -> CreditHold | None:
        """Look up a hold by request id."""
        async with self._store.transaction() as ledger:
            return await ledger.get_hold(request_id)

    async def is_hold_valid(self, request_id: str) -> bool:
        """Whether the hold exists, is HELD and has not expired."""
        hold = await self.get_hold(request_id)
        return hold is not None and hold.is_active_at(self._ledger.now())

    # =========================================================================
    # Hold
    # =========================================================================

    async def hold_credits(
        self,
        user_id: str,
        amount: int,
        type: CreditTransactionType | str = CreditTransactionType.GENERATION,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> CreditHold:
        """Reserve credits for a metered operation.

        The balance row is locked while active holds are summed, so two
        holds for the same user cannot both claim the last credits.

        Args:
            user_id: User to reserve for.
            amount: Credits to reserve (positive).
            type: Spend category the capture will record.
            description: Audit string, reused by the capture entry.
            metadata: Key-values copied onto the capture entry.

        Returns:
            The new HELD hold. Its request_id identifies it from now on.

        Raises:
            ValidationError: If amount or type is invalid.
            InsufficientCreditsError: If the available balance is short.
        """
        require_positive_amount(amount)
        spend_type = coerce_transaction_type(type, SPEND_TYPES, "hold")
        now = self._ledger.now()
        expires_at = now + timedelta(minutes=self._settings.credit_hold_ttl_minutes)

        async with self._store.transaction() as ledger:
            balance = await ledger.get_balance(user_id, for_update=True) or 0
            pending = await ledger.sum_active_holds(user_id, now)
            available = max(balance - pending, 0)
            if available < amount:
                logger.info(
                    "credit_hold_rejected",
                    user_id=user_id,
                    amount=amount,
                    balance=balance,
                    pending_holds=pending,
                )
                raise InsufficientCreditsError(
                    balance=available, required=amount, credit_kind="available"
                )

            hold = await ledger.create_hold(
                NewHold(
                    request_id=str(uuid.uuid4()),
                    user_id=user_id,
                    hold_amount=amount,
                    spend_type=spend_type,
                    description=description or _DEFAULT_HOLD_DESCRIPTION,
                    created_at=now,
                    expires_at=expires_at,
                    metadata=dict(metadata or {}),
                )
            )

        logger.info(
            "credit_hold_created",
            user_id=user_id,
            request_id=hold.request_id,
            amount=amount,
            expires_at=expires_at.isoformat(),
        )
        return hold

    # =========================================================================
    # Settlement
    # =========================================================================

    async def _load_held(
        self, ledger: LedgerSession, request_id: str, *, for_update: bool = False
    ) -> CreditHold:
        hold = await ledger.get_hold(request_id, for_update=for_update)
        if hold is None:
            raise NotFoundError("Credit hold", request_id)
        if hold.status != CreditHoldStatus.HELD.value:
            raise InvalidStateError(
                f"Credit hold '{request_id}' is already settled",
                details=[{"request_id": request_id, "status": hold.status}],
            )
        return hold

    async def _settle(
        self,
        ledger: LedgerSession,
        request_id: str,
        status: CreditHoldStatus,
        now: datetime,
        **amounts: int | None,
    ) -> CreditHold:
        """Settle a hold and return it freshly read.

        Raises:
            InvalidStateError: If another caller settled it first.
        """
        if not await ledger.settle_hold(request_id, status, now, **amounts):
            raise InvalidStateError(
                f"Credit hold '{request_id}' is already settled",
                details=[{"request_id": request_id}],
            )
        hold = await ledger.get_hold(request_id)
        assert hold is not None, "settled hold must still exist"
        return hold

    async def _capture(
        self, request_id: str, amount: int | None, description: str | None
    ) -> CaptureResult:
        now = self._ledger.now()
        async with self._store.transaction() as ledger:
            hold = await self._load_held(ledger, request_id)
            # Balance row before the hold row, matching hold_credits
            await ledger.get_balance(hold.user_id, for_update=True)
            hold = await self._load_held(ledger, request_id, for_update=True)
            if hold.expires_at <= now:
                raise InvalidStateError(
                    f"Credit hold '{request_id}' has expired",
                    details=[
                        {
                            "request_id": request_id,
                            "expires_at": hold.expires_at.isoformat(),
                        }
                    ],
                )

            capture_amount = hold.hold_amount if amount is None else amount
            if capture_amount > hold.hold_amount:
                raise InvalidStateError(
                    "Capture amount exceeds the held amount",
                    details=[
                        {
                            "request_id": request_id,
                            "hold_amount": hold.hold_amount,
                            "capture_amount": capture_amount,
                        }
                    ],
                )
            released = hold.hold_amount - capture_amount

            entry_metadata = dict(hold.metadata_ or {})
            entry_metadata["request_id"] = request_id
            deduction = await self._ledger.apply_typed_deduction(
                ledger,
                hold.user_id,
                capture_amount,
                CreditTransactionType(hold.spend_type),
                description or hold.description,
                metadata=entry_metadata,
                now=now,
            )
            settled = await self._settle(
                ledger,
                request_id,
                (
                    CreditHoldStatus.PARTIAL_CAPTURED
                    if released
                    else CreditHoldStatus.CAPTURED
                ),
                now,
                captured_amount=capture_amount,
                refunded_amount=released or None,
                transaction_id=deduction.transaction.id,
            )

        logger.info(
            "credit_hold_captured",
            user_id=settled.user_id,
            request_id=request_id,
            captured=capture_amount,
            released=released,
            balance=deduction.balance,
            used_credit_type=deduction.used_credit_type.value,
        )
        return CaptureResult(hold=settled, deduction=deduction)

    async def capture_credits(
        self, request_id: str, description: str | None = None
    ) -> CaptureResult:
        """Spend the full held amount.

        The spend goes through the engine's typed deduction (free grants
        first), so the result carries the watermark decision.

        Args:
            request_id: Hold to capture.
            description: Audit string for the spend entry (defaults to the
                hold's description).

        Returns:
            CaptureResult with the CAPTURED hold and the applied spend.

        Raises:
            NotFoundError: If no hold has this id.
            InvalidStateError: If the hold is settled or expired.
            InsufficientCreditsError: If the balance no longer covers it.
        """
        return await self._capture(request_id, None, description)

    async def partial_capture(
        self,
        request_id: str,
        capture_amount: int,
        description: str | None = None,
    ) -> CaptureResult:
        """Spend part of a hold and release the rest.

        Capturing the whole amount is the same as capture_credits.

        Args:
            request_id: Hold to capture.
            capture_amount: Credits to spend (positive, at most the hold).
            description: Audit string for the spend entry.

        Returns:
            CaptureResult; the hold is PARTIAL_CAPTURED with refunded_amount
            set to the released credits.

        Raises:
            ValidationError: If capture_amount is not positive.
            NotFoundError: If no hold has this id.
            InvalidStateError: If the hold is settled or expired, or
                capture_amount exceeds it.
            InsufficientCreditsError: If the balance no longer covers it.
        """
        require_positive_amount(capture_amount)
        return await self._capture(request_id, capture_amount, description)

    async def refund_credits(
        self, request_id: str, reason: str | None = None
    ) -> CreditHold:
        """Release a hold without spending anything.

        An expired hold that is still HELD can be refunded.

        Args:
            request_id: Hold to release.
            reason: Why the hold was released (logged).

        Returns:
            The REFUNDED hold.

        Raises:
            NotFoundError: If no hold has this id.
            InvalidStateError: If the hold is already settled.
        """
        now = self._ledger.now()
        async with self._store.transaction() as ledger:
            hold = await self._load_held(ledger, request_id)
            refunded = await self._settle(
                ledger,
                request_id,
                CreditHoldStatus.REFUNDED,
                now,
                refunded_amount=hold.hold_amount,
            )

        logger.info(
            "credit_hold_refunded",
            user_id=refunded.user_id,
            request_id=request_id,
            amount=refunded.hold_amount,
            reason=reason,
        )
        return refunded

    async def refund_all_pending_holds(
        self, user_id: str, reason: str | None = None
    ) -> HoldRefundSummary:
        """Release every HELD hold a user has, one unit per hold.

        Holds settled by someone else in the meantime are skipped.
        """
        async with self._store.transaction() as ledger:
            pending = await ledger.list_pending_holds(user_id=user_id)

        refunded = 0
        total_amount = 0
        for hold in pending:
            try:
                released = await self.refund_credits(hold.request_id, reason)
            except InvalidStateError:
                logger.info(
                    "credit_hold_refund_skipped",
                    user_id=user_id,
                    request_id=hold.request_id,
                )
                continue
            refunded += 1
            total_amount += released.hold_amount
        return HoldRefundSummary(refunded=refunded, total_amount=total_amount)

    async def release_expired_holds(self) -> int:
        """Mark every HELD hold past its expiry as EXPIRED.

        Returns:
            Number of holds expired by this sweep.
        """
        now = self._ledger.now()
        async with self._store.transaction() as ledger:
            stale = await ledger.list_pending_holds(expired_by=now)

        expired = 0
        for hold in stale:
            async with self._store.transaction() as ledger:
                if await ledger.settle_hold(
                    hold.request_id,
                    CreditHoldStatus.EXPIRED,
                    now,
                    refunded_amount=hold.hold_amount,
                ):
                    expired += 1

        logger.info("credit_holds_expired", count=expired, scanned=len(stale))
        return expired
