"""Tests for CreditHoldService: hold, capture, refund and hold expiry."""

import asyncio

import pytest

from credit_ledger.core.errors import (
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from credit_ledger.models.credit import CreditHoldStatus, CreditTransactionType
from credit_ledger.repositories.ledger_store import LedgerStore
from credit_ledger.repositories.memory_store import InMemoryLedgerStore
from credit_ledger.services.credit_holds import CreditHoldService
from credit_ledger.services.credit_ledger_service import (
    CreditLedgerService,
    UsedCreditType,
)
from credit_ledger.services.credit_reporting import CreditReportingService
from tests.conftest import FROZEN_NOW, USER_ID, FrozenClock, ledger_sum

PURCHASE = CreditTransactionType.PURCHASE
BONUS = CreditTransactionType.BONUS
GENERATION = CreditTransactionType.GENERATION


# =============================================================================
# Hold
# =============================================================================


class TestHoldCredits:
    """Tests for hold_credits() and the available balance."""

    async def test_hold_reserves_without_touching_balance(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        reporting: CreditReportingService,
    ) -> None:
        """A hold lowers the available balance but writes no ledger entry."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")

        hold = await holds.hold_credits(USER_ID, 20, description="4 images")

        assert hold.status == CreditHoldStatus.HELD.value
        assert hold.hold_amount == 20
        assert hold.expires_at == FROZEN_NOW.replace(hour=13)
        assert await ledger.get_balance(USER_ID) == 50
        available = await holds.get_available_balance(USER_ID)
        assert available.pending_holds == 20
        assert available.available == 30
        page = await reporting.get_credit_transactions(USER_ID)
        assert page.total == 1
        assert await holds.is_hold_valid(hold.request_id) is True

    async def test_hold_cannot_exceed_available_balance(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Credits reserved by one hold cannot be claimed by another."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        await holds.hold_credits(USER_ID, 30)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await holds.hold_credits(USER_ID, 30)

        assert exc_info.value.credit_kind == "available"
        assert exc_info.value.balance == 20
        assert exc_info.value.required == 30
        available = await holds.get_available_balance(USER_ID)
        assert available.pending_holds == 30

    async def test_hold_for_unknown_user_is_rejected(
        self, holds: CreditHoldService
    ) -> None:
        """A user with no balance has nothing to reserve."""
        with pytest.raises(InsufficientCreditsError):
            await holds.hold_credits("nobody", 1)

    async def test_expired_holds_stop_reserving(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        clock: FrozenClock,
    ) -> None:
        """After its lifetime a hold no longer counts against availability."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 40)
        clock.advance(minutes=61)

        available = await holds.get_available_balance(USER_ID)

        assert available.available == 50
        assert await holds.is_hold_valid(hold.request_id) is False
        await holds.hold_credits(USER_ID, 50)

    @pytest.mark.parametrize(
        ("amount", "txn_type"),
        [(0, GENERATION), (-5, GENERATION), (10, PURCHASE), (10, "GIFT")],
    )
    async def test_rejects_bad_input(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        amount: int,
        txn_type: object,
    ) -> None:
        """Holds need a positive amount and a spend type."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        with pytest.raises(ValidationError):
            await holds.hold_credits(USER_ID, amount, txn_type)

    async def test_unknown_hold_is_not_valid(self, holds: CreditHoldService) -> None:
        """Looking up a missing hold returns None."""
        assert await holds.get_hold("missing") is None
        assert await holds.is_hold_valid("missing") is False


# =============================================================================
# Capture
# =============================================================================


class TestCaptureCredits:
    """Tests for capture_credits() and partial_capture()."""

    async def test_capture_spends_held_amount(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        store: LedgerStore,
    ) -> None:
        """Capture debits the balance and records one spend entry."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(
            USER_ID, 20, description="gen", metadata={"project_id": "p-1"}
        )

        result = await holds.capture_credits(hold.request_id)

        assert result.hold.status == CreditHoldStatus.CAPTURED.value
        assert result.captured_amount == 20
        assert result.released_amount == 0
        assert result.deduction.balance == 30
        assert result.deduction.used_credit_type is UsedCreditType.PURCHASED
        txn = result.deduction.transaction
        assert txn.amount == -20
        assert txn.type == GENERATION.value
        assert txn.description == "gen"
        assert txn.metadata_["request_id"] == hold.request_id
        assert txn.metadata_["project_id"] == "p-1"
        assert result.hold.transaction_id == txn.id
        assert await ledger.get_balance(USER_ID) == 30
        assert await ledger_sum(store, USER_ID) == 30
        available = await holds.get_available_balance(USER_ID)
        assert available.pending_holds == 0

    async def test_capture_draws_free_credits_first(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Captured spends use free grants and carry the watermark decision."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        await ledger.add_credits(USER_ID, 10, BONUS, "bonus", expires_in_days=30)
        hold = await holds.hold_credits(USER_ID, 20)

        result = await holds.capture_credits(hold.request_id)

        assert result.deduction.free_amount == 10
        assert result.deduction.purchased_amount == 10
        assert result.deduction.apply_watermark is True
        breakdown = await ledger.get_balance_breakdown(USER_ID)
        assert breakdown.free == 0

    async def test_partial_capture_releases_the_rest(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Only the captured part is spent; the remainder is free again."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        result = await holds.partial_capture(hold.request_id, 10)

        assert result.hold.status == CreditHoldStatus.PARTIAL_CAPTURED.value
        assert result.captured_amount == 10
        assert result.released_amount == 10
        assert await ledger.get_balance(USER_ID) == 40
        available = await holds.get_available_balance(USER_ID)
        assert available.available == 40

    async def test_partial_capture_of_whole_amount_is_full_capture(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Capturing everything leaves nothing to release."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        result = await holds.partial_capture(hold.request_id, 20)

        assert result.hold.status == CreditHoldStatus.CAPTURED.value
        assert result.hold.refunded_amount is None

    async def test_partial_capture_above_hold_is_rejected(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """A capture cannot take more than was reserved."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        with pytest.raises(InvalidStateError):
            await holds.partial_capture(hold.request_id, 21)

        assert await holds.is_hold_valid(hold.request_id) is True
        assert await ledger.get_balance(USER_ID) == 50

    async def test_partial_capture_rejects_non_positive_amount(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """A zero capture is a validation error, not a silent refund."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        with pytest.raises(ValidationError):
            await holds.partial_capture(hold.request_id, 0)

    async def test_double_capture_is_rejected(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        store: LedgerStore,
    ) -> None:
        """A second capture fails and charges nothing."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        await holds.capture_credits(hold.request_id)

        with pytest.raises(InvalidStateError) as exc_info:
            await holds.capture_credits(hold.request_id)

        assert exc_info.value.status_code == 422
        assert await ledger.get_balance(USER_ID) == 30
        assert await ledger_sum(store, USER_ID) == 30

    async def test_capture_after_refund_is_rejected(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """A released hold can no longer be spent."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        await holds.refund_credits(hold.request_id)

        with pytest.raises(InvalidStateError):
            await holds.capture_credits(hold.request_id)

        assert await ledger.get_balance(USER_ID) == 50

    async def test_capture_of_expired_hold_is_rejected(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        clock: FrozenClock,
    ) -> None:
        """Once expired, a hold can only be released."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        clock.advance(hours=2)

        with pytest.raises(InvalidStateError, match="expired"):
            await holds.capture_credits(hold.request_id)

        refunded = await holds.refund_credits(hold.request_id)
        assert refunded.status == CreditHoldStatus.REFUNDED.value

    async def test_capture_fails_when_balance_was_spent_elsewhere(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """A shortfall at capture leaves the hold open and the balance intact."""
        await ledger.add_credits(USER_ID, 30, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        await ledger.deduct_credits(USER_ID, 25, GENERATION, "direct spend")

        with pytest.raises(InsufficientCreditsError):
            await holds.capture_credits(hold.request_id)

        assert await ledger.get_balance(USER_ID) == 5
        stored = await holds.get_hold(hold.request_id)
        assert stored is not None
        assert stored.status == CreditHoldStatus.HELD.value

    async def test_unknown_hold_is_not_found(self, holds: CreditHoldService) -> None:
        """Capturing a missing hold raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await holds.capture_credits("missing")

    async def test_racing_captures_settle_once(
        self, memory_store: InMemoryLedgerStore, clock: FrozenClock, test_settings
    ) -> None:
        """Two captures of one hold: one spends, the other is rejected."""
        ledger = CreditLedgerService(memory_store, clock=clock, settings=test_settings)
        holds = CreditHoldService(ledger, settings=test_settings)
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        results = await asyncio.gather(
            holds.capture_credits(hold.request_id),
            holds.capture_credits(hold.request_id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert memory_store.balances[USER_ID] == 30


# =============================================================================
# Refund
# =============================================================================


class TestRefundCredits:
    """Tests for refund_credits() and refund_all_pending_holds()."""

    async def test_refund_releases_hold(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        reporting: CreditReportingService,
    ) -> None:
        """A refund frees the reservation and leaves the log untouched."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)

        refunded = await holds.refund_credits(hold.request_id, reason="provider error")

        assert refunded.status == CreditHoldStatus.REFUNDED.value
        assert refunded.refunded_amount == 20
        assert refunded.settled_at == FROZEN_NOW
        available = await holds.get_available_balance(USER_ID)
        assert available.available == 50
        page = await reporting.get_credit_transactions(USER_ID)
        assert page.total == 1

    async def test_double_refund_is_rejected(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """A hold is released at most once."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        await holds.refund_credits(hold.request_id)

        with pytest.raises(InvalidStateError):
            await holds.refund_credits(hold.request_id)

    async def test_refund_after_capture_is_rejected(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Captured credits are not handed back by a hold refund."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        await holds.capture_credits(hold.request_id)

        with pytest.raises(InvalidStateError):
            await holds.refund_credits(hold.request_id)

        assert await ledger.get_balance(USER_ID) == 30

    async def test_refund_unknown_hold(self, holds: CreditHoldService) -> None:
        """Refunding a missing hold raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await holds.refund_credits("missing")

    async def test_refund_all_pending_holds(
        self, ledger: CreditLedgerService, holds: CreditHoldService
    ) -> None:
        """Every HELD hold is released; settled ones are left alone."""
        await ledger.add_credits(USER_ID, 100, PURCHASE, "top-up")
        first = await holds.hold_credits(USER_ID, 20)
        await holds.hold_credits(USER_ID, 30)
        await holds.hold_credits(USER_ID, 10)
        await holds.capture_credits(first.request_id)

        summary = await holds.refund_all_pending_holds(USER_ID, reason="cleanup")

        assert summary.refunded == 2
        assert summary.total_amount == 40
        available = await holds.get_available_balance(USER_ID)
        assert available.pending_holds == 0
        assert available.available == 80


# =============================================================================
# Hold expiry
# =============================================================================


class TestReleaseExpiredHolds:
    """Tests for release_expired_holds()."""

    async def test_expires_only_stale_holds(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        clock: FrozenClock,
    ) -> None:
        """Holds past their lifetime become EXPIRED; fresh ones stay HELD."""
        await ledger.add_credits(USER_ID, 100, PURCHASE, "top-up")
        stale = await holds.hold_credits(USER_ID, 20)
        clock.advance(minutes=45)
        fresh = await holds.hold_credits(USER_ID, 30)
        clock.advance(minutes=30)

        count = await holds.release_expired_holds()

        assert count == 1
        stale_after = await holds.get_hold(stale.request_id)
        fresh_after = await holds.get_hold(fresh.request_id)
        assert stale_after is not None
        assert fresh_after is not None
        assert stale_after.status == CreditHoldStatus.EXPIRED.value
        assert stale_after.refunded_amount == 20
        assert fresh_after.status == CreditHoldStatus.HELD.value
        assert await ledger.get_balance(USER_ID) == 100

    async def test_second_sweep_finds_nothing(
        self,
        ledger: CreditLedgerService,
        holds: CreditHoldService,
        clock: FrozenClock,
    ) -> None:
        """Expired holds are settled once."""
        await ledger.add_credits(USER_ID, 50, PURCHASE, "top-up")
        hold = await holds.hold_credits(USER_ID, 20)
        clock.advance(hours=2)

        assert await holds.release_expired_holds() == 1
        assert await holds.release_expired_holds() == 0
        with pytest.raises(InvalidStateError):
            await holds.refund_credits(hold.request_id)
