"""Credit ledger ORM models.

CreditBalance holds one cached balance row per user. CreditTransaction is
the append-only log of every balance change; only remaining_amount on
free-credit grants is ever updated after insert. CreditHold reserves credits
for metered work until it is captured or released; an open hold never
changes the balance or the log.

Invariant: SUM(credit_transactions.amount) == credit_balances.balance
for every user.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from credit_ledger.models.base import Base, TimestampMixin, UTCDateTime

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_TRANSACTION_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")
_METADATA_TYPE = JSON().with_variant(JSONB(), "postgresql")


class CreditTransactionType(str, Enum):
    """Category of a balance-affecting event.

    Grant types carry positive amounts; spend types carry negative amounts.

    Values:
        PURCHASE: Paid top-up. Never expires, not tracked per grant.
        BONUS: Signup or admin bonus. Expiring, tracked per grant.
        REFERRAL: Referral reward. Expiring, tracked per grant.
        GENERATION: Image generation spend.
        UPSCALE: 4K upscale spend.
        EXPIRED: Unused free credits removed by the expiry sweep.
    """

    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    REFERRAL = "REFERRAL"
    GENERATION = "GENERATION"
    UPSCALE = "UPSCALE"
    EXPIRED = "EXPIRED"


GRANT_TYPES: frozenset[CreditTransactionType] = frozenset(
    {
        CreditTransactionType.PURCHASE,
        CreditTransactionType.BONUS,
        CreditTransactionType.REFERRAL,
    }
)
"""Types accepted by add_credits."""

FREE_CREDIT_TYPES: frozenset[CreditTransactionType] = frozenset(
    {CreditTransactionType.BONUS, CreditTransactionType.REFERRAL}
)
"""Grant types whose credits expire and taint output with a watermark."""

SPEND_TYPES: frozenset[CreditTransactionType] = frozenset(
    {CreditTransactionType.GENERATION, CreditTransactionType.UPSCALE}
)
"""Types accepted by the deduction operations."""

_TYPE_VALUES = ", ".join(f"'{t.value}'" for t in CreditTransactionType)


class CreditHoldStatus(str, Enum):
    """Lifecycle state of a credit hold.

    HELD is the only non-terminal state.
    """

    HELD = "HELD"
    CAPTURED = "CAPTURED"
    PARTIAL_CAPTURED = "PARTIAL_CAPTURED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


_HOLD_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in CreditHoldStatus)


class CreditBalance(Base, TimestampMixin):
    """Current spendable credit total for one user.

    Created lazily by the first grant (upsert) or explicitly at account
    initialization with a zero balance. Never deleted.

    Attributes:
        user_id: Owner identifier (primary key).
        balance: Current total spendable credits (>= 0).
        created_at: Row creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_nonneg"),
    )

    user_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )


class CreditTransaction(Base):
    """Append-only ledger entry for a single balance change.

    Positive amounts = grants (purchase, bonus, referral).
    Negative amounts = spends (generation, upscale, expiry).

    Attributes:
        id: Monotonic integer primary key (tie-breaker for creation order).
        user_id: Owner identifier.
        amount: Signed credit amount, never zero.
        type: CreditTransactionType value.
        description: Human-readable audit string.
        metadata_: Open key-value bag (project id, admin id, image count...).
        remaining_amount: Unconsumed part of a BONUS/REFERRAL grant.
            NULL for purchases and spends.
        expires_at: Expiry of a BONUS/REFERRAL grant. NULL means no expiry.
        created_at: Transaction timestamp.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_txn_amount_nonzero"),
        CheckConstraint(
            f"type IN ({_TYPE_VALUES})",
            name="ck_credit_txn_type_valid",
        ),
        CheckConstraint(
            "remaining_amount IS NULL "
            "OR (remaining_amount >= 0 AND remaining_amount <= amount)",
            name="ck_credit_txn_remaining_bounds",
        ),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index("ix_credit_transactions_user_type", "user_id", "type"),
    )

    id: Mapped[int] = mapped_column(
        _TRANSACTION_ID_TYPE,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        _METADATA_TYPE,
        nullable=False,
        default=dict,
    )
    remaining_amount: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    @property
    def is_free_grant(self) -> bool:
        """Whether this entry is an expiring, watermark-tainting grant."""
        return self.type in {t.value for t in FREE_CREDIT_TYPES}

    def is_active_at(self, moment: datetime) -> bool:
        """Check if this free grant still has spendable credits at a moment.

        Args:
            moment: Point in time to evaluate expiry against.

        Returns:
            True for free grants with remaining credits that have not expired.
        """
        if not self.is_free_grant or not self.remaining_amount:
            return False
        return self.expires_at is None or self.expires_at > moment


class CreditHold(Base):
    """Reservation of credits for one metered request.

    A hold is opened against the available balance (balance minus other
    active holds) and later settled exactly once: captured in full,
    captured in part with the rest released, refunded, or expired. Only
    a capture touches the balance, through an ordinary spend entry.

    Attributes:
        id: Surrogate primary key.
        request_id: Caller-facing hold identifier (UUID string, unique).
        user_id: Owner identifier.
        hold_amount: Credits reserved (positive).
        spend_type: GENERATION or UPSCALE, used for the capture entry.
        status: CreditHoldStatus value.
        description: Audit string copied onto the capture entry.
        metadata_: Key-values copied onto the capture entry.
        captured_amount: Credits taken at capture. NULL until captured.
        refunded_amount: Credits released without being spent.
        transaction_id: Spend entry written by the capture.
        created_at: Hold creation time.
        expires_at: Time after which the hold no longer reserves credits.
        settled_at: Time the hold left HELD.
    """

    __tablename__ = "credit_holds"
    __table_args__ = (
        CheckConstraint("hold_amount > 0", name="ck_credit_hold_amount_positive"),
        CheckConstraint(
            f"status IN ({_HOLD_STATUS_VALUES})",
            name="ck_credit_hold_status_valid",
        ),
        CheckConstraint(
            "captured_amount IS NULL "
            "OR (captured_amount > 0 AND captured_amount <= hold_amount)",
            name="ck_credit_hold_captured_bounds",
        ),
        Index("ix_credit_holds_user_status", "user_id", "status"),
        Index("ix_credit_holds_status_expires", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(
        _TRANSACTION_ID_TYPE,
        primary_key=True,
        autoincrement=True,
    )
    request_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    hold_amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    spend_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CreditHoldStatus.HELD.value,
    )
    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        _METADATA_TYPE,
        nullable=False,
        default=dict,
    )
    captured_amount: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    refunded_amount: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    transaction_id: Mapped[int | None] = mapped_column(
        _TRANSACTION_ID_TYPE,
        ForeignKey("credit_transactions.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    def is_active_at(self, moment: datetime) -> bool:
        """Whether the hold still reserves credits at a moment."""
        return self.status == CreditHoldStatus.HELD.value and self.expires_at > moment
