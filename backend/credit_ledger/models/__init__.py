"""SQLAlchemy ORM models for the credit ledger.

All models are exported from this module for convenient imports:
    from credit_ledger.models import CreditBalance, CreditTransaction

Models:
- base.py: Base, TimestampMixin, UTCDateTime
- credit.py: CreditBalance, CreditTransaction, CreditTransactionType,
  CreditHold, CreditHoldStatus
"""

from credit_ledger.models.base import Base, TimestampMixin, UTCDateTime
from credit_ledger.models.credit import (
    FREE_CREDIT_TYPES,
    GRANT_TYPES,
    SPEND_TYPES,
    CreditBalance,
    CreditHold,
    CreditHoldStatus,
    CreditTransaction,
    CreditTransactionType,
)

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    # Ledger
    "CreditBalance",
    "CreditTransaction",
    "CreditTransactionType",
    "FREE_CREDIT_TYPES",
    "GRANT_TYPES",
    "SPEND_TYPES",
    # Holds
    "CreditHold",
    "CreditHoldStatus",
]
