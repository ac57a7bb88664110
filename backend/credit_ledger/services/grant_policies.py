"""Named grant recipes layered on the ledger engine.

Signup bonus, referral reward and admin bonus. Amounts and expiry windows
come from settings. Idempotency (not granting twice for the same signup or
referral event) is the caller's responsibility.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Final

import structlog

from credit_ledger.core.config import Settings
from credit_ledger.core.config import settings as default_settings
from credit_ledger.core.errors import ValidationError
from credit_ledger.models.credit import CreditTransaction, CreditTransactionType
from credit_ledger.services.credit_ledger_service import CreditLedgerService

logger = structlog.get_logger()


class SignupType(str, Enum):
    """Account tier chosen at signup."""

    GENERAL = "general"
    BUSINESS = "business"


class _Unset(Enum):
    TOKEN = 0


_UNSET: Final = _Unset.TOKEN


@dataclass(frozen=True)
class ReferralRewardResult:
    """Balances of both parties after a referral reward."""

    referrer_balance: int
    referee_balance: int


@dataclass(frozen=True)
class AdminBonusResult:
    """Outcome of an operator-initiated bonus.

    Attributes:
        new_balance: Recipient's balance after the grant.
        transaction: The BONUS entry, with the admin id in its metadata.
    """

    new_balance: int
    transaction: CreditTransaction


class GrantPolicies:
    """Grant recipes for signup, referral and admin flows.

    Args:
        ledger: Ledger engine to grant through.
        settings: Recipe amounts and expiry windows.
    """

    def __init__(
        self,
        ledger: CreditLedgerService,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._settings = settings or default_settings

    async def grant_signup_bonus(
        self, user_id: str, signup_type: SignupType | str
    ) -> int:
        """Grant the signup bonus for an account tier.

        Args:
            user_id: New user.
            signup_type: "general" or "business".

        Returns:
            Balance after the grant.

        Raises:
            ValidationError: If signup_type is unknown.
        """
        try:
            tier = SignupType(signup_type)
        except ValueError:
            raise ValidationError(
                f"Invalid signup type: {signup_type!r}",
                details=[
                    {"field": "signup_type", "allowed": [t.value for t in SignupType]}
                ],
            ) from None

        if tier is SignupType.BUSINESS:
            amount = self._settings.signup_bonus_business_credits
            description = "Business signup bonus"
        else:
            amount = self._settings.signup_bonus_general_credits
            description = "Signup bonus"

        return await self._ledger.add_credits(
            user_id,
            amount,
            CreditTransactionType.BONUS,
            description,
            expires_in_days=self._settings.free_credit_expiry_days,
            metadata={"type": "signup_bonus", "signup_type": tier.value},
        )

    async def grant_referral_reward(
        self, referrer_id: str, referee_id: str
    ) -> ReferralRewardResult:
        """Grant the referral reward to both parties.

        The two grants are independent units of work. If the referee grant
        fails, the referrer grant stays committed and the error propagates;
        the caller decides on any compensating action.

        Args:
            referrer_id: User who made the referral.
            referee_id: User who signed up through it.

        Returns:
            ReferralRewardResult with both balances.
        """
        amount = self._settings.referral_reward_credits
        expiry = self._settings.free_credit_expiry_days

        referrer_balance = await self._ledger.add_credits(
            referrer_id,
            amount,
            CreditTransactionType.REFERRAL,
            "Referral reward (referrer)",
            expires_in_days=expiry,
            metadata={"type": "referral", "role": "referrer", "referee_id": referee_id},
        )
        try:
            referee_balance = await self._ledger.add_credits(
                referee_id,
                amount,
                CreditTransactionType.REFERRAL,
                "Referral reward (referee)",
                expires_in_days=expiry,
                metadata={
                    "type": "referral",
                    "role": "referee",
                    "referrer_id": referrer_id,
                },
            )
        except Exception:
            logger.error(
                "referral_reward_partial",
                referrer_id=referrer_id,
                referee_id=referee_id,
                amount=amount,
            )
            raise

        return ReferralRewardResult(
            referrer_balance=referrer_balance,
            referee_balance=referee_balance,
        )

    async def grant_admin_bonus(
        self,
        admin_id: str,
        user_id: str,
        amount: int,
        description: str,
        expires_in_days: int | None | _Unset = _UNSET,
    ) -> AdminBonusResult:
        """Grant an operator-initiated bonus.

        Args:
            admin_id: Operator issuing the bonus (recorded for audit).
            user_id: Recipient.
            amount: Credits to grant (positive).
            description: Audit string shown in the recipient's history.
            expires_in_days: Expiry window. Omitted means the configured
                default window; None means the grant never expires.

        Returns:
            AdminBonusResult with the new balance and the entry.

        Raises:
            ValidationError: If amount or expiry window is invalid.
        """
        if expires_in_days is _UNSET:
            expires_in_days = self._settings.admin_bonus_default_expiry_days

        result = await self._ledger.grant(
            user_id,
            amount,
            CreditTransactionType.BONUS,
            description,
            expires_in_days=expires_in_days,
            metadata={"type": "admin_bonus", "admin_id": admin_id},
        )
        logger.info(
            "admin_bonus_granted",
            admin_id=admin_id,
            user_id=user_id,
            amount=amount,
            expires_in_days=expires_in_days,
        )
        return AdminBonusResult(new_balance=result.balance, transaction=result.transaction)
