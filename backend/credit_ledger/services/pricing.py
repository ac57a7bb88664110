"""Fixed-price spends for metered image operations.

Prices live here as code constants so that a price change is a reviewed
code change. Every priced spend records enough metadata (project, image
count, resolution) to reconstruct what the credits paid for.
"""

from credit_ledger.core.errors import ValidationError
from credit_ledger.models.credit import CreditTransactionType
from credit_ledger.services.credit_ledger_service import (
    CreditLedgerService,
    CreditPreference,
    TypedDeductionResult,
)


class CreditPrice:
    """Credit cost per metered operation."""

    GENERATION_4 = 20
    GENERATION_2 = 10
    UPSCALE_4K = 10


# Supported generation batch sizes -> price
_GENERATION_PRICES: dict[int, int] = {
    4: CreditPrice.GENERATION_4,
    2: CreditPrice.GENERATION_2,
}


class PricedOperations:
    """Call-throughs from metered operations to the ledger.

    The generation/upscale layer calls these before doing the paid work and
    must not proceed when they raise.

    Args:
        ledger: Ledger engine to charge through.
    """

    def __init__(self, ledger: CreditLedgerService) -> None:
        self._ledger = ledger

    async def deduct_for_generation(
        self,
        user_id: str,
        project_id: str,
        image_count: int = 4,
    ) -> TypedDeductionResult:
        """Charge for an image generation batch.

        Args:
            user_id: User to charge.
            project_id: Project the images belong to.
            image_count: Images in the batch (4 or 2).

        Returns:
            TypedDeductionResult, including the watermark decision.

        Raises:
            ValidationError: If image_count has no price.
            InsufficientCreditsError: If the balance cannot cover the price.
        """
        price = _GENERATION_PRICES.get(image_count)
        if price is None:
            raise ValidationError(
                f"Unsupported image count: {image_count}",
                details=[
                    {"field": "image_count", "allowed": sorted(_GENERATION_PRICES)}
                ],
            )
        return await self._ledger.deduct_credits_with_type(
            user_id,
            price,
            CreditTransactionType.GENERATION,
            f"Image generation ({image_count} images)",
            preferred_type=CreditPreference.AUTO,
            metadata={
                "project_id": project_id,
                "image_count": image_count,
                "resolution": "2K",
            },
        )

    async def deduct_for_upscale(
        self, user_id: str, project_id: str
    ) -> TypedDeductionResult:
        """Charge for a single 4K upscale.

        Raises:
            InsufficientCreditsError: If the balance cannot cover the price.
        """
        return await self._ledger.deduct_credits_with_type(
            user_id,
            CreditPrice.UPSCALE_4K,
            CreditTransactionType.UPSCALE,
            "4K upscale",
            preferred_type=CreditPreference.AUTO,
            metadata={
                "project_id": project_id,
                "image_count": 1,
                "resolution": "4K",
            },
        )
