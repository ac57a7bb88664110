"""FIFO arena over a user's active free-credit grants.

Free credits are consumed oldest grant first, ordered by (created_at, id).
Expire-soonest-first is deliberately not used: insertion order governs.

GrantQueue is a pure in-memory plan builder. The ledger engine loads the
active grants inside a unit of work, asks the queue for a ConsumptionPlan,
then applies the plan's draws through the store.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from credit_ledger.models.credit import CreditTransaction


@dataclass(frozen=True)
class GrantDraw:
    """Credits taken from one grant.

    Attributes:
        transaction_id: Grant the credits come from.
        amount: Credits drawn (positive).
    """

    transaction_id: int
    amount: int


@dataclass(frozen=True)
class ConsumptionPlan:
    """How a spend is split between free grants and purchased balance.

    Attributes:
        draws: Per-grant draws in consumption order.
        free_amount: Total drawn from free grants.
        purchased_amount: Remainder paid from purchased balance.
    """

    draws: tuple[GrantDraw, ...]
    free_amount: int
    purchased_amount: int

    @property
    def uses_free(self) -> bool:
        """Whether any part of the spend came from a free grant."""
        return self.free_amount > 0


class GrantQueue:
    """Oldest-first queue of (grant id, remaining credits).

    The queue snapshots remaining amounts at construction; it never mutates
    the grant objects it was built from.

    Args:
        grants: Active free grants. Ordered by (created_at, id) here, so
            callers need not rely on storage iteration order.
    """

    def __init__(self, grants: Iterable[CreditTransaction]) -> None:
        ordered = sorted(grants, key=lambda g: (g.created_at, g.id))
        self._slots: list[tuple[int, int]] = [
            (g.id, g.remaining_amount)
            for g in ordered
            if g.remaining_amount and g.remaining_amount > 0
        ]

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def grant_ids(self) -> list[int]:
        """Grant ids in consumption order."""
        return [grant_id for grant_id, _ in self._slots]

    @property
    def free_remaining(self) -> int:
        """Total unconsumed free credits across the queue."""
        return sum(remaining for _, remaining in self._slots)

    def plan(self, amount: int, *, cap: int | None = None) -> ConsumptionPlan:
        """Split a spend between free grants and purchased balance.

        Walks the grants oldest first, drawing each down before moving to
        the next, until amount is covered or the free credits run out. Any
        shortfall is assigned to purchased balance.

        Args:
            amount: Credits to spend (positive).
            cap: Upper bound on the total free draw. Used to keep the free
                portion within the balance when grant bookkeeping has
                drifted above it.

        Returns:
            ConsumptionPlan describing the draws.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        left = amount if cap is None else min(amount, max(cap, 0))
        draws: list[GrantDraw] = []
        for grant_id, remaining in self._slots:
            if left == 0:
                break
            take = min(remaining, left)
            draws.append(GrantDraw(transaction_id=grant_id, amount=take))
            left -= take

        free_amount = sum(d.amount for d in draws)
        return ConsumptionPlan(
            draws=tuple(draws),
            free_amount=free_amount,
            purchased_amount=amount - free_amount,
        )
