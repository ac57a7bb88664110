"""Ledger error classes.

Typed failures raised by the credit ledger. Each carries a machine-readable
code and the HTTP status an API layer should map it to, so callers can
translate ledger failures into user-facing responses without string matching.

Storage errors (SQLAlchemy, driver timeouts) are never wrapped here; they
propagate unchanged.
"""


class CreditLedgerError(Exception):
    """Base class for ledger errors.

    Attributes:
        code: Machine-readable error code (e.g., "INSUFFICIENT_CREDITS").
        message: Human-readable error message.
        status_code: HTTP status code an API layer should return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(CreditLedgerError):
    """Request validation failed (400).

    Raised before any store access, so a rejected call has no side effects.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class InsufficientCreditsError(CreditLedgerError):
    """Balance too low for the requested spend (402).

    Details include the balance that was checked and the amount required,
    so callers can report how many more credits are needed.

    Args:
        balance: Credits available in the checked balance.
        required: Credits the operation needs.
        credit_kind: Which balance was checked ("total", "free", "purchased").
    """

    def __init__(
        self,
        balance: int,
        required: int,
        credit_kind: str = "total",
    ) -> None:
        self.balance = balance
        self.required = required
        self.credit_kind = credit_kind
        if credit_kind == "total":
            message = f"Insufficient credits (required: {required}, available: {balance})"
        else:
            message = (
                f"Insufficient {credit_kind} credits "
                f"(required: {required}, available: {balance})"
            )
        super().__init__(
            code="INSUFFICIENT_CREDITS",
            message=message,
            status_code=402,
            details=[
                {
                    "balance": balance,
                    "required": required,
                    "shortfall": max(required - balance, 0),
                    "credit_kind": credit_kind,
                }
            ],
        )


class NotFoundError(CreditLedgerError):
    """Referenced ledger record does not exist (404).

    Args:
        resource: Kind of record (e.g., "Credit hold").
        resource_id: Identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class InvalidStateError(CreditLedgerError):
    """Business rule violation on an existing record (422).

    E.g., capturing a hold that was already captured or refunded.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=message,
            status_code=422,
            details=details,
        )
