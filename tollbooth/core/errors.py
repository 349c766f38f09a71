"""Billing and routing error classes.

Every error carries a machine-readable code and a human-readable message
so collaborators (HTTP layer, job runners) can map them without parsing
strings. Provider failures live in ``tollbooth.providers.errors``.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tollbooth.services.admission import AdmissionDecision


def format_money(amount_cents: int, symbol: str = "€") -> str:
    """Format minor currency units for display (e.g. 1050 -> '€10.50').

    Presentation boundary only; never feed the result back into arithmetic.
    """
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}{symbol}{whole}.{cents:02d}"


class BillingError(Exception):
    """Base class for metering, ledger and routing errors.

    Attributes:
        code: Machine-readable error code (e.g., "INSUFFICIENT_FUNDS").
        message: Human-readable error message.
        details: Optional structured detail for the caller.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidInputError(BillingError):
    """Malformed amount, tenant id, entry kind or setting.

    Raised before any mutation and never retried.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(code="INVALID_INPUT", message=message, details=details)


class InsufficientFundsError(BillingError):
    """Balance too low for the requested charge.

    A business outcome rather than a fault: callers read ``required``,
    ``available`` and ``shortfall`` to prompt a top-up.

    Args:
        required: Amount needed in minor units.
        available: Current balance in minor units.
        message: Optional override for the default message.
    """

    def __init__(
        self,
        required: int,
        available: int,
        message: str | None = None,
    ) -> None:
        self.required = required
        self.available = available
        super().__init__(
            code="INSUFFICIENT_FUNDS",
            message=message
            or (
                f"Insufficient balance. Required: {format_money(required)}, "
                f"Available: {format_money(available)}, "
                f"Shortfall: {format_money(self.shortfall)}"
            ),
            details={
                "required_cents": required,
                "available_cents": available,
                "shortfall_cents": self.shortfall,
            },
        )

    @property
    def shortfall(self) -> int:
        """Missing amount in minor units (never negative)."""
        return max(0, self.required - self.available)


class AdmissionDeniedError(InsufficientFundsError):
    """Managed request rejected by the pre-flight check.

    No provider call was made, so nothing was incurred upstream.

    Args:
        decision: The denied admission decision.
    """

    def __init__(self, decision: "AdmissionDecision") -> None:
        self.decision = decision
        super().__init__(
            required=decision.required_balance_cents,
            available=decision.balance_cents,
            message=decision.reason,
        )
        self.code = "ADMISSION_DENIED"


class LedgerUnavailableError(BillingError):
    """The ledger backend failed mid-operation; the transaction was rolled back."""

    def __init__(self, message: str = "Ledger storage is unavailable") -> None:
        super().__init__(code="LEDGER_UNAVAILABLE", message=message)


class RoutingError(BillingError):
    """A request could not be routed (e.g. tenant credential failed to decrypt)."""

    def __init__(self, message: str) -> None:
        super().__init__(code="ROUTING_ERROR", message=message)


class FallbackExhaustedError(BillingError):
    """Primary and fallback provider calls both failed.

    Args:
        primary_error: Failure of the first attempt.
        fallback_error: Failure of the fallback attempt.
    """

    def __init__(self, primary_error: Exception, fallback_error: Exception) -> None:
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        super().__init__(
            code="FALLBACK_EXHAUSTED",
            message=(
                "Primary and fallback models failed: "
                f"primary: {type(primary_error).__name__}: {primary_error}; "
                f"fallback: {type(fallback_error).__name__}: {fallback_error}"
            ),
        )
