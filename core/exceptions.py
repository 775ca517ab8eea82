# core/exceptions.py
"""
Billing domain exceptions.

Services raise these; routes translate them into HTTP responses. Provider
failures carry a category so callers can tell "card declined" apart from
"temporarily unavailable, please retry".
"""
from typing import Optional, Dict, Any


class BillingError(Exception):
    """Base class for all billing/reconciliation errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# ============================================================
# Webhook ingestion
# ============================================================
class WebhookVerificationError(BillingError):
    """Bad signature or malformed payload. Never reaches the reconciler."""


class MalformedEventError(WebhookVerificationError):
    """Payload verified but its shape cannot be mapped to a typed event."""


class ReconciliationConflictError(BillingError):
    """Concurrent update on the same ledger row survived every retry."""


# ============================================================
# Ledger / management
# ============================================================
class SubscriptionNotFoundError(BillingError):
    pass


class CommunityNotFoundError(BillingError):
    pass


class DuplicateSubscriptionError(BillingError):
    """User already holds a live subscription for the community."""


class PaymentMethodNotFoundError(BillingError):
    pass


# ============================================================
# Payment provider
# ============================================================
class ProviderError(BillingError):
    """
    Typed failure from the payment provider.

    Attributes:
        category: "retryable" (timeouts, rate limits, provider 5xx) or
            "terminal" (card declined, invalid price, bad credentials)
        code: short machine-readable cause, e.g. "card_declined"
    """

    RETRYABLE = "retryable"
    TERMINAL = "terminal"

    def __init__(
        self,
        message: str,
        category: str,
        code: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.category = category
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return self.category == self.RETRYABLE

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "code": self.code, "message": self.message}


class ProviderNotConfiguredError(ProviderError):
    def __init__(self, message: str = "Stripe is not configured") -> None:
        super().__init__(message, category=ProviderError.TERMINAL, code="not_configured")


# ============================================================
# Reporting
# ============================================================
class InvoiceDataError(BillingError):
    """Malformed upstream invoice data; the invoice is skipped, not fatal."""
