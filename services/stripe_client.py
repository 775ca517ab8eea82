# ================================================================
# services/stripe_client.py: Stripe API client (timeouts + retries)
# ================================================================
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import stripe

from core.config import settings
from core.exceptions import ProviderError, ProviderNotConfiguredError

logger = logging.getLogger(__name__)

CARD_DECLINED = "card_declined"


def to_plain(obj: Any) -> Any:
    """StripeObject (or plain dict) to nested plain dicts/lists."""
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


def classify_stripe_error(exc: Exception) -> ProviderError:
    """Map a Stripe SDK exception onto a retryable/terminal ProviderError."""
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    details = {"stripe_error": exc.__class__.__name__}
    http_status = getattr(exc, "http_status", None)
    if http_status is not None:
        details["http_status"] = http_status

    if isinstance(exc, stripe.CardError):
        details["decline_code"] = getattr(exc, "code", None)
        return ProviderError(message, ProviderError.TERMINAL, CARD_DECLINED, details)
    if isinstance(exc, stripe.RateLimitError):
        return ProviderError(message, ProviderError.RETRYABLE, "rate_limited", details)
    if isinstance(exc, stripe.APIConnectionError):
        return ProviderError(message, ProviderError.RETRYABLE, "connection_error", details)
    if isinstance(exc, stripe.InvalidRequestError):
        return ProviderError(message, ProviderError.TERMINAL, getattr(exc, "code", None) or "invalid_request", details)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ProviderError(message, ProviderError.TERMINAL, "authentication_failed", details)
    if isinstance(exc, stripe.APIError):
        if http_status is None or http_status >= 500:
            return ProviderError(message, ProviderError.RETRYABLE, "provider_unavailable", details)
        return ProviderError(message, ProviderError.TERMINAL, "provider_error", details)
    return ProviderError(message, ProviderError.TERMINAL, "provider_error", details)


class StripeClient:
    """
    The only place that talks to the Stripe API.

    Every call gets the configured HTTP timeout, up to ``max_retries`` extra
    attempts with exponential backoff for retryable failures, and raises
    ProviderError once the budget is spent. The SDK's own retries are
    disabled so the budget stays fixed.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.max_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.PROVIDER_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.timeout = settings.STRIPE_TIMEOUT_SECONDS if timeout is None else timeout
        self._sleep = sleep
        self._configured = False

    # ------------------------
    # Plumbing
    # ------------------------
    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _configure(self) -> None:
        if self._configured:
            return
        if not self.is_configured:
            raise ProviderNotConfiguredError()
        stripe.api_key = self.api_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.new_default_http_client(timeout=self.timeout)
        self._configured = True
        logger.info(f"✅ Stripe client configured (timeout={self.timeout}s, retries={self.max_retries})")

    def _request(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        self._configure()
        attempt = 0
        while True:
            try:
                return to_plain(fn(*args, **kwargs))
            except stripe.StripeError as e:
                error = classify_stripe_error(e)
                if not error.is_retryable or attempt >= self.max_retries:
                    logger.error(f"❌ Stripe {operation} failed ({error.category}/{error.code}): {error.message}")
                    raise error from e
                delay = self.backoff_base * (2 ** attempt)
                attempt += 1
                logger.warning(f"⚠️ Stripe {operation} {error.code}, retry {attempt}/{self.max_retries} in {delay:.2f}s")
                self._sleep(delay)

    # ------------------------
    # Customers
    # ------------------------
    def find_or_create_customer(self, user_id: int, email: str, name: Optional[str] = None) -> str:
        """Customer is keyed on metadata.user_id; created on first use."""
        found = self._request(
            "customer.search",
            stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        data = (found or {}).get("data") or []
        if data:
            return data[0]["id"]

        customer = self._request(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": str(user_id)},
        )
        logger.info(f"👤 Created Stripe customer {customer['id']} for user {user_id}")
        return customer["id"]

    # ------------------------
    # Subscriptions
    # ------------------------
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        payment_method_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        return self._request("subscription.create", stripe.Subscription.create, **params)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        return self._request("subscription.modify", stripe.Subscription.modify, subscription_id, **params)

    def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self.update_subscription(subscription_id, pause_collection={"behavior": "keep_as_draft"})

    def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        # Empty string unsets pause_collection
        return self.update_subscription(subscription_id, pause_collection="")

    def set_cancel_at_period_end(self, subscription_id: str, value: bool) -> Dict[str, Any]:
        return self.update_subscription(subscription_id, cancel_at_period_end=value)

    def set_default_payment_method(self, subscription_id: str, payment_method_id: str) -> Dict[str, Any]:
        return self.update_subscription(subscription_id, default_payment_method=payment_method_id)

    def change_price(
        self, subscription_id: str, new_price_id: str, proration_behavior: str = "create_prorations"
    ) -> Dict[str, Any]:
        current = self.retrieve_subscription(subscription_id)
        item_id = current["items"]["data"][0]["id"]
        return self.update_subscription(
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior=proration_behavior,
        )

    def retry_latest_invoice(self, subscription_id: str) -> Dict[str, Any]:
        current = self.retrieve_subscription(subscription_id)
        latest_invoice = current.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get("id")
        if latest_invoice:
            self._request("invoice.pay", stripe.Invoice.pay, latest_invoice)
        return self.retrieve_subscription(subscription_id)

    # ------------------------
    # Invoices
    # ------------------------
    def list_invoices(self, subscription_id: str, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"subscription": subscription_id, "limit": limit}
        if status:
            params["status"] = status
        result = self._request("invoice.list", stripe.Invoice.list, **params)
        return list((result or {}).get("data") or [])

    def preview_upcoming_invoice(
        self, customer_id: str, subscription_id: str, new_price_id: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"customer": customer_id, "subscription": subscription_id}
        if new_price_id:
            current = self.retrieve_subscription(subscription_id)
            params["subscription_details"] = {
                "items": [{"id": current["items"]["data"][0]["id"], "price": new_price_id}],
            }
        return self._request("invoice.create_preview", stripe.Invoice.create_preview, **params)

    # ------------------------
    # Payment methods
    # ------------------------
    def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        return self._request(
            "setup_intent.create", stripe.SetupIntent.create, customer=customer_id, payment_method_types=["card"]
        )

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        result = self._request("payment_method.list", stripe.PaymentMethod.list, customer=customer_id, type="card")
        return list((result or {}).get("data") or [])

    def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._request("payment_method.retrieve", stripe.PaymentMethod.retrieve, payment_method_id)

    def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return self._request("payment_method.detach", stripe.PaymentMethod.detach, payment_method_id)


# ------------------------
# Global client instance
# ------------------------
_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """FastAPI dependency / shared accessor for the process-wide client."""
    global _client
    if _client is None:
        _client = StripeClient()
    return _client
