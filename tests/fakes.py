"""In-memory stand-in for StripeClient; same method surface, no network."""
import copy
from typing import Any, Dict, List, Optional

from core.exceptions import ProviderError
from tests.factories import subscription_object


class FakeStripeClient:
    def __init__(self, create_status: str = "active", error: Optional[ProviderError] = None):
        self.create_status = create_status
        self.error = error
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.payment_methods: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.idempotency_keys: List[str] = []
        self._counter = 0

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if self.error is not None:
            raise self.error

    def _update(self, subscription_id: str, **changes) -> Dict[str, Any]:
        subscription = self.subscriptions[subscription_id]
        subscription.update(changes)
        return copy.deepcopy(subscription)

    def add_subscription(self, subscription_id: str, **kwargs) -> Dict[str, Any]:
        self.subscriptions[subscription_id] = subscription_object(subscription_id=subscription_id, **kwargs)
        return self.subscriptions[subscription_id]

    # Customers
    def find_or_create_customer(self, user_id: int, email: str, name: Optional[str] = None) -> str:
        self._record("customer")
        return f"cus_{user_id}"

    # Subscriptions
    def create_subscription(self, customer_id, price_id, metadata, idempotency_key, payment_method_id=None):
        self._record("subscription.create")
        self._counter += 1
        subscription = subscription_object(
            subscription_id=f"sub_{self._counter}",
            status=self.create_status,
            customer=customer_id,
            metadata=metadata,
            price_id=price_id,
        )
        subscription["latest_invoice"] = {"id": "in_first", "payment_intent": {"client_secret": "pi_secret"}}
        self.subscriptions[subscription["id"]] = subscription
        self.idempotency_keys.append(idempotency_key)
        return copy.deepcopy(subscription)

    def retrieve_subscription(self, subscription_id):
        self._record("subscription.retrieve")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def cancel_subscription(self, subscription_id):
        self._record("subscription.cancel")
        return self._update(subscription_id, status="canceled")

    def pause_subscription(self, subscription_id):
        self._record("subscription.pause")
        return self._update(subscription_id, pause_collection={"behavior": "keep_as_draft"})

    def resume_subscription(self, subscription_id):
        self._record("subscription.resume")
        return self._update(subscription_id, pause_collection=None)

    def set_cancel_at_period_end(self, subscription_id, value):
        self._record("subscription.cancel_at_period_end")
        return self._update(subscription_id, cancel_at_period_end=value)

    def set_default_payment_method(self, subscription_id, payment_method_id):
        self._record("subscription.payment_method")
        return self._update(subscription_id, default_payment_method=payment_method_id)

    def change_price(self, subscription_id, new_price_id, proration_behavior="create_prorations"):
        self._record("subscription.change_price")
        self.subscriptions[subscription_id]["items"]["data"][0]["price"] = {"id": new_price_id}
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retry_latest_invoice(self, subscription_id):
        self._record("invoice.pay")
        return self._update(subscription_id, status="active")

    # Invoices
    def list_invoices(self, subscription_id, status=None, limit=100):
        self._record("invoice.list")
        invoices = self.invoices.get(subscription_id, [])
        if status:
            invoices = [i for i in invoices if i.get("status") == status]
        return copy.deepcopy(invoices[:limit])

    def preview_upcoming_invoice(self, customer_id, subscription_id, new_price_id=None):
        self._record("invoice.create_preview")
        return {
            "customer": customer_id,
            "subscription": subscription_id,
            "amount_due": 1500 if new_price_id else 1000,
            "total": 1500 if new_price_id else 1000,
            "currency": "usd",
            "lines": {"data": [{"price": {"id": new_price_id or "price_monthly"}}]},
        }

    # Payment methods
    def create_setup_intent(self, customer_id):
        self._record("setup_intent.create")
        return {"id": "seti_1", "client_secret": "seti_secret", "customer": customer_id}

    def list_payment_methods(self, customer_id):
        self._record("payment_method.list")
        return [copy.deepcopy(pm) for pm in self.payment_methods.values() if pm.get("customer") == customer_id]

    def retrieve_payment_method(self, payment_method_id):
        self._record("payment_method.retrieve")
        if payment_method_id not in self.payment_methods:
            raise ProviderError("No such payment method", ProviderError.TERMINAL, "resource_missing")
        return copy.deepcopy(self.payment_methods[payment_method_id])

    def detach_payment_method(self, payment_method_id):
        self._record("payment_method.detach")
        payment_method = self.payment_methods.pop(payment_method_id)
        payment_method["customer"] = None
        return payment_method
