# ================================================================
# services/event_mapper.py: Stripe wire shapes -> typed billing events
# ================================================================
"""
Translate Stripe event payloads and API objects into ``BillingEvent``.

Nothing past this module reads Stripe's wire format. The mapper absorbs the
differences between API versions (period fields moved onto subscription
items, invoice -> subscription link moved under ``parent``) and normalizes
provider statuses into the ledger's ``SubscriptionState``.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.clock import from_timestamp, utcnow
from core.exceptions import MalformedEventError
from models.models import SubscriptionState


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "SubscriptionCreated"
    SUBSCRIPTION_UPDATED = "SubscriptionUpdated"
    SUBSCRIPTION_DELETED = "SubscriptionDeleted"
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    TRIAL_WILL_END = "TrialWillEnd"
    SUBSCRIPTION_PAUSED = "SubscriptionPaused"
    SUBSCRIPTION_RESUMED = "SubscriptionResumed"
    UPCOMING_INVOICE = "UpcomingInvoice"


STRIPE_EVENT_TYPES: Dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": EventKind.TRIAL_WILL_END,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_RESUMED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "invoice.upcoming": EventKind.UPCOMING_INVOICE,
}

INVOICE_KINDS = frozenset({
    EventKind.PAYMENT_SUCCEEDED,
    EventKind.PAYMENT_FAILED,
    EventKind.UPCOMING_INVOICE,
})

NOTIFY_ONLY_KINDS = frozenset({EventKind.TRIAL_WILL_END, EventKind.UPCOMING_INVOICE})

_STATUS_MAP = {
    "active": SubscriptionState.ACTIVE,
    "trialing": SubscriptionState.TRIALING,
    "past_due": SubscriptionState.PAST_DUE,
    "unpaid": SubscriptionState.UNPAID,
    "canceled": SubscriptionState.CANCELED,
    "paused": SubscriptionState.PAUSED,
    "incomplete": SubscriptionState.PAST_DUE,
    "incomplete_expired": SubscriptionState.CANCELED,
}


# ============================================================
# Typed events
# ============================================================
@dataclass(frozen=True)
class InvoiceData:
    provider_invoice_id: Optional[str]
    amount_paid: int
    amount_due: int
    currency: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    paid_at: Optional[datetime] = None
    next_payment_attempt: Optional[datetime] = None


@dataclass(frozen=True)
class BillingEvent:
    kind: EventKind
    provider_subscription_id: Optional[str]
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    occurred_at: Optional[datetime] = None
    status: Optional[SubscriptionState] = None
    provider_status: Optional[str] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    invoice: Optional[InvoiceData] = None

    @property
    def is_notify_only(self) -> bool:
        return self.kind in NOTIFY_ONLY_KINDS

    @property
    def creation_request_id(self) -> Optional[str]:
        return self.metadata.get("creation_request_id")


# ============================================================
# Field helpers
# ============================================================
def normalize_status(status: Any, cancel_at_period_end: bool = False, pause_collection: Any = None) -> SubscriptionState:
    """Stripe subscription status -> ledger state."""
    if not isinstance(status, str) or status not in _STATUS_MAP:
        raise MalformedEventError(f"Unknown subscription status: {status!r}")

    state = _STATUS_MAP[status]
    if state in (SubscriptionState.ACTIVE, SubscriptionState.TRIALING):
        if pause_collection:
            return SubscriptionState.PAUSED
        if cancel_at_period_end:
            return SubscriptionState.CANCEL_SCHEDULED
    return state


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        inner = value.get("id")
        return inner if isinstance(inner, str) and inner else None
    return None


def _mapping(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Nested object under ``key``; absent means empty, anything else is malformed."""
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEventError(f"Expected an object for {key}, got {type(value).__name__}")
    return value


def _list_data(obj: Dict[str, Any], key: str) -> List[Any]:
    """``data`` of a Stripe list object such as ``items`` or ``lines``."""
    data = _mapping(obj, key).get("data")
    if data is None:
        return []
    if not isinstance(data, list):
        raise MalformedEventError(f"Expected a list for {key}.data, got {type(data).__name__}")
    return data


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = _list_data(obj, "items")
    return items[0] if items and isinstance(items[0], dict) else {}


def _timestamp(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError(f"Invalid timestamp for {field_name}: {value!r}")
    return from_timestamp(value)


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _minor_units(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedEventError(f"Invalid amount for {field_name}: {value!r}")
    return value


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from either the legacy or the ``parent`` invoice layout."""
    found = _object_id(invoice.get("subscription"))
    if found:
        return found
    details = _mapping(_mapping(invoice, "parent"), "subscription_details")
    return _object_id(details.get("subscription"))


def invoice_period(invoice: Dict[str, Any]):
    """(start, end) from the first line item, else the invoice's own period."""
    lines = _list_data(invoice, "lines")
    if lines and isinstance(lines[0], dict):
        period = _mapping(lines[0], "period")
        if period.get("start") is not None and period.get("end") is not None:
            return _timestamp(period["start"], "period.start"), _timestamp(period["end"], "period.end")
    return (
        _timestamp(invoice.get("period_start"), "period_start"),
        _timestamp(invoice.get("period_end"), "period_end"),
    )


def _failed_payment_status(invoice: Dict[str, Any]) -> str:
    expanded = invoice.get("subscription")
    if isinstance(expanded, dict) and isinstance(expanded.get("status"), str):
        return expanded["status"]
    # No further attempt scheduled means Stripe gave up retrying
    return "unpaid" if invoice.get("next_payment_attempt") is None else "past_due"


def parse_invoice(invoice: Dict[str, Any], require_payment: bool = False) -> InvoiceData:
    invoice_id = _object_id(invoice.get("id"))
    if require_payment and not invoice_id:
        raise MalformedEventError("Invoice is missing its id")

    currency = invoice.get("currency")
    if not isinstance(currency, str) or not currency:
        raise MalformedEventError(f"Invalid invoice currency: {currency!r}")

    period_start, period_end = invoice_period(invoice)
    if require_payment:
        amount_paid = _minor_units(invoice.get("amount_paid"), "amount_paid")
        if period_start is None or period_end is None:
            raise MalformedEventError(f"Invoice {invoice_id} has no billing period")
    else:
        amount_paid = invoice.get("amount_paid") if isinstance(invoice.get("amount_paid"), int) else 0

    amount_due = invoice.get("amount_due")
    transitions = _mapping(invoice, "status_transitions")
    return InvoiceData(
        provider_invoice_id=invoice_id,
        amount_paid=amount_paid,
        amount_due=amount_due if isinstance(amount_due, int) and not isinstance(amount_due, bool) else 0,
        currency=currency.lower(),
        period_start=period_start,
        period_end=period_end,
        paid_at=_timestamp(transitions.get("paid_at"), "paid_at"),
        next_payment_attempt=_timestamp(invoice.get("next_payment_attempt"), "next_payment_attempt"),
    )


# ============================================================
# Builders
# ============================================================
def subscription_event(
    kind: EventKind,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> BillingEvent:
    subscription_id = _object_id(obj.get("id"))
    if not subscription_id:
        raise MalformedEventError("Subscription object is missing its id")

    item = _first_item(obj)
    period_start = obj.get("current_period_start")
    period_end = obj.get("current_period_end")
    if period_start is None and period_end is None:
        period_start = item.get("current_period_start")
        period_end = item.get("current_period_end")
    price = item.get("price") or item.get("plan")

    provider_status = obj.get("status")
    return BillingEvent(
        kind=kind,
        provider_subscription_id=subscription_id,
        event_id=event_id,
        event_type=event_type,
        occurred_at=occurred_at,
        status=normalize_status(
            provider_status,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            pause_collection=obj.get("pause_collection"),
        ),
        provider_status=provider_status,
        customer_id=_object_id(obj.get("customer")),
        price_id=_object_id(price),
        period_start=_timestamp(period_start, "current_period_start"),
        period_end=_timestamp(period_end, "current_period_end"),
        metadata=_metadata(obj),
    )


def invoice_event(
    kind: EventKind,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> BillingEvent:
    invoice = parse_invoice(obj, require_payment=kind is EventKind.PAYMENT_SUCCEEDED)

    status = None
    provider_status = None
    if kind is EventKind.PAYMENT_FAILED:
        provider_status = _failed_payment_status(obj)
        status = normalize_status(provider_status)

    return BillingEvent(
        kind=kind,
        provider_subscription_id=invoice_subscription_id(obj),
        event_id=event_id,
        event_type=event_type,
        occurred_at=occurred_at,
        status=status,
        provider_status=provider_status,
        customer_id=_object_id(obj.get("customer")),
        period_start=invoice.period_start,
        period_end=invoice.period_end,
        invoice=invoice,
    )


def parse_event(payload: Any) -> Optional[BillingEvent]:
    """
    Map a verified Stripe event payload to a ``BillingEvent``.

    Returns None for event kinds this system does not handle. Raises
    MalformedEventError when the envelope or a recognized object is unusable.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Event payload is not an object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventError("Event is missing its id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event is missing its type")

    kind = STRIPE_EVENT_TYPES.get(event_type)
    if kind is None:
        return None

    obj = _mapping(payload, "data").get("object")
    if not isinstance(obj, dict):
        raise MalformedEventError(f"Event {event_id} has no data.object")

    occurred_at = _timestamp(payload.get("created"), "created")
    if kind in INVOICE_KINDS:
        return invoice_event(kind, obj, event_id=event_id, event_type=event_type, occurred_at=occurred_at)
    return subscription_event(kind, obj, event_id=event_id, event_type=event_type, occurred_at=occurred_at)


def event_from_api_response(kind: EventKind, obj: Dict[str, Any]) -> BillingEvent:
    """
    Synthetic event for a subscription object returned by a management call.

    Stamped with the local time truncated to whole seconds so a webhook
    carrying the same change in the same second still applies.
    """
    event = subscription_event(kind, obj)
    return replace(event, occurred_at=utcnow().replace(microsecond=0))
