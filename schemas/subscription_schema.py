from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from core.clock import from_timestamp
from models.models import SubscriptionState


# ============================================================
# ✅ Create Subscription (input)
# ============================================================
class SubscriptionCreate(BaseModel):
    community_id: int
    price_id: str = Field(..., min_length=1, max_length=255)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)


# ============================================================
# ✅ Read Subscription (output)
# ============================================================
class SubscriptionRead(BaseModel):
    id: int
    user_id: int
    community_id: int
    provider_subscription_id: str
    provider_price_id: Optional[str] = None
    state: SubscriptionState
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionCreated(BaseModel):
    request_id: str
    provider_subscription_id: str
    provider_status: Optional[str] = None
    client_secret: Optional[str] = None
    subscription: Optional[SubscriptionRead] = None


class SubscriptionDetail(SubscriptionRead):
    provider_status: Optional[str] = None
    cancel_at_period_end: bool = False
    default_payment_method: Optional[str] = None

    @classmethod
    def from_row(cls, subscription, provider: Dict[str, Any]) -> "SubscriptionDetail":
        payment_method = provider.get("default_payment_method")
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("id")
        data = SubscriptionRead.model_validate(subscription).model_dump()
        return cls(
            **data,
            provider_status=provider.get("status"),
            cancel_at_period_end=bool(provider.get("cancel_at_period_end")),
            default_payment_method=payment_method,
        )


# ============================================================
# ✅ Update inputs
# ============================================================
class PlanChange(BaseModel):
    price_id: str = Field(..., min_length=1, max_length=255)
    proration_behavior: Literal["create_prorations", "none", "always_invoice"] = "create_prorations"


class PaymentMethodUpdate(BaseModel):
    payment_method_id: str = Field(..., min_length=1, max_length=255)


# ============================================================
# ✅ Stripe-backed reads (amounts in minor units)
# ============================================================
class InvoiceRead(BaseModel):
    id: Optional[str] = None
    number: Optional[str] = None
    status: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    hosted_invoice_url: Optional[str] = None
    created: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, invoice: Dict[str, Any]) -> "InvoiceRead":
        return cls(
            id=invoice.get("id"),
            number=invoice.get("number"),
            status=invoice.get("status"),
            amount_paid=invoice.get("amount_paid") or 0,
            amount_due=invoice.get("amount_due") or 0,
            currency=invoice.get("currency"),
            period_start=from_timestamp(invoice.get("period_start")),
            period_end=from_timestamp(invoice.get("period_end")),
            hosted_invoice_url=invoice.get("hosted_invoice_url"),
            created=from_timestamp(invoice.get("created")),
        )


class UpcomingInvoiceRead(BaseModel):
    amount_due: int = 0
    subtotal: int = 0
    total: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    next_payment_attempt: Optional[datetime] = None
    line_count: int = 0

    @classmethod
    def from_stripe(cls, invoice: Dict[str, Any]) -> "UpcomingInvoiceRead":
        lines: List[Any] = (invoice.get("lines") or {}).get("data") or []
        return cls(
            amount_due=invoice.get("amount_due") or 0,
            subtotal=invoice.get("subtotal") or 0,
            total=invoice.get("total") or 0,
            currency=invoice.get("currency"),
            period_start=from_timestamp(invoice.get("period_start")),
            period_end=from_timestamp(invoice.get("period_end")),
            next_payment_attempt=from_timestamp(invoice.get("next_payment_attempt")),
            line_count=len(lines),
        )


class SetupIntentRead(BaseModel):
    id: str
    client_secret: Optional[str] = None


class PaymentMethodRead(BaseModel):
    id: str
    type: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_stripe(cls, payment_method: Dict[str, Any]) -> "PaymentMethodRead":
        card = payment_method.get("card") or {}
        return cls(
            id=payment_method["id"],
            type=payment_method.get("type"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )


# ============================================================
# ✅ Webhook acknowledgement
# ============================================================
class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: Optional[str] = None
