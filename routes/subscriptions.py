# routes/subscriptions.py
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session

from core.database import get_session
from core.security import get_current_user
from models.models import User
from schemas.subscription_schema import (
    InvoiceRead,
    PaymentMethodRead,
    PaymentMethodUpdate,
    PlanChange,
    SetupIntentRead,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionDetail,
    SubscriptionRead,
    UpcomingInvoiceRead,
)
from services.stripe_client import StripeClient, get_stripe_client
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_subscription_service(
    session: Session = Depends(get_session),
    client: StripeClient = Depends(get_stripe_client),
) -> SubscriptionService:
    return SubscriptionService(session, client)


# -------------------------
# Subscriptions
# -------------------------
@router.post("/subscriptions", response_model=SubscriptionCreated, status_code=status.HTTP_201_CREATED)
def create_subscription(
    data: SubscriptionCreate,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    logger.info(f"🎯 Subscription requested: user={current_user.id}, community={data.community_id}")
    created = service.create_subscription(
        current_user,
        community_id=data.community_id,
        price_id=data.price_id,
        payment_method_id=data.payment_method_id,
    )
    return SubscriptionCreated(
        request_id=created.request_id,
        provider_subscription_id=created.provider_subscription_id,
        provider_status=created.provider_status,
        client_secret=created.client_secret,
        subscription=SubscriptionRead.model_validate(created.subscription) if created.subscription else None,
    )


@router.get("/subscriptions", response_model=List[SubscriptionRead])
def list_subscriptions(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.list_subscriptions(current_user)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionDetail)
def get_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription, provider = service.get_subscription(current_user, subscription_id)
    return SubscriptionDetail.from_row(subscription, provider)


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.cancel_subscription(current_user, subscription_id)


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.pause_subscription(current_user, subscription_id)


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.resume_subscription(current_user, subscription_id)


@router.post("/subscriptions/{subscription_id}/schedule-cancel", response_model=SubscriptionRead)
def schedule_cancellation(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.schedule_cancellation(current_user, subscription_id)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionRead)
def reactivate_subscription(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Undo a scheduled cancellation."""
    return service.unschedule_cancellation(current_user, subscription_id)


@router.post("/subscriptions/{subscription_id}/retry", response_model=SubscriptionRead)
def retry_payment(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.retry_payment(current_user, subscription_id)


@router.put("/subscriptions/{subscription_id}/payment-method", response_model=SubscriptionRead)
def update_payment_method(
    subscription_id: int,
    data: PaymentMethodUpdate,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.update_payment_method(current_user, subscription_id, data.payment_method_id)


@router.put("/subscriptions/{subscription_id}/plan", response_model=SubscriptionRead)
def change_plan(
    subscription_id: int,
    data: PlanChange,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.change_plan(current_user, subscription_id, data.price_id, data.proration_behavior)


# -------------------------
# Invoices
# -------------------------
@router.get("/subscriptions/{subscription_id}/invoices", response_model=List[InvoiceRead])
def list_invoices(
    subscription_id: int,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [InvoiceRead.from_stripe(i) for i in service.list_invoices(current_user, subscription_id)]


@router.get("/subscriptions/{subscription_id}/upcoming-invoice", response_model=UpcomingInvoiceRead)
def get_upcoming_invoice(
    subscription_id: int,
    new_price_id: Optional[str] = Query(default=None, max_length=255),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return UpcomingInvoiceRead.from_stripe(service.get_upcoming_invoice(current_user, subscription_id, new_price_id))


# -------------------------
# Payment methods
# -------------------------
@router.post("/setup-intent", response_model=SetupIntentRead)
def create_setup_intent(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    intent = service.create_setup_intent(current_user)
    return SetupIntentRead(id=intent["id"], client_secret=intent.get("client_secret"))


@router.get("/payment-methods", response_model=List[PaymentMethodRead])
def list_payment_methods(
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [PaymentMethodRead.from_stripe(pm) for pm in service.list_payment_methods(current_user)]


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_200_OK)
def detach_payment_method(
    payment_method_id: str,
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    service.detach_payment_method(current_user, payment_method_id)
    return {"message": "Payment method removed", "payment_method_id": payment_method_id}
