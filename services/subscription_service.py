# ================================================================
# services/subscription_service.py: Subscription management
# ================================================================
"""
User-facing subscription operations.

Each operation is a Stripe call followed by reconciliation of the returned
subscription object through the same state machine the webhooks use, so
the ledger and memberships move the same way whichever path arrives first.
Stripe is never called while a ledger transaction is open.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from core.exceptions import (
    CommunityNotFoundError,
    DuplicateSubscriptionError,
    PaymentMethodNotFoundError,
)
from models.models import Community, Subscription, User
from services import ledger
from services.event_mapper import EventKind, event_from_api_response
from services.reconciler import ReconcileOutcome, ReconcileStatus, reconcile
from services.stripe_client import StripeClient, get_stripe_client

logger = logging.getLogger(__name__)


@dataclass
class CreatedSubscription:
    request_id: str
    provider_subscription_id: str
    provider_status: Optional[str]
    subscription: Optional[Subscription]
    client_secret: Optional[str] = None


def _client_secret(response: Dict[str, Any]) -> Optional[str]:
    invoice = response.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    payment_intent = invoice.get("payment_intent")
    if isinstance(payment_intent, dict) and payment_intent.get("client_secret"):
        return payment_intent["client_secret"]
    confirmation = invoice.get("confirmation_secret")
    if isinstance(confirmation, dict):
        return confirmation.get("client_secret")
    return None


class SubscriptionService:
    def __init__(self, session: Session, client: Optional[StripeClient] = None):
        self.session = session
        self.client = client or get_stripe_client()

    # ------------------------
    # Helpers
    # ------------------------
    def _commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _reconcile_response(self, kind: EventKind, response: Dict[str, Any]) -> ReconcileOutcome:
        event = event_from_api_response(kind, response)
        try:
            outcome = reconcile(self.session, event)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"🔄 {event.provider_subscription_id} reconciled from API response: {outcome.status.value}")
        return outcome

    def _refreshed(self, subscription: Subscription) -> Subscription:
        self.session.refresh(subscription)
        return subscription

    def _customer_id(self, user: User) -> str:
        return self.client.find_or_create_customer(user.id, user.email, user.public_name)

    # ------------------------
    # Create
    # ------------------------
    def create_subscription(
        self,
        user: User,
        community_id: int,
        price_id: str,
        payment_method_id: Optional[str] = None,
    ) -> CreatedSubscription:
        community = self.session.get(Community, community_id)
        if community is None:
            raise CommunityNotFoundError("Community not found", {"community_id": community_id})

        existing = ledger.find_live_subscription(self.session, user.id, community_id)
        if existing is not None:
            raise DuplicateSubscriptionError(
                "You already have a subscription for this community",
                {"subscription_id": existing.id, "state": existing.state},
            )

        # Recorded before the Stripe call so the creation webhook can be matched
        pending = ledger.create_pending(self.session, user.id, community_id, price_id)
        self._commit()
        request_id = pending.request_id
        logger.info(f"📝 Pending subscription {request_id} for user {user.id} in community {community_id}")

        customer_id = self._customer_id(user)
        response = self.client.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            metadata={
                "user_id": str(user.id),
                "community_id": str(community_id),
                "creation_request_id": request_id,
            },
            idempotency_key=request_id,
            payment_method_id=payment_method_id,
        )

        pending.provider_subscription_id = response["id"]
        self.session.add(pending)
        outcome = self._reconcile_response(EventKind.SUBSCRIPTION_CREATED, response)
        if outcome.status is ReconcileStatus.REJECTED_DUPLICATE:
            # Lost a race with a concurrent request for the same community
            holder = outcome.subscription
            logger.warning(f"🚫 Canceling duplicate Stripe subscription {response['id']} for user {user.id}")
            self.client.cancel_subscription(response["id"])
            raise DuplicateSubscriptionError(
                "You already have a subscription for this community",
                {"subscription_id": holder.id, "state": holder.state},
            )

        subscription = ledger.get_by_provider_id(self.session, response["id"])
        logger.info(f"✅ Subscription {response['id']} created ({outcome.status.value})")
        return CreatedSubscription(
            request_id=request_id,
            provider_subscription_id=response["id"],
            provider_status=response.get("status"),
            subscription=subscription,
            client_secret=_client_secret(response),
        )

    # ------------------------
    # Lifecycle changes
    # ------------------------
    def cancel_subscription(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.cancel_subscription(subscription.provider_subscription_id)
        self._reconcile_response(EventKind.SUBSCRIPTION_DELETED, response)
        return self._refreshed(subscription)

    def pause_subscription(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.pause_subscription(subscription.provider_subscription_id)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def resume_subscription(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.resume_subscription(subscription.provider_subscription_id)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def schedule_cancellation(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.set_cancel_at_period_end(subscription.provider_subscription_id, True)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def unschedule_cancellation(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.set_cancel_at_period_end(subscription.provider_subscription_id, False)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def change_plan(
        self,
        user: User,
        subscription_id: int,
        new_price_id: str,
        proration_behavior: str = "create_prorations",
    ) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.change_price(subscription.provider_subscription_id, new_price_id, proration_behavior)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def retry_payment(self, user: User, subscription_id: int) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.retry_latest_invoice(subscription.provider_subscription_id)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    def update_payment_method(self, user: User, subscription_id: int, payment_method_id: str) -> Subscription:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        response = self.client.set_default_payment_method(subscription.provider_subscription_id, payment_method_id)
        self._reconcile_response(EventKind.SUBSCRIPTION_UPDATED, response)
        return self._refreshed(subscription)

    # ------------------------
    # Reads
    # ------------------------
    def list_subscriptions(self, user: User) -> List[Subscription]:
        return ledger.list_for_user(self.session, user.id)

    def get_subscription(self, user: User, subscription_id: int):
        """Ledger row plus the live Stripe object."""
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        provider = self.client.retrieve_subscription(subscription.provider_subscription_id)
        return subscription, provider

    def list_invoices(self, user: User, subscription_id: int) -> List[Dict[str, Any]]:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        return self.client.list_invoices(subscription.provider_subscription_id)

    def get_upcoming_invoice(self, user: User, subscription_id: int, new_price_id: Optional[str] = None) -> Dict[str, Any]:
        subscription = ledger.get_for_user(self.session, subscription_id, user.id)
        customer_id = subscription.provider_customer_id
        if not customer_id:
            customer_id = self.client.retrieve_subscription(subscription.provider_subscription_id)["customer"]
        return self.client.preview_upcoming_invoice(customer_id, subscription.provider_subscription_id, new_price_id)

    # ------------------------
    # Payment methods
    # ------------------------
    def create_setup_intent(self, user: User) -> Dict[str, Any]:
        return self.client.create_setup_intent(self._customer_id(user))

    def list_payment_methods(self, user: User) -> List[Dict[str, Any]]:
        return self.client.list_payment_methods(self._customer_id(user))

    def detach_payment_method(self, user: User, payment_method_id: str) -> Dict[str, Any]:
        customer_id = self._customer_id(user)
        payment_method = self.client.retrieve_payment_method(payment_method_id)
        owner = payment_method.get("customer")
        if isinstance(owner, dict):
            owner = owner.get("id")
        if owner != customer_id:
            raise PaymentMethodNotFoundError("Payment method not found", {"payment_method_id": payment_method_id})
        return self.client.detach_payment_method(payment_method_id)
