# ================================================================
# services/ledger.py: Subscription ledger reads/writes
# ================================================================
"""
Persistence helpers for the subscription ledger.

Nothing here commits: callers own the transaction so a ledger write and
its entitlement side effect land together.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from core.clock import utcnow
from core.exceptions import SubscriptionNotFoundError
from models.models import (
    ACCESS_GRANTING_STATES,
    LedgerInvoice,
    PendingSubscription,
    ProcessedEvent,
    Subscription,
    SubscriptionState,
    SubscriptionStateChange,
)

logger = logging.getLogger(__name__)

_ACCESS_STATE_VALUES = [s.value for s in ACCESS_GRANTING_STATES]


# ============================================================
# Subscriptions
# ============================================================
def get_by_provider_id(session: Session, provider_subscription_id: str, lock: bool = False) -> Optional[Subscription]:
    """Ledger row for a Stripe subscription id; ``lock`` takes FOR UPDATE."""
    statement = select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    if lock:
        statement = statement.with_for_update()
    return session.exec(statement).first()


def get_for_user(session: Session, subscription_id: int, user_id: int) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if not subscription or subscription.user_id != user_id:
        raise SubscriptionNotFoundError("Subscription not found", {"subscription_id": subscription_id})
    return subscription


def list_for_user(session: Session, user_id: int) -> List[Subscription]:
    statement = (
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    return list(session.exec(statement).all())


def find_live_subscription(session: Session, user_id: int, community_id: int) -> Optional[Subscription]:
    """Any non-canceled subscription for the pair."""
    statement = select(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.community_id == community_id,
        Subscription.state != SubscriptionState.CANCELED.value,
    )
    return session.exec(statement).first()


def find_access_granting(
    session: Session,
    user_id: int,
    community_id: int,
    exclude_id: Optional[int] = None,
    lock: bool = False,
) -> Optional[Subscription]:
    """The row holding the pair's single access-granting slot, if any."""
    statement = select(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.community_id == community_id,
        Subscription.state.in_(_ACCESS_STATE_VALUES),
    )
    if exclude_id is not None:
        statement = statement.where(Subscription.id != exclude_id)
    if lock:
        statement = statement.with_for_update()
    return session.exec(statement).first()


def access_granting_subscriptions(session: Session, community_id: Optional[int] = None) -> List[Subscription]:
    statement = select(Subscription).where(Subscription.state.in_(_ACCESS_STATE_VALUES))
    if community_id is not None:
        statement = statement.where(Subscription.community_id == community_id)
    return list(session.exec(statement).all())


def create_subscription_row(
    session: Session,
    pending: PendingSubscription,
    provider_subscription_id: str,
    state: SubscriptionState,
    customer_id: Optional[str] = None,
    price_id: Optional[str] = None,
) -> Subscription:
    subscription = Subscription(
        user_id=pending.user_id,
        community_id=pending.community_id,
        provider_subscription_id=provider_subscription_id,
        provider_customer_id=customer_id,
        provider_price_id=price_id or pending.price_id,
        state=state.value,
    )
    session.add(subscription)
    close_pending(session, pending, provider_subscription_id)
    session.flush()
    logger.info(
        f"🆕 Ledger row {subscription.id} created for {provider_subscription_id} "
        f"(user={pending.user_id}, community={pending.community_id})"
    )
    return subscription


def record_state_change(
    session: Session,
    subscription: Subscription,
    from_state: Optional[SubscriptionState],
    to_state: SubscriptionState,
    provider_event_id: Optional[str] = None,
    changed_at: Optional[datetime] = None,
) -> SubscriptionStateChange:
    change = SubscriptionStateChange(
        subscription_id=subscription.id,
        from_state=from_state.value if from_state else None,
        to_state=to_state.value,
        provider_event_id=provider_event_id,
        changed_at=changed_at or utcnow(),
    )
    session.add(change)
    return change


# ============================================================
# Pending creation requests
# ============================================================
def create_pending(session: Session, user_id: int, community_id: int, price_id: str) -> PendingSubscription:
    pending = PendingSubscription(
        request_id=uuid.uuid4().hex,
        user_id=user_id,
        community_id=community_id,
        price_id=price_id,
    )
    session.add(pending)
    return pending


def find_pending(
    session: Session,
    request_id: Optional[str] = None,
    provider_subscription_id: Optional[str] = None,
) -> Optional[PendingSubscription]:
    """Match by creation request id first, then by the Stripe subscription id."""
    if request_id:
        pending = session.exec(
            select(PendingSubscription).where(PendingSubscription.request_id == request_id)
        ).first()
        if pending:
            return pending
    if provider_subscription_id:
        return session.exec(
            select(PendingSubscription).where(
                PendingSubscription.provider_subscription_id == provider_subscription_id
            )
        ).first()
    return None


def close_pending(session: Session, pending: PendingSubscription, provider_subscription_id: str) -> None:
    """Mark a creation request as answered by ``provider_subscription_id``."""
    pending.provider_subscription_id = provider_subscription_id
    pending.consumed_at = utcnow()
    session.add(pending)


# ============================================================
# Invoices
# ============================================================
def record_invoice(
    session: Session,
    subscription: Subscription,
    provider_invoice_id: str,
    amount_paid: int,
    currency: str,
    period_start: datetime,
    period_end: datetime,
    paid_at: Optional[datetime] = None,
) -> Optional[LedgerInvoice]:
    """Store a paid invoice once; returns None if it was already recorded."""
    existing = session.exec(
        select(LedgerInvoice).where(LedgerInvoice.provider_invoice_id == provider_invoice_id)
    ).first()
    if existing:
        logger.info(f"ℹ️ Invoice {provider_invoice_id} already in ledger")
        return None

    invoice = LedgerInvoice(
        provider_invoice_id=provider_invoice_id,
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        community_id=subscription.community_id,
        amount_paid=amount_paid,
        currency=currency,
        period_start=period_start,
        period_end=period_end,
        paid_at=paid_at,
    )
    session.add(invoice)
    return invoice


# ============================================================
# Processed events (webhook idempotency)
# ============================================================
def is_processed(session: Session, provider_event_id: str) -> bool:
    statement = select(ProcessedEvent.id).where(ProcessedEvent.provider_event_id == provider_event_id)
    return session.exec(statement).first() is not None


def mark_processed(session: Session, provider_event_id: str, event_type: str) -> ProcessedEvent:
    """Insert and flush so a concurrent duplicate fails here with IntegrityError."""
    record = ProcessedEvent(provider_event_id=provider_event_id, event_type=event_type)
    session.add(record)
    session.flush()
    return record


def prune_processed_events(session: Session, older_than: datetime) -> int:
    """Delete idempotency records older than the cutoff and commit."""
    try:
        result = session.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < older_than))
        session.commit()
    except Exception:
        session.rollback()
        raise
    removed = result.rowcount or 0
    logger.info(f"🧹 Pruned {removed} processed events older than {older_than.isoformat()}")
    return removed
