# ================================================================
# services/reconciler.py: Subscription state machine
# ================================================================
"""
Apply a ``BillingEvent`` to the ledger.

``next_state`` is the pure transition table. ``reconcile`` locks the ledger
row, applies the transition, writes the state-change history and runs the
entitlement side effect, all inside the caller's transaction. Nothing here
commits.

Each event carries the provider's resulting status rather than a delta, so
applying events out of order converges; events older than the row's last
applied event are dropped as stale, and ``canceled`` never changes again.
A paid invoice is recorded even when its event changes nothing else.

A user holds at most one access-granting row per community. A creation or
update that would open a second one is acknowledged as
``REJECTED_DUPLICATE`` and logged; the ledger keeps the existing holder.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from sqlmodel import Session

from core.clock import utcnow
from models.models import Community, Subscription, SubscriptionState, User
from services import ledger
from services.entitlements import EntitlementAction, grant_entitlement, revoke_entitlement
from services.event_mapper import BillingEvent, EventKind

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    ORPHAN = "orphan"
    STALE = "stale"
    NOTIFY_ONLY = "notify_only"
    REJECTED_DUPLICATE = "rejected_duplicate"


class SideEffect(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    NONE = "none"


@dataclass(frozen=True)
class Notification:
    """Plain data for the billing notifier; safe to use after commit."""
    kind: EventKind
    user_id: int
    community_id: int
    provider_subscription_id: str
    email: Optional[str] = None
    user_name: Optional[str] = None
    community_name: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileOutcome:
    status: ReconcileStatus
    subscription: Optional[Subscription] = None
    previous_state: Optional[SubscriptionState] = None
    resulting_state: Optional[SubscriptionState] = None
    side_effect: SideEffect = SideEffect.NONE
    entitlement_action: EntitlementAction = EntitlementAction.UNCHANGED
    notification: Optional[Notification] = None
    invoice_recorded: bool = False


# ============================================================
# Transition table
# ============================================================
_RECOVERABLE_ON_PAYMENT = frozenset({SubscriptionState.PAST_DUE, SubscriptionState.UNPAID})


def _status_effect(state: SubscriptionState) -> SideEffect:
    return SideEffect.GRANT if state.grants_access else SideEffect.REVOKE


def next_state(current: Optional[SubscriptionState], event: BillingEvent) -> Tuple[SubscriptionState, SideEffect]:
    """
    Resulting (state, side effect) for an event applied on ``current``.

    ``current`` is None only for a SubscriptionCreated that opens a new row.
    """
    if current is not None and current.is_terminal:
        return current, SideEffect.NONE

    kind = event.kind
    if kind in (EventKind.SUBSCRIPTION_CREATED, EventKind.SUBSCRIPTION_UPDATED):
        if event.status is None:
            raise ValueError(f"{kind.value} event without a status")
        return event.status, _status_effect(event.status)

    if current is None:
        raise ValueError(f"{kind.value} needs an existing subscription")

    if kind is EventKind.SUBSCRIPTION_DELETED:
        return SubscriptionState.CANCELED, SideEffect.REVOKE

    if kind is EventKind.PAYMENT_SUCCEEDED:
        state = SubscriptionState.ACTIVE if current in _RECOVERABLE_ON_PAYMENT else current
        return state, (SideEffect.GRANT if state.grants_access else SideEffect.NONE)

    if kind is EventKind.PAYMENT_FAILED:
        # past_due is a grace period; only unpaid takes access away
        if event.status is SubscriptionState.UNPAID:
            return SubscriptionState.UNPAID, SideEffect.REVOKE
        return SubscriptionState.PAST_DUE, SideEffect.NONE

    if kind is EventKind.SUBSCRIPTION_PAUSED:
        return SubscriptionState.PAUSED, SideEffect.REVOKE

    if kind is EventKind.SUBSCRIPTION_RESUMED:
        return SubscriptionState.ACTIVE, SideEffect.GRANT

    # TrialWillEnd, UpcomingInvoice
    return current, SideEffect.NONE


# ============================================================
# Reconciliation
# ============================================================
def _build_notification(session: Session, subscription: Subscription, event: BillingEvent) -> Notification:
    user = session.get(User, subscription.user_id)
    community = session.get(Community, subscription.community_id)
    details: Dict[str, Any] = {}
    if event.kind is EventKind.TRIAL_WILL_END:
        details["trial_end"] = event.period_end
    elif event.invoice is not None:
        details["amount_due"] = event.invoice.amount_due
        details["currency"] = event.invoice.currency
        details["period_start"] = event.invoice.period_start
        details["next_payment_attempt"] = event.invoice.next_payment_attempt
    return Notification(
        kind=event.kind,
        user_id=subscription.user_id,
        community_id=subscription.community_id,
        provider_subscription_id=subscription.provider_subscription_id,
        email=user.email if user else None,
        user_name=user.public_name if user else None,
        community_name=community.name if community else None,
        details=details,
    )


def _apply_side_effect(session: Session, subscription: Subscription, effect: SideEffect) -> EntitlementAction:
    if effect is SideEffect.GRANT:
        return grant_entitlement(session, subscription)
    if effect is SideEffect.REVOKE:
        return revoke_entitlement(session, subscription)
    return EntitlementAction.UNCHANGED


def _stamp(subscription: Subscription, event: BillingEvent, now: datetime) -> None:
    # Invoice events carry the billed line period
    if event.period_start is not None:
        subscription.current_period_start = event.period_start
    if event.period_end is not None:
        subscription.current_period_end = event.period_end
    if event.customer_id:
        subscription.provider_customer_id = event.customer_id
    if event.price_id:
        subscription.provider_price_id = event.price_id
    if event.occurred_at is not None:
        if subscription.last_event_at is None or event.occurred_at > subscription.last_event_at:
            subscription.last_event_at = event.occurred_at
    subscription.updated_at = now


def _record_paid_invoice(session: Session, subscription: Subscription, event: BillingEvent) -> bool:
    # Revenue facts are kept whatever the state transition decided
    if event.kind is not EventKind.PAYMENT_SUCCEEDED or event.invoice is None:
        return False
    invoice = event.invoice
    return ledger.record_invoice(
        session,
        subscription,
        provider_invoice_id=invoice.provider_invoice_id,
        amount_paid=invoice.amount_paid,
        currency=invoice.currency,
        period_start=invoice.period_start,
        period_end=invoice.period_end,
        paid_at=invoice.paid_at,
    ) is not None


def _create_from_pending(session: Session, event: BillingEvent) -> ReconcileOutcome:
    pending = ledger.find_pending(
        session,
        request_id=event.creation_request_id,
        provider_subscription_id=event.provider_subscription_id,
    )
    if pending is None:
        logger.warning(f"⚠️ Orphan {event.kind.value} for {event.provider_subscription_id}: no pending creation request")
        return ReconcileOutcome(status=ReconcileStatus.ORPHAN)

    state, effect = next_state(None, event)
    if state.grants_access:
        holder = ledger.find_access_granting(session, pending.user_id, pending.community_id, lock=True)
        if holder is not None:
            ledger.close_pending(session, pending, event.provider_subscription_id)
            session.flush()
            logger.error(
                f"🚫 {event.provider_subscription_id} rejected: user {pending.user_id} already holds "
                f"{holder.provider_subscription_id} for community {pending.community_id}"
            )
            return ReconcileOutcome(
                status=ReconcileStatus.REJECTED_DUPLICATE,
                subscription=holder,
                previous_state=None,
                resulting_state=state,
            )

    subscription = ledger.create_subscription_row(
        session,
        pending,
        event.provider_subscription_id,
        state,
        customer_id=event.customer_id,
        price_id=event.price_id,
    )
    now = utcnow()
    _stamp(subscription, event, now)
    if state.is_terminal:
        subscription.canceled_at = now
    session.add(subscription)

    ledger.record_state_change(session, subscription, None, state, event.event_id, event.occurred_at or now)
    action = _apply_side_effect(session, subscription, effect)
    session.flush()
    return ReconcileOutcome(
        status=ReconcileStatus.APPLIED,
        subscription=subscription,
        previous_state=None,
        resulting_state=state,
        side_effect=effect,
        entitlement_action=action,
    )


def reconcile(session: Session, event: BillingEvent) -> ReconcileOutcome:
    """Apply ``event`` to its ledger row inside the caller's transaction."""
    if not event.provider_subscription_id:
        logger.warning(f"⚠️ Orphan {event.kind.value} ({event.event_id}): no subscription reference")
        return ReconcileOutcome(status=ReconcileStatus.ORPHAN)

    if event.is_notify_only:
        subscription = ledger.get_by_provider_id(session, event.provider_subscription_id)
        if subscription is None:
            logger.warning(f"⚠️ Orphan {event.kind.value} for {event.provider_subscription_id}")
            return ReconcileOutcome(status=ReconcileStatus.ORPHAN)
        state = subscription.subscription_state
        return ReconcileOutcome(
            status=ReconcileStatus.NOTIFY_ONLY,
            subscription=subscription,
            previous_state=state,
            resulting_state=state,
            notification=_build_notification(session, subscription, event),
        )

    subscription = ledger.get_by_provider_id(session, event.provider_subscription_id, lock=True)
    if subscription is None:
        if event.kind is EventKind.SUBSCRIPTION_CREATED:
            return _create_from_pending(session, event)
        logger.warning(f"⚠️ Orphan {event.kind.value} for {event.provider_subscription_id}: not in ledger")
        return ReconcileOutcome(status=ReconcileStatus.ORPHAN)

    previous = subscription.subscription_state
    skipped = None
    if previous.is_terminal:
        logger.info(f"ℹ️ {event.kind.value} ignored: {event.provider_subscription_id} is canceled")
        skipped = ReconcileStatus.UNCHANGED
    elif (
        event.occurred_at is not None
        and subscription.last_event_at is not None
        and event.occurred_at < subscription.last_event_at
    ):
        logger.info(
            f"⏪ Stale {event.kind.value} for {event.provider_subscription_id} "
            f"({event.occurred_at} < {subscription.last_event_at})"
        )
        skipped = ReconcileStatus.STALE

    if skipped is None:
        state, effect = next_state(previous, event)
        if state.grants_access and not previous.grants_access:
            holder = ledger.find_access_granting(
                session, subscription.user_id, subscription.community_id, exclude_id=subscription.id, lock=True
            )
            if holder is not None:
                logger.error(
                    f"🚫 {event.provider_subscription_id} cannot move to {state.value}: "
                    f"{holder.provider_subscription_id} already grants access to user {subscription.user_id} "
                    f"in community {subscription.community_id}"
                )
                skipped = ReconcileStatus.REJECTED_DUPLICATE

    if skipped is not None:
        invoice_recorded = _record_paid_invoice(session, subscription, event)
        session.flush()
        return ReconcileOutcome(
            status=skipped,
            subscription=subscription,
            previous_state=previous,
            resulting_state=previous,
            invoice_recorded=invoice_recorded,
        )

    now = utcnow()
    _stamp(subscription, event, now)
    if state is not previous:
        subscription.state = state.value
        if state.is_terminal:
            subscription.canceled_at = now
        ledger.record_state_change(session, subscription, previous, state, event.event_id, event.occurred_at or now)
        logger.info(f"🔄 {event.provider_subscription_id}: {previous.value} -> {state.value} ({event.kind.value})")
    session.add(subscription)

    action = _apply_side_effect(session, subscription, effect)
    invoice_recorded = _record_paid_invoice(session, subscription, event)

    session.flush()
    changed = state is not previous or action is not EntitlementAction.UNCHANGED or invoice_recorded
    return ReconcileOutcome(
        status=ReconcileStatus.APPLIED if changed else ReconcileStatus.UNCHANGED,
        subscription=subscription,
        previous_state=previous,
        resulting_state=state,
        side_effect=effect,
        entitlement_action=action,
        invoice_recorded=invoice_recorded,
    )
