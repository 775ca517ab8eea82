import time
from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from core.exceptions import ProviderNotConfiguredError, ReconciliationConflictError
from models.models import LedgerInvoice, PendingSubscription, ProcessedEvent, Subscription
from services import event_gateway as gateway_module
from services import reconciler
from services.event_gateway import EventGateway, IngestionStatus
from services.reconciler import ReconcileStatus
from services.revenue import LedgerInvoiceSource
from tests.factories import (
    WEBHOOK_SECRET,
    encode,
    event_payload,
    invoice_object,
    make_community,
    make_pending,
    make_subscription,
    make_user,
    member_count,
    membership_for,
    sign,
    subscription_object,
)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def notify(self, notification):
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append(notification)
        return True


@pytest.fixture
def world(session):
    creator = make_user(session, "creator")
    alice = make_user(session, "alice")
    community = make_community(session, creator)
    make_pending(session, alice, community, request_id="req_1")
    return alice, community


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway(session_factory, notifier):
    return EventGateway(
        session_factory=session_factory,
        webhook_secret=WEBHOOK_SECRET,
        tolerance=300,
        max_attempts=3,
        notifier=notifier,
    )


def _created_body(event_id="evt_1"):
    obj = subscription_object(metadata={"creation_request_id": "req_1"})
    return encode(event_payload("customer.subscription.created", obj, event_id=event_id))


def _rows(session, model):
    session.expire_all()
    return session.exec(select(model)).all()


# ============================================================
# Happy path + idempotency
# ============================================================
def test_created_event_is_applied(gateway, session, world):
    alice, community = world
    body = _created_body()

    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.ACCEPTED
    assert result.reconcile_status is ReconcileStatus.APPLIED
    assert result.event_id == "evt_1"
    assert [s.state for s in _rows(session, Subscription)] == ["active"]
    assert [p.provider_event_id for p in _rows(session, ProcessedEvent)] == ["evt_1"]
    assert membership_for(session, alice, community).status == "active"
    assert member_count(session, community) == 1


def test_redelivery_counts_member_once(gateway, session, world):
    _, community = world
    body = _created_body()

    first = gateway.handle(body, sign(body))
    second = gateway.handle(body, sign(body))

    assert first.status is IngestionStatus.ACCEPTED
    assert second.status is IngestionStatus.DUPLICATE
    assert len(_rows(session, Subscription)) == 1
    assert member_count(session, community) == 1


def test_out_of_order_update_is_stale(gateway, session, world):
    alice, community = world
    make_subscription(session, alice, community)

    newer = encode(event_payload(
        "customer.subscription.updated",
        subscription_object(status="past_due"),
        event_id="evt_new",
        created=1_700_000_200,
    ))
    older = encode(event_payload(
        "customer.subscription.updated",
        subscription_object(status="active"),
        event_id="evt_old",
        created=1_700_000_100,
    ))

    assert gateway.handle(newer, sign(newer)).reconcile_status is ReconcileStatus.APPLIED
    assert gateway.handle(older, sign(older)).reconcile_status is ReconcileStatus.STALE
    assert _rows(session, Subscription)[0].state == "past_due"


# ============================================================
# One access-granting subscription per member
# ============================================================
def test_second_paid_subscription_is_acknowledged_not_retried(gateway, session, world):
    alice, community = world
    make_subscription(session, alice, community, provider_subscription_id="sub_1")
    make_pending(session, alice, community, request_id="req_2")
    body = encode(event_payload(
        "customer.subscription.created",
        subscription_object(subscription_id="sub_2", metadata={"creation_request_id": "req_2"}),
        event_id="evt_sub_2",
    ))

    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.ACCEPTED
    assert result.reconcile_status is ReconcileStatus.REJECTED_DUPLICATE
    assert [s.provider_subscription_id for s in _rows(session, Subscription)] == ["sub_1"]
    pending = {p.request_id: p for p in _rows(session, PendingSubscription)}
    assert pending["req_2"].provider_subscription_id == "sub_2"
    assert pending["req_2"].consumed_at is not None
    assert [p.provider_event_id for p in _rows(session, ProcessedEvent)] == ["evt_sub_2"]
    assert member_count(session, community) == 0

    assert gateway.handle(body, sign(body)).status is IngestionStatus.DUPLICATE


def test_lapsed_subscription_cannot_reopen_while_another_grants_access(gateway, session, world):
    alice, community = world
    make_subscription(session, alice, community, provider_subscription_id="sub_old", state="unpaid")
    make_subscription(session, alice, community, provider_subscription_id="sub_1", state="active")
    body = encode(event_payload(
        "customer.subscription.updated",
        subscription_object(subscription_id="sub_old", status="active"),
        event_id="evt_revive",
    ))

    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.ACCEPTED
    assert result.reconcile_status is ReconcileStatus.REJECTED_DUPLICATE
    states = {s.provider_subscription_id: s.state for s in _rows(session, Subscription)}
    assert states == {"sub_old": "unpaid", "sub_1": "active"}


# ============================================================
# Paid invoices survive reordering
# ============================================================
NOVEMBER = (datetime(2023, 11, 1), datetime(2023, 12, 1))


def _paid_body(event_id, created, invoice_id="in_1"):
    return encode(event_payload(
        "invoice.payment_succeeded",
        invoice_object(invoice_id=invoice_id, amount_paid=1000),
        event_id=event_id,
        created=created,
    ))


def test_late_payment_is_stale_but_still_booked(gateway, session, world):
    alice, community = world
    make_subscription(session, alice, community)
    update = encode(event_payload(
        "customer.subscription.updated",
        subscription_object(status="active"),
        event_id="evt_update",
        created=1_700_000_200,
    ))
    payment = _paid_body("evt_paid", created=1_700_000_150)

    gateway.handle(update, sign(update))
    result = gateway.handle(payment, sign(payment))

    assert result.reconcile_status is ReconcileStatus.STALE
    assert [i.provider_invoice_id for i in _rows(session, LedgerInvoice)] == ["in_1"]
    lines = LedgerInvoiceSource(session).fetch(*NOVEMBER)
    assert [(line.invoice_id, line.amount) for line in lines] == [("in_1", 1000)]


def test_final_invoice_after_cancellation_is_booked(gateway, session, world):
    alice, community = world
    make_subscription(session, alice, community, state="canceled")
    payment = _paid_body("evt_final", created=1_700_000_300, invoice_id="in_final")

    result = gateway.handle(payment, sign(payment))

    assert result.reconcile_status is ReconcileStatus.UNCHANGED
    assert _rows(session, Subscription)[0].state == "canceled"
    assert [i.provider_invoice_id for i in _rows(session, LedgerInvoice)] == ["in_final"]


# ============================================================
# Rejections
# ============================================================
def test_missing_signature_is_rejected(gateway, session, world):
    result = gateway.handle(_created_body(), None)

    assert result.status is IngestionStatus.REJECTED
    assert result.reason == "missing signature"
    assert _rows(session, ProcessedEvent) == []


def test_wrong_secret_is_rejected(gateway, session, world):
    body = _created_body()
    result = gateway.handle(body, sign(body, secret="whsec_someone_else"))

    assert result.status is IngestionStatus.REJECTED
    assert result.reason == "invalid signature"
    assert _rows(session, Subscription) == []


def test_expired_signature_is_rejected(gateway, world):
    body = _created_body()
    result = gateway.handle(body, sign(body, timestamp=int(time.time()) - 3600))
    assert result.status is IngestionStatus.REJECTED


def test_tampered_body_is_rejected(gateway, world):
    body = _created_body()
    header = sign(body)
    result = gateway.handle(body.replace(b"active", b"unpaid"), header)
    assert result.status is IngestionStatus.REJECTED


def test_invalid_json_is_rejected(gateway):
    body = b"{not json"
    result = gateway.handle(body, sign(body))
    assert result.status is IngestionStatus.REJECTED
    assert result.reason == "invalid payload"


def test_malformed_event_is_rejected(gateway, session):
    body = encode({"id": "evt_1", "type": "customer.subscription.updated", "data": {}})
    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.REJECTED
    assert _rows(session, ProcessedEvent) == []


@pytest.mark.parametrize(
    "event_type, obj",
    [
        ("customer.subscription.updated", dict(subscription_object(), items=["junk"])),
        ("invoice.payment_succeeded", dict(invoice_object(), lines="junk")),
    ],
)
def test_wrongly_shaped_object_is_rejected(gateway, session, event_type, obj):
    body = encode(event_payload(event_type, obj))
    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.REJECTED
    assert _rows(session, ProcessedEvent) == []


def test_unhandled_type_is_acknowledged(gateway, session):
    body = encode(event_payload("charge.refunded", {"id": "ch_1"}, event_id="evt_charge"))
    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.ACCEPTED
    assert result.event_type == "charge.refunded"
    assert result.reconcile_status is None


def test_missing_webhook_secret_raises(session_factory):
    gateway = EventGateway(session_factory=session_factory, webhook_secret="")
    body = _created_body()
    with pytest.raises(ProviderNotConfiguredError):
        gateway.handle(body, sign(body))


# ============================================================
# Transaction boundaries
# ============================================================
def test_failure_rolls_back_everything(gateway, session, world, monkeypatch):
    alice, community = world

    def broken_grant(session, subscription):
        raise RuntimeError("membership store unavailable")

    monkeypatch.setattr(reconciler, "grant_entitlement", broken_grant)
    body = _created_body()

    with pytest.raises(RuntimeError):
        gateway.handle(body, sign(body))

    assert _rows(session, ProcessedEvent) == []
    assert _rows(session, Subscription) == []
    assert _rows(session, PendingSubscription)[0].consumed_at is None
    assert member_count(session, community) == 0

    # Redelivery after the fault clears is processed normally
    monkeypatch.undo()
    result = gateway.handle(body, sign(body))
    assert result.status is IngestionStatus.ACCEPTED
    assert membership_for(session, alice, community).status == "active"
    assert member_count(session, community) == 1


def test_lock_conflict_is_retried(gateway, session, world, monkeypatch):
    real_reconcile = gateway_module.reconcile
    calls = []

    def flaky(session, event):
        calls.append(event.event_id)
        if len(calls) < 3:
            raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("could not obtain lock"))
        return real_reconcile(session, event)

    monkeypatch.setattr(gateway_module, "reconcile", flaky)
    body = _created_body()

    result = gateway.handle(body, sign(body))

    assert len(calls) == 3
    assert result.status is IngestionStatus.ACCEPTED
    assert len(_rows(session, ProcessedEvent)) == 1


def test_persistent_conflict_gives_up(gateway, session, world, monkeypatch):
    def always_locked(session, event):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("could not obtain lock"))

    monkeypatch.setattr(gateway_module, "reconcile", always_locked)
    body = _created_body()

    with pytest.raises(ReconciliationConflictError) as excinfo:
        gateway.handle(body, sign(body))

    assert excinfo.value.details["attempts"] == 3
    assert _rows(session, ProcessedEvent) == []


# ============================================================
# Notifications
# ============================================================
def _trial_body():
    obj = subscription_object(status="trialing")
    return encode(event_payload("customer.subscription.trial_will_end", obj, event_id="evt_trial"))


def test_trial_will_end_notifies_after_commit(gateway, notifier, session, world):
    alice, community = world
    make_subscription(session, alice, community, state="trialing")
    body = _trial_body()

    result = gateway.handle(body, sign(body))

    assert result.reconcile_status is ReconcileStatus.NOTIFY_ONLY
    assert [n.email for n in notifier.sent] == ["alice@example.com"]
    assert len(_rows(session, ProcessedEvent)) == 1


def test_notifier_failure_does_not_fail_delivery(session_factory, session, world):
    alice, community = world
    make_subscription(session, alice, community, state="trialing")
    gateway = EventGateway(
        session_factory=session_factory,
        webhook_secret=WEBHOOK_SECRET,
        notifier=RecordingNotifier(fail=True),
    )
    body = _trial_body()

    result = gateway.handle(body, sign(body))

    assert result.status is IngestionStatus.ACCEPTED
    assert len(_rows(session, ProcessedEvent)) == 1
