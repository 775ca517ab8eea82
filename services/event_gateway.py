# ================================================================
# services/event_gateway.py: Stripe webhook ingestion
# ================================================================
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import stripe
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session

from core.config import settings
from core.database import engine
from core.exceptions import ProviderNotConfiguredError, ReconciliationConflictError, WebhookVerificationError
from services import ledger
from services.email_service import email_service
from services.event_mapper import BillingEvent, parse_event
from services.reconciler import Notification, ReconcileStatus, reconcile

logger = logging.getLogger(__name__)


class IngestionStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class IngestionResult:
    status: IngestionStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    reason: Optional[str] = None
    reconcile_status: Optional[ReconcileStatus] = None
    notification: Optional[Notification] = None


def _default_session_factory() -> Session:
    return Session(engine)


class EventGateway:
    """
    Verify, deduplicate and reconcile one webhook delivery.

    The ProcessedEvent insert, the ledger write and the entitlement change
    share a single transaction: either all of them commit or none does, so
    a redelivery after a failure starts from a clean slate.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = _default_session_factory,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        max_attempts: Optional[int] = None,
        notifier=None,
    ) -> None:
        self._session_factory = session_factory
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
        self.max_attempts = settings.RECONCILE_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.notifier = notifier

    # ------------------------
    # Public entrypoint
    # ------------------------
    def handle(self, raw_body: bytes, signature_header: Optional[str]) -> IngestionResult:
        if not self.webhook_secret:
            logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
            raise ProviderNotConfiguredError("Stripe webhook secret is not configured")

        try:
            payload = self._verify(raw_body, signature_header)
            event = parse_event(payload)
        except WebhookVerificationError as e:
            logger.warning(f"❌ Webhook rejected: {e.message}")
            return IngestionResult(IngestionStatus.REJECTED, reason=e.message)

        if event is None:
            logger.info(f"ℹ️ Unhandled event type: {payload.get('type')} ({payload.get('id')})")
            return IngestionResult(IngestionStatus.ACCEPTED, event_id=payload.get("id"), event_type=payload.get("type"))

        logger.info(f"✅ Webhook received: {event.event_type} ({event.event_id})")
        result = self._process(event)

        if result.notification is not None:
            self._dispatch(result.notification)
        return result

    def _verify(self, raw_body: bytes, signature_header: Optional[str]) -> dict:
        """Signature and JSON checks; the payload is untrusted until this returns."""
        if not signature_header:
            raise WebhookVerificationError("missing signature")
        try:
            payload_text = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookVerificationError("payload is not utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload_text, signature_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("invalid signature", {"error": str(e)}) from e
        try:
            return json.loads(payload_text)
        except ValueError as e:
            raise WebhookVerificationError("invalid payload", {"error": str(e)}) from e

    # ------------------------
    # Transaction + retry
    # ------------------------
    def _process(self, event: BillingEvent) -> IngestionResult:
        attempt = 0
        while True:
            attempt += 1
            with self._session_factory() as session:
                try:
                    return self._process_once(session, event)
                except OperationalError as e:
                    session.rollback()
                    if attempt >= self.max_attempts:
                        logger.error(f"❌ Giving up on {event.event_id} after {attempt} attempts: {e}")
                        raise ReconciliationConflictError(
                            f"Could not reconcile {event.event_id}",
                            {"event_id": event.event_id, "attempts": attempt},
                        ) from e
                    logger.warning(f"🔁 Conflict reconciling {event.event_id} (attempt {attempt}/{self.max_attempts})")
                except Exception:
                    session.rollback()
                    raise

    def _process_once(self, session: Session, event: BillingEvent) -> IngestionResult:
        if ledger.is_processed(session, event.event_id):
            logger.info(f"🔁 Duplicate event {event.event_id} ignored")
            return IngestionResult(IngestionStatus.DUPLICATE, event_id=event.event_id, event_type=event.event_type)

        try:
            ledger.mark_processed(session, event.event_id, event.event_type)
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            session.rollback()
            logger.info(f"🔁 Duplicate event {event.event_id} (concurrent delivery)")
            return IngestionResult(IngestionStatus.DUPLICATE, event_id=event.event_id, event_type=event.event_type)

        outcome = reconcile(session, event)
        session.commit()
        logger.info(f"💾 {event.event_id} committed: {outcome.status.value}")
        return IngestionResult(
            IngestionStatus.ACCEPTED,
            event_id=event.event_id,
            event_type=event.event_type,
            reconcile_status=outcome.status,
            notification=outcome.notification,
        )

    def _dispatch(self, notification: Notification) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(notification)
        except Exception as e:
            logger.exception(f"❌ Billing notification failed for {notification.provider_subscription_id}: {e}")


def get_event_gateway() -> EventGateway:
    """FastAPI dependency; overridden in tests."""
    return EventGateway(notifier=email_service)
