import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import settings
from services.event_mapper import EventKind
from services.reconciler import Notification

logger = logging.getLogger(__name__)


def format_minor_units(amount: int, currency: str) -> str:
    exponent = settings.REPORTING_CURRENCY_EXPONENT
    return f"{amount / (10 ** exponent):.{exponent}f} {currency.upper()}"


class EmailService:
    """
    Billing reminders via SendGrid.
    Handles trial-ending and upcoming-invoice notices for subscribers.
    """

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        self.sendgrid_api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.sender_email = sender_email if sender_email is not None else settings.MAIL_FROM

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    # ============================================================
    # ✅ Generic send (synchronous; runs after the webhook commit)
    # ============================================================
    def send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {to_email} | Subject: {subject}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Email sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception(f"❌ Failed to send email to {to_email}: {e}")
            return False

    # ============================================================
    # ✅ Billing notifications
    # ============================================================
    def notify(self, notification: Notification) -> bool:
        """Send the reminder for a notification-only billing event."""
        if not notification.email:
            logger.warning(f"📧 No email on file for user {notification.user_id}; skipping {notification.kind.value}")
            return False

        community = notification.community_name or "your community"
        name = notification.user_name or "there"
        billing_link = f"{settings.FRONTEND_URL}/billing"

        if notification.kind is EventKind.TRIAL_WILL_END:
            trial_end = notification.details.get("trial_end")
            when = trial_end.strftime("%B %d, %Y") if trial_end else "soon"
            subject = f"⏳ Your trial for {community} ends {when}"
            body = f"<p>Your free trial of <strong>{community}</strong> ends on {when}.</p>"
        elif notification.kind is EventKind.UPCOMING_INVOICE:
            amount = notification.details.get("amount_due", 0)
            currency = notification.details.get("currency") or settings.REPORTING_CURRENCY
            subject = f"🧾 Upcoming payment for {community}"
            body = (
                f"<p>Your next payment of <strong>{format_minor_units(amount, currency)}</strong> "
                f"for <strong>{community}</strong> is coming up.</p>"
            )
        else:
            logger.info(f"ℹ️ No email template for {notification.kind.value}")
            return False

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>👋 Hi {name},</h2>
            {body}
            <p>You can review your subscription and payment method here:</p>
            <p style="word-break: break-all; color: #555;">{billing_link}</p>
        </div>
        """
        return self.send_email(notification.email, subject, html_content)


# ============================================================
# ✅ Global instance for app-wide import
# ============================================================
email_service = EmailService()
