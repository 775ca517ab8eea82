# ================================================================
# services/revenue.py: Revenue metrics and creator payouts
# ================================================================
"""
Read-only revenue reporting over the subscription ledger.

All amounts are integer minor units (cents for USD). Decimal display values
are produced by the response schemas, never here. Invoices that cannot be
trusted (bad amount, missing period, other currency) are left out of every
sum and counted in ``skipped_invoices`` instead of failing the report.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Collection, Dict, Iterable, List, Optional, Set, Tuple

from sqlmodel import Session, select

from core.config import settings
from core.exceptions import InvoiceDataError, MalformedEventError
from models.models import (
    ACCESS_GRANTING_STATES,
    CHURN_STATES,
    Community,
    LedgerInvoice,
    Subscription,
    SubscriptionStateChange,
    User,
)
from services import ledger
from services.event_mapper import invoice_period
from services.stripe_client import StripeClient, get_stripe_client

logger = logging.getLogger(__name__)

MONTHLY_WINDOW = timedelta(days=30)


# ============================================================
# Report types
# ============================================================
@dataclass(frozen=True)
class InvoiceLine:
    """One paid invoice as delivered by a source; not yet validated."""
    invoice_id: Optional[str]
    user_id: int
    community_id: int
    amount: Any
    currency: Any
    period_start: Optional[datetime]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class PaidInvoice:
    invoice_id: Optional[str]
    user_id: int
    community_id: int
    amount: int
    period_start: datetime


@dataclass
class InvoiceBatch:
    invoices: List[PaidInvoice] = field(default_factory=list)
    skipped: int = 0

    def in_window(self, start: datetime, end: datetime) -> List[PaidInvoice]:
        return [i for i in self.invoices if start <= i.period_start < end]


@dataclass(frozen=True)
class RevenueMetrics:
    period_start: datetime
    period_end: datetime
    currency: str
    total_revenue: int
    monthly_revenue: int
    monthly_recurring_revenue: int
    active_subscriptions: int
    paying_users: int
    average_revenue_per_user: int
    churn_rate: float
    skipped_invoices: int = 0


@dataclass(frozen=True)
class PayoutRecord:
    creator_id: int
    community_id: int
    period_start: datetime
    period_end: datetime
    total_revenue: int
    platform_fee: int
    creator_earnings: int


@dataclass(frozen=True)
class PayoutReport:
    creator_id: int
    period_start: datetime
    period_end: datetime
    currency: str
    platform_fee_bps: int
    payouts: List[PayoutRecord]
    skipped_invoices: int = 0


@dataclass(frozen=True)
class CommunityRevenue:
    community_id: int
    community_name: str
    revenue: int
    active_subscriptions: int
    paying_users: int
    average_revenue_per_user: int
    creator_id: Optional[int] = None
    creator_name: Optional[str] = None


@dataclass(frozen=True)
class RevenueBreakdown:
    period_start: datetime
    period_end: datetime
    currency: str
    communities: List[CommunityRevenue]
    skipped_invoices: int = 0


@dataclass(frozen=True)
class SubscriptionAnalytics:
    period_start: datetime
    period_end: datetime
    new_subscriptions: int
    canceled_subscriptions: int
    net_growth: int
    churn_rate: float


# ============================================================
# Integer helpers
# ============================================================
def round_half_up_div(numerator: int, denominator: int) -> int:
    """numerator / denominator rounded half up, for non-negative ints."""
    if denominator <= 0:
        return 0
    return (2 * numerator + denominator) // (2 * denominator)


def split_platform_fee(total: int, fee_bps: int) -> Tuple[int, int]:
    """(platform_fee, creator_earnings); the two always add back to ``total``."""
    platform_fee = round_half_up_div(total * fee_bps, 10_000)
    return platform_fee, total - platform_fee


def _percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part * 100 / whole, 2)


# ============================================================
# Invoice sources
# ============================================================
class LedgerInvoiceSource:
    """Paid invoices recorded locally from invoice.payment_succeeded events."""

    def __init__(self, session: Session):
        self.session = session

    def fetch(self, start: datetime, end: datetime, community_ids: Optional[Collection[int]] = None) -> List[InvoiceLine]:
        statement = select(LedgerInvoice).where(
            LedgerInvoice.period_start >= start,
            LedgerInvoice.period_start < end,
        )
        if community_ids is not None:
            statement = statement.where(LedgerInvoice.community_id.in_(list(community_ids)))
        return [
            InvoiceLine(
                invoice_id=row.provider_invoice_id,
                user_id=row.user_id,
                community_id=row.community_id,
                amount=row.amount_paid,
                currency=row.currency,
                period_start=row.period_start,
                period_end=row.period_end,
            )
            for row in self.session.exec(statement).all()
        ]


class ProviderInvoiceSource:
    """Paid invoices queried from Stripe for every ledger subscription in scope."""

    def __init__(self, session: Session, client: Optional[StripeClient] = None):
        self.session = session
        self.client = client or get_stripe_client()

    def fetch(self, start: datetime, end: datetime, community_ids: Optional[Collection[int]] = None) -> List[InvoiceLine]:
        statement = select(Subscription)
        if community_ids is not None:
            statement = statement.where(Subscription.community_id.in_(list(community_ids)))

        lines: List[InvoiceLine] = []
        for subscription in self.session.exec(statement).all():
            for invoice in self.client.list_invoices(subscription.provider_subscription_id, status="paid"):
                try:
                    period_start, period_end = invoice_period(invoice)
                except MalformedEventError:
                    period_start, period_end = None, None
                lines.append(InvoiceLine(
                    invoice_id=invoice.get("id"),
                    user_id=subscription.user_id,
                    community_id=subscription.community_id,
                    amount=invoice.get("amount_paid"),
                    currency=invoice.get("currency"),
                    period_start=period_start,
                    period_end=period_end,
                ))
        return lines


def build_invoice_source(session: Session, client: Optional[StripeClient] = None):
    if settings.REVENUE_INVOICE_SOURCE == "ledger":
        return LedgerInvoiceSource(session)
    return ProviderInvoiceSource(session, client)


# ============================================================
# Aggregator
# ============================================================
class RevenueAggregator:
    def __init__(
        self,
        session: Session,
        invoice_source=None,
        fee_bps: Optional[int] = None,
        currency: Optional[str] = None,
    ):
        self.session = session
        self.invoice_source = invoice_source if invoice_source is not None else build_invoice_source(session)
        self.fee_bps = settings.PLATFORM_FEE_BPS if fee_bps is None else fee_bps
        self.currency = (currency or settings.REPORTING_CURRENCY).lower()

    # ------------------------
    # Invoice collection
    # ------------------------
    def _validate(self, line: InvoiceLine) -> PaidInvoice:
        amount = line.amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvoiceDataError(f"Invalid amount {amount!r}", {"invoice_id": line.invoice_id})
        if line.period_start is None or line.period_end is None:
            raise InvoiceDataError("Missing billing period", {"invoice_id": line.invoice_id})
        if not isinstance(line.currency, str) or line.currency.lower() != self.currency:
            raise InvoiceDataError(f"Currency {line.currency!r} is not {self.currency}", {"invoice_id": line.invoice_id})
        return PaidInvoice(
            invoice_id=line.invoice_id,
            user_id=line.user_id,
            community_id=line.community_id,
            amount=amount,
            period_start=line.period_start,
        )

    def _collect(self, start: datetime, end: datetime, community_ids: Optional[Collection[int]] = None) -> InvoiceBatch:
        batch = InvoiceBatch()
        seen: Set[str] = set()
        for line in self.invoice_source.fetch(start, end, community_ids):
            if line.invoice_id and line.invoice_id in seen:
                continue
            try:
                invoice = self._validate(line)
            except InvoiceDataError as e:
                batch.skipped += 1
                logger.warning(f"⚠️ Skipping invoice {line.invoice_id}: {e.message}")
                continue
            if line.invoice_id:
                seen.add(line.invoice_id)
            if start <= invoice.period_start < end:
                batch.invoices.append(invoice)
        return batch

    # ------------------------
    # Ledger helpers
    # ------------------------
    @staticmethod
    def _check_window(start: datetime, end: datetime) -> None:
        if start >= end:
            raise ValueError("start must be before end")

    def _subscriptions(self, community_ids: Optional[Collection[int]] = None) -> List[Subscription]:
        statement = select(Subscription)
        if community_ids is not None:
            statement = statement.where(Subscription.community_id.in_(list(community_ids)))
        return list(self.session.exec(statement).all())

    def _active_counts(self, community_ids: Optional[Collection[int]] = None) -> Dict[int, int]:
        counts: Dict[int, int] = defaultdict(int)
        for subscription in self._subscriptions(community_ids):
            if subscription.grants_access:
                counts[subscription.community_id] += 1
        return counts

    def _churn(self, start: datetime, end: datetime, community_id: Optional[int] = None) -> Tuple[int, int]:
        """(churned in window, access-granting at window start) from state history."""
        statement = (
            select(SubscriptionStateChange)
            .join(Subscription, Subscription.id == SubscriptionStateChange.subscription_id)
            .where(SubscriptionStateChange.changed_at < end)
            .order_by(SubscriptionStateChange.changed_at, SubscriptionStateChange.id)
        )
        if community_id is not None:
            statement = statement.where(Subscription.community_id == community_id)

        state_at_start: Dict[int, str] = {}
        churned: Set[int] = set()
        churn_values = {s.value for s in CHURN_STATES}
        for change in self.session.exec(statement).all():
            if change.changed_at < start:
                state_at_start[change.subscription_id] = change.to_state
            elif change.to_state in churn_values:
                churned.add(change.subscription_id)

        access_values = {s.value for s in ACCESS_GRANTING_STATES}
        active_at_start = sum(1 for state in state_at_start.values() if state in access_values)
        return len(churned), active_at_start

    def _mrr(self, community_id: Optional[int] = None) -> int:
        prices = {c.id: c.price_monthly for c in self.session.exec(select(Community)).all()}
        return sum(prices.get(s.community_id, 0) for s in ledger.access_granting_subscriptions(self.session, community_id))

    # ------------------------
    # Reports
    # ------------------------
    def get_revenue_metrics(self, start: datetime, end: datetime, community_id: Optional[int] = None) -> RevenueMetrics:
        self._check_window(start, end)
        scope = [community_id] if community_id is not None else None
        batch = self._collect(start, end, scope)

        total = sum(i.amount for i in batch.invoices)
        monthly_start = max(start, end - MONTHLY_WINDOW)
        monthly = sum(i.amount for i in batch.in_window(monthly_start, end))
        payers = {i.user_id for i in batch.invoices}
        churned, active_at_start = self._churn(start, end, community_id)
        active_now = sum(self._active_counts(scope).values())

        return RevenueMetrics(
            period_start=start,
            period_end=end,
            currency=self.currency,
            total_revenue=total,
            monthly_revenue=monthly,
            monthly_recurring_revenue=self._mrr(community_id),
            active_subscriptions=active_now,
            paying_users=len(payers),
            average_revenue_per_user=round_half_up_div(total, len(payers)),
            churn_rate=_percentage(churned, active_at_start),
            skipped_invoices=batch.skipped,
        )

    def calculate_creator_payouts(self, start: datetime, end: datetime, creator_id: int) -> PayoutReport:
        self._check_window(start, end)
        communities = self.session.exec(
            select(Community).where(Community.creator_id == creator_id).order_by(Community.id)
        ).all()
        batch = self._collect(start, end, [c.id for c in communities])

        revenue_by_community: Dict[int, int] = defaultdict(int)
        for invoice in batch.invoices:
            revenue_by_community[invoice.community_id] += invoice.amount

        payouts: List[PayoutRecord] = []
        for community in communities:
            total = revenue_by_community.get(community.id, 0)
            if total <= 0:
                continue
            platform_fee, creator_earnings = split_platform_fee(total, self.fee_bps)
            payouts.append(PayoutRecord(
                creator_id=creator_id,
                community_id=community.id,
                period_start=start,
                period_end=end,
                total_revenue=total,
                platform_fee=platform_fee,
                creator_earnings=creator_earnings,
            ))

        logger.info(f"💸 {len(payouts)} payout record(s) for creator {creator_id}")
        return PayoutReport(
            creator_id=creator_id,
            period_start=start,
            period_end=end,
            currency=self.currency,
            platform_fee_bps=self.fee_bps,
            payouts=payouts,
            skipped_invoices=batch.skipped,
        )

    def _community_rows(self, communities: Iterable[Community], batch: InvoiceBatch) -> List[CommunityRevenue]:
        communities = list(communities)
        revenue: Dict[int, int] = defaultdict(int)
        payers: Dict[int, Set[int]] = defaultdict(set)
        for invoice in batch.invoices:
            revenue[invoice.community_id] += invoice.amount
            payers[invoice.community_id].add(invoice.user_id)
        active = self._active_counts([c.id for c in communities])

        creator_ids = {c.creator_id for c in communities}
        creators = {}
        if creator_ids:
            creators = {u.id: u for u in self.session.exec(select(User).where(User.id.in_(list(creator_ids)))).all()}

        rows = []
        for community in communities:
            total = revenue.get(community.id, 0)
            paying = len(payers.get(community.id, ()))
            creator = creators.get(community.creator_id)
            rows.append(CommunityRevenue(
                community_id=community.id,
                community_name=community.name,
                revenue=total,
                active_subscriptions=active.get(community.id, 0),
                paying_users=paying,
                average_revenue_per_user=round_half_up_div(total, paying),
                creator_id=community.creator_id,
                creator_name=creator.public_name if creator else None,
            ))
        rows.sort(key=lambda r: (-r.revenue, r.community_id))
        return rows

    def get_revenue_breakdown(self, start: datetime, end: datetime, creator_id: int) -> RevenueBreakdown:
        self._check_window(start, end)
        communities = self.session.exec(select(Community).where(Community.creator_id == creator_id)).all()
        batch = self._collect(start, end, [c.id for c in communities])
        return RevenueBreakdown(
            period_start=start,
            period_end=end,
            currency=self.currency,
            communities=self._community_rows(communities, batch),
            skipped_invoices=batch.skipped,
        )

    def get_top_communities(self, start: datetime, end: datetime, limit: int = 10) -> RevenueBreakdown:
        self._check_window(start, end)
        communities = self.session.exec(select(Community)).all()
        batch = self._collect(start, end)
        rows = [r for r in self._community_rows(communities, batch) if r.revenue > 0]
        return RevenueBreakdown(
            period_start=start,
            period_end=end,
            currency=self.currency,
            communities=rows[:max(limit, 0)],
            skipped_invoices=batch.skipped,
        )

    def get_subscription_analytics(
        self, start: datetime, end: datetime, community_id: Optional[int] = None
    ) -> SubscriptionAnalytics:
        self._check_window(start, end)
        statement = select(Subscription).where(Subscription.created_at >= start, Subscription.created_at < end)
        if community_id is not None:
            statement = statement.where(Subscription.community_id == community_id)
        new_subscriptions = len(self.session.exec(statement).all())
        churned, active_at_start = self._churn(start, end, community_id)
        return SubscriptionAnalytics(
            period_start=start,
            period_end=end,
            new_subscriptions=new_subscriptions,
            canceled_subscriptions=churned,
            net_growth=new_subscriptions - churned,
            churn_rate=_percentage(churned, active_at_start),
        )
