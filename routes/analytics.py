# routes/analytics.py
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from core.clock import utcnow
from core.database import get_session
from core.security import ensure_community_access, get_current_user, require_platform_admin
from models.models import Community, User
from schemas.revenue_schema import (
    DashboardSummaryRead,
    PayoutReportRead,
    RevenueBreakdownRead,
    RevenueMetricsRead,
    SubscriptionAnalyticsRead,
    to_display,
)
from services.revenue import RevenueAggregator, build_invoice_source
from services.stripe_client import StripeClient, get_stripe_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])

DEFAULT_WINDOW_DAYS = 30


def get_revenue_aggregator(
    session: Session = Depends(get_session),
    client: StripeClient = Depends(get_stripe_client),
) -> RevenueAggregator:
    return RevenueAggregator(session, invoice_source=build_invoice_source(session, client))


# -------------------------
# Helper Functions
# -------------------------
def resolve_window(start_date: Optional[date], end_date: Optional[date]) -> Tuple[datetime, datetime]:
    """
    ISO dates -> half-open [start, end) datetimes; ``end_date`` is inclusive.
    Defaults to the last 30 days.
    """
    today = utcnow().date()
    end_day = end_date or today
    start_day = start_date or (end_day - timedelta(days=DEFAULT_WINDOW_DAYS - 1))
    if start_day > end_day:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return datetime.combine(start_day, time.min), datetime.combine(end_day + timedelta(days=1), time.min)


def _scope_check(session: Session, user: User, community_id: Optional[int]) -> None:
    """Community-scoped: creator or admin. Platform-wide: admin only."""
    if community_id is not None:
        ensure_community_access(user, session.get(Community, community_id))
    elif not user.is_platform_admin:
        raise HTTPException(status_code=403, detail="Platform admin privileges required")


def _creator_check(user: User, creator_id: Optional[int]) -> int:
    target = creator_id if creator_id is not None else user.id
    if target != user.id and not user.is_platform_admin:
        raise HTTPException(status_code=403, detail="You can only view your own payouts")
    return target


# -------------------------
# Revenue
# -------------------------
@router.get("/revenue/metrics", response_model=RevenueMetricsRead)
def revenue_metrics(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    community_id: Optional[int] = Query(default=None),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    _scope_check(session, current_user, community_id)
    start, end = resolve_window(start_date, end_date)
    return RevenueMetricsRead.from_report(aggregator.get_revenue_metrics(start, end, community_id))


@router.get("/revenue/payouts", response_model=PayoutReportRead)
def creator_payouts(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    creator_id: Optional[int] = Query(default=None),
    current_user: User = Depends(get_current_user),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    target = _creator_check(current_user, creator_id)
    start, end = resolve_window(start_date, end_date)
    return PayoutReportRead.from_report(aggregator.calculate_creator_payouts(start, end, target))


@router.get("/revenue/breakdown", response_model=RevenueBreakdownRead)
def revenue_breakdown(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    creator_id: Optional[int] = Query(default=None),
    current_user: User = Depends(get_current_user),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    target = _creator_check(current_user, creator_id)
    start, end = resolve_window(start_date, end_date)
    return RevenueBreakdownRead.from_report(aggregator.get_revenue_breakdown(start, end, target))


@router.get("/communities/top", response_model=RevenueBreakdownRead)
def top_communities(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(require_platform_admin),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    start, end = resolve_window(start_date, end_date)
    return RevenueBreakdownRead.from_report(aggregator.get_top_communities(start, end, limit))


# -------------------------
# Subscriptions
# -------------------------
@router.get("/subscriptions/analytics", response_model=SubscriptionAnalyticsRead)
def subscription_analytics(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    community_id: Optional[int] = Query(default=None),
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    _scope_check(session, current_user, community_id)
    start, end = resolve_window(start_date, end_date)
    return SubscriptionAnalyticsRead.from_report(aggregator.get_subscription_analytics(start, end, community_id))


# -------------------------
# Creator dashboard
# -------------------------
@router.get("/dashboard/summary", response_model=DashboardSummaryRead)
def dashboard_summary(
    current_user: User = Depends(get_current_user),
    aggregator: RevenueAggregator = Depends(get_revenue_aggregator),
):
    """Last 30 days for the caller's own communities."""
    start, end = resolve_window(None, None)
    payouts = aggregator.calculate_creator_payouts(start, end, current_user.id)
    breakdown = aggregator.get_revenue_breakdown(start, end, current_user.id)
    earnings = sum(p.creator_earnings for p in payouts.payouts)
    return DashboardSummaryRead(
        period_start=start,
        period_end=end,
        payouts=PayoutReportRead.from_report(payouts),
        breakdown=RevenueBreakdownRead.from_report(breakdown),
        total_earnings=to_display(earnings),
        total_earnings_minor=earnings,
        active_subscriptions=sum(r.active_subscriptions for r in breakdown.communities),
    )
