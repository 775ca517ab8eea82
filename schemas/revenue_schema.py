from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from core.config import settings
from services.revenue import (
    CommunityRevenue,
    PayoutRecord,
    PayoutReport,
    RevenueBreakdown,
    RevenueMetrics,
    SubscriptionAnalytics,
)


def to_display(amount: int, exponent: Optional[int] = None) -> Decimal:
    """Minor units -> Decimal with the currency's number of places."""
    places = settings.REPORTING_CURRENCY_EXPONENT if exponent is None else exponent
    return Decimal(amount).scaleb(-places).quantize(Decimal(1).scaleb(-places))


# ============================================================
# ✅ Revenue metrics
# ============================================================
class RevenueMetricsRead(BaseModel):
    period_start: datetime
    period_end: datetime
    currency: str
    total_revenue: Decimal
    monthly_revenue: Decimal
    monthly_recurring_revenue: Decimal
    average_revenue_per_user: Decimal
    total_revenue_minor: int
    active_subscriptions: int
    paying_users: int
    churn_rate: float
    skipped_invoices: int

    @classmethod
    def from_report(cls, report: RevenueMetrics) -> "RevenueMetricsRead":
        return cls(
            period_start=report.period_start,
            period_end=report.period_end,
            currency=report.currency,
            total_revenue=to_display(report.total_revenue),
            monthly_revenue=to_display(report.monthly_revenue),
            monthly_recurring_revenue=to_display(report.monthly_recurring_revenue),
            average_revenue_per_user=to_display(report.average_revenue_per_user),
            total_revenue_minor=report.total_revenue,
            active_subscriptions=report.active_subscriptions,
            paying_users=report.paying_users,
            churn_rate=report.churn_rate,
            skipped_invoices=report.skipped_invoices,
        )


# ============================================================
# ✅ Creator payouts
# ============================================================
class PayoutRecordRead(BaseModel):
    creator_id: int
    community_id: int
    period_start: datetime
    period_end: datetime
    total_revenue: Decimal
    platform_fee: Decimal
    creator_earnings: Decimal
    total_revenue_minor: int
    platform_fee_minor: int
    creator_earnings_minor: int

    @classmethod
    def from_record(cls, record: PayoutRecord) -> "PayoutRecordRead":
        return cls(
            creator_id=record.creator_id,
            community_id=record.community_id,
            period_start=record.period_start,
            period_end=record.period_end,
            total_revenue=to_display(record.total_revenue),
            platform_fee=to_display(record.platform_fee),
            creator_earnings=to_display(record.creator_earnings),
            total_revenue_minor=record.total_revenue,
            platform_fee_minor=record.platform_fee,
            creator_earnings_minor=record.creator_earnings,
        )


class PayoutReportRead(BaseModel):
    creator_id: int
    period_start: datetime
    period_end: datetime
    currency: str
    platform_fee_percent: Decimal
    payouts: List[PayoutRecordRead]
    skipped_invoices: int

    @classmethod
    def from_report(cls, report: PayoutReport) -> "PayoutReportRead":
        return cls(
            creator_id=report.creator_id,
            period_start=report.period_start,
            period_end=report.period_end,
            currency=report.currency,
            platform_fee_percent=to_display(report.platform_fee_bps, 2),
            payouts=[PayoutRecordRead.from_record(p) for p in report.payouts],
            skipped_invoices=report.skipped_invoices,
        )


# ============================================================
# ✅ Per-community breakdown / top communities
# ============================================================
class CommunityRevenueRead(BaseModel):
    community_id: int
    community_name: str
    revenue: Decimal
    revenue_minor: int
    active_subscriptions: int
    paying_users: int
    average_revenue_per_user: Decimal
    creator_id: Optional[int] = None
    creator_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: CommunityRevenue) -> "CommunityRevenueRead":
        return cls(
            community_id=row.community_id,
            community_name=row.community_name,
            revenue=to_display(row.revenue),
            revenue_minor=row.revenue,
            active_subscriptions=row.active_subscriptions,
            paying_users=row.paying_users,
            average_revenue_per_user=to_display(row.average_revenue_per_user),
            creator_id=row.creator_id,
            creator_name=row.creator_name,
        )


class RevenueBreakdownRead(BaseModel):
    period_start: datetime
    period_end: datetime
    currency: str
    communities: List[CommunityRevenueRead]
    skipped_invoices: int

    @classmethod
    def from_report(cls, report: RevenueBreakdown) -> "RevenueBreakdownRead":
        return cls(
            period_start=report.period_start,
            period_end=report.period_end,
            currency=report.currency,
            communities=[CommunityRevenueRead.from_row(r) for r in report.communities],
            skipped_invoices=report.skipped_invoices,
        )


# ============================================================
# ✅ Subscription analytics
# ============================================================
class SubscriptionAnalyticsRead(BaseModel):
    period_start: datetime
    period_end: datetime
    new_subscriptions: int
    canceled_subscriptions: int
    net_growth: int
    churn_rate: float

    @classmethod
    def from_report(cls, report: SubscriptionAnalytics) -> "SubscriptionAnalyticsRead":
        return cls(
            period_start=report.period_start,
            period_end=report.period_end,
            new_subscriptions=report.new_subscriptions,
            canceled_subscriptions=report.canceled_subscriptions,
            net_growth=report.net_growth,
            churn_rate=report.churn_rate,
        )


class DashboardSummaryRead(BaseModel):
    period_start: datetime
    period_end: datetime
    payouts: PayoutReportRead
    breakdown: RevenueBreakdownRead
    total_earnings: Decimal
    total_earnings_minor: int
    active_subscriptions: int
