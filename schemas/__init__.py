from .subscription_schema import (
    SubscriptionCreate, SubscriptionRead, SubscriptionCreated, SubscriptionDetail,
    PlanChange, PaymentMethodUpdate,
    InvoiceRead, UpcomingInvoiceRead, SetupIntentRead, PaymentMethodRead,
    WebhookAck,
)
from .revenue_schema import (
    to_display,
    RevenueMetricsRead,
    PayoutRecordRead, PayoutReportRead,
    CommunityRevenueRead, RevenueBreakdownRead,
    SubscriptionAnalyticsRead, DashboardSummaryRead,
)

__all__ = [
    # Subscription
    "SubscriptionCreate", "SubscriptionRead", "SubscriptionCreated", "SubscriptionDetail",
    "PlanChange", "PaymentMethodUpdate",
    "InvoiceRead", "UpcomingInvoiceRead", "SetupIntentRead", "PaymentMethodRead",
    "WebhookAck",

    # Revenue
    "to_display",
    "RevenueMetricsRead",
    "PayoutRecordRead", "PayoutReportRead",
    "CommunityRevenueRead", "RevenueBreakdownRead",
    "SubscriptionAnalyticsRead", "DashboardSummaryRead",
]
