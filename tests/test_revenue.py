from datetime import datetime, timedelta

import pytest

from core.config import settings
from models.models import LedgerInvoice
from services.revenue import (
    InvoiceLine,
    LedgerInvoiceSource,
    ProviderInvoiceSource,
    RevenueAggregator,
    build_invoice_source,
    round_half_up_div,
    split_platform_fee,
)
from tests.factories import add_state_change, invoice_object, make_community, make_subscription, make_user
from tests.fakes import FakeStripeClient

START = datetime(2024, 1, 1)
END = datetime(2024, 2, 1)
IN_WINDOW = datetime(2024, 1, 15)


class StaticInvoiceSource:
    def __init__(self, lines):
        self.lines = lines

    def fetch(self, start, end, community_ids=None):
        if community_ids is None:
            return list(self.lines)
        return [line for line in self.lines if line.community_id in set(community_ids)]


def _line(community, user_id=1, amount=1000, invoice_id=None, currency="usd", period_start=IN_WINDOW):
    return InvoiceLine(
        invoice_id=invoice_id,
        user_id=user_id,
        community_id=community.id,
        amount=amount,
        currency=currency,
        period_start=period_start,
        period_end=period_start + timedelta(days=30) if period_start else None,
    )


@pytest.fixture
def creator(session):
    return make_user(session, "creator")


def _aggregator(session, lines=(), fee_bps=500):
    return RevenueAggregator(session, invoice_source=StaticInvoiceSource(list(lines)), fee_bps=fee_bps, currency="usd")


# ============================================================
# Integer helpers
# ============================================================
@pytest.mark.parametrize(
    "numerator, denominator, expected",
    [(2001, 2, 1001), (1000, 3, 333), (5, 2, 3), (0, 4, 0), (100, 0, 0)],
)
def test_round_half_up_div(numerator, denominator, expected):
    assert round_half_up_div(numerator, denominator) == expected


def test_fee_split_adds_back_to_total():
    for total in (1, 99, 12345, 10_000):
        fee, earnings = split_platform_fee(total, 1000)
        assert fee + earnings == total


# ============================================================
# Metrics
# ============================================================
def test_empty_window_is_all_zero(session, creator):
    metrics = _aggregator(session).get_revenue_metrics(START, END)

    assert metrics.total_revenue == 0
    assert metrics.average_revenue_per_user == 0
    assert metrics.churn_rate == 0.0
    assert metrics.paying_users == 0
    assert metrics.skipped_invoices == 0


def test_metrics_totals_and_arpu(session, creator):
    community = make_community(session, creator)
    lines = [
        _line(community, user_id=1, amount=1000, invoice_id="in_1"),
        _line(community, user_id=2, amount=1001, invoice_id="in_2"),
        # Early in the window: counted in total, outside the trailing 30 days
        _line(community, user_id=2, amount=500, invoice_id="in_3", period_start=datetime(2024, 1, 1, 6)),
    ]

    metrics = _aggregator(session, lines).get_revenue_metrics(START, END)

    assert metrics.total_revenue == 2501
    assert metrics.monthly_revenue == 2001
    assert metrics.paying_users == 2
    assert metrics.average_revenue_per_user == 1251
    assert metrics.currency == "usd"


def test_bad_invoices_are_skipped_not_fatal(session, creator):
    community = make_community(session, creator)
    lines = [
        _line(community, amount=1000, invoice_id="in_ok"),
        _line(community, amount=1000, invoice_id="in_ok"),
        _line(community, amount=-1, invoice_id="in_negative"),
        _line(community, amount="12", invoice_id="in_text"),
        _line(community, amount=700, invoice_id="in_eur", currency="eur"),
        _line(community, amount=700, invoice_id="in_no_period", period_start=None),
    ]

    metrics = _aggregator(session, lines).get_revenue_metrics(START, END)

    assert metrics.total_revenue == 1000
    assert metrics.skipped_invoices == 4


def test_invoices_outside_window_are_ignored(session, creator):
    community = make_community(session, creator)
    lines = [
        _line(community, amount=1000, invoice_id="in_before", period_start=datetime(2023, 12, 31)),
        _line(community, amount=1000, invoice_id="in_at_end", period_start=END),
        _line(community, amount=300, invoice_id="in_inside"),
    ]

    assert _aggregator(session, lines).get_revenue_metrics(START, END).total_revenue == 300


def test_mrr_and_active_count_follow_ledger(session, creator):
    community = make_community(session, creator, price_monthly=1500)
    for name, state in (("a", "active"), ("b", "trialing"), ("c", "past_due"), ("d", "canceled")):
        make_subscription(session, make_user(session, name), community, provider_subscription_id=f"sub_{name}", state=state)

    metrics = _aggregator(session).get_revenue_metrics(START, END)

    assert metrics.active_subscriptions == 2
    assert metrics.monthly_recurring_revenue == 3000


def test_churn_rate_from_state_history(session, creator):
    community = make_community(session, creator)
    kept = make_subscription(session, make_user(session, "kept"), community, provider_subscription_id="sub_kept")
    lost = make_subscription(
        session, make_user(session, "lost"), community, provider_subscription_id="sub_lost", state="canceled"
    )
    add_state_change(session, kept, "active", datetime(2023, 12, 1))
    add_state_change(session, lost, "active", datetime(2023, 12, 1))
    add_state_change(session, lost, "canceled", datetime(2024, 1, 10), from_state="active")

    metrics = _aggregator(session).get_revenue_metrics(START, END)

    assert metrics.churn_rate == 50.0


def test_invalid_window_raises(session, creator):
    with pytest.raises(ValueError):
        _aggregator(session).get_revenue_metrics(END, START)


# ============================================================
# Payouts
# ============================================================
def test_creator_payouts_split_platform_fee(session, creator):
    first = make_community(session, creator, name="First")
    second = make_community(session, creator, name="Second")
    other = make_community(session, make_user(session, "other"), name="Not Mine")
    lines = [
        _line(first, amount=6000, invoice_id="in_1"),
        _line(first, amount=4000, invoice_id="in_2"),
        _line(second, amount=5000, invoice_id="in_3"),
        _line(other, amount=9999, invoice_id="in_4"),
    ]

    report = _aggregator(session, lines, fee_bps=1000).calculate_creator_payouts(START, END, creator.id)

    assert [p.community_id for p in report.payouts] == [first.id, second.id]
    assert [p.creator_earnings for p in report.payouts] == [9000, 4500]
    assert [p.platform_fee for p in report.payouts] == [1000, 500]
    for payout in report.payouts:
        assert payout.platform_fee + payout.creator_earnings == payout.total_revenue
    assert report.platform_fee_bps == 1000


def test_communities_without_revenue_get_no_payout(session, creator):
    make_community(session, creator)
    report = _aggregator(session).calculate_creator_payouts(START, END, creator.id)
    assert report.payouts == []


# ============================================================
# Breakdown / top communities
# ============================================================
def test_breakdown_sorted_by_revenue(session, creator):
    small = make_community(session, creator, name="Small")
    big = make_community(session, creator, name="Big")
    idle = make_community(session, creator, name="Idle")
    lines = [
        _line(small, user_id=1, amount=500, invoice_id="in_1"),
        _line(big, user_id=1, amount=1000, invoice_id="in_2"),
        _line(big, user_id=2, amount=500, invoice_id="in_3"),
    ]

    breakdown = _aggregator(session, lines).get_revenue_breakdown(START, END, creator.id)

    assert [r.community_id for r in breakdown.communities] == [big.id, small.id, idle.id]
    assert breakdown.communities[0].paying_users == 2
    assert breakdown.communities[0].average_revenue_per_user == 750
    assert breakdown.communities[0].creator_name == "creator"


def test_top_communities_skip_zero_revenue_and_limit(session, creator):
    small = make_community(session, creator, name="Small")
    big = make_community(session, make_user(session, "other"), name="Big")
    make_community(session, creator, name="Idle")
    lines = [
        _line(small, amount=500, invoice_id="in_1"),
        _line(big, amount=1500, invoice_id="in_2"),
    ]
    aggregator = _aggregator(session, lines)

    assert [r.community_id for r in aggregator.get_top_communities(START, END).communities] == [big.id, small.id]
    assert [r.community_id for r in aggregator.get_top_communities(START, END, limit=1).communities] == [big.id]


# ============================================================
# Subscription analytics
# ============================================================
def test_subscription_analytics(session, creator):
    community = make_community(session, creator)
    old = make_subscription(
        session, make_user(session, "old"), community,
        provider_subscription_id="sub_old", state="canceled", created_at=datetime(2023, 11, 1),
    )
    make_subscription(session, make_user(session, "new1"), community, provider_subscription_id="sub_n1", created_at=IN_WINDOW)
    make_subscription(session, make_user(session, "new2"), community, provider_subscription_id="sub_n2", created_at=IN_WINDOW)
    add_state_change(session, old, "active", datetime(2023, 11, 1))
    add_state_change(session, old, "canceled", IN_WINDOW, from_state="active")

    analytics = _aggregator(session).get_subscription_analytics(START, END)

    assert analytics.new_subscriptions == 2
    assert analytics.canceled_subscriptions == 1
    assert analytics.net_growth == 1
    assert analytics.churn_rate == 100.0


# ============================================================
# Invoice sources
# ============================================================
def test_provider_source_reads_paid_invoices(session, creator):
    community = make_community(session, creator)
    alice = make_user(session, "alice")
    make_subscription(session, alice, community, provider_subscription_id="sub_1")
    client = FakeStripeClient()
    in_window = 1_704_844_800  # 2024-01-10 00:00 UTC
    paid = invoice_object(invoice_id="in_paid", amount_paid=2500, period_start=in_window, period_end=in_window + 2_592_000)
    paid["status"] = "paid"
    draft = invoice_object(invoice_id="in_draft", amount_paid=0, period_start=in_window, period_end=in_window + 2_592_000)
    draft["status"] = "draft"
    client.invoices["sub_1"] = [paid, draft]

    source = ProviderInvoiceSource(session, client)
    metrics = RevenueAggregator(session, invoice_source=source, currency="usd").get_revenue_metrics(START, END)

    assert metrics.total_revenue == 2500
    assert metrics.paying_users == 1


def test_ledger_source_reads_recorded_invoices(session, creator):
    community = make_community(session, creator)
    alice = make_user(session, "alice")
    subscription = make_subscription(session, alice, community)
    session.add(LedgerInvoice(
        provider_invoice_id="in_1",
        subscription_id=subscription.id,
        user_id=alice.id,
        community_id=community.id,
        amount_paid=1200,
        currency="usd",
        period_start=IN_WINDOW,
        period_end=IN_WINDOW + timedelta(days=30),
    ))
    session.commit()

    aggregator = RevenueAggregator(session, invoice_source=LedgerInvoiceSource(session), currency="usd")

    assert aggregator.get_revenue_metrics(START, END).total_revenue == 1200
    assert aggregator.get_revenue_metrics(START, END, community_id=community.id + 1).total_revenue == 0


def test_invoice_source_follows_settings(session, monkeypatch):
    monkeypatch.setattr(settings, "REVENUE_INVOICE_SOURCE", "ledger")
    assert isinstance(build_invoice_source(session, FakeStripeClient()), LedgerInvoiceSource)

    monkeypatch.setattr(settings, "REVENUE_INVOICE_SOURCE", "provider")
    assert isinstance(build_invoice_source(session, FakeStripeClient()), ProviderInvoiceSource)
