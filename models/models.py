# models/models.py
from typing import Optional
from datetime import datetime
from enum import Enum

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import SQLModel, Field

from core.clock import utcnow


# ============================================================
# ENUMS
# ============================================================
class SubscriptionState(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCEL_SCHEDULED = "cancel_scheduled"
    CANCELED = "canceled"

    @property
    def grants_access(self) -> bool:
        return self in ACCESS_GRANTING_STATES

    @property
    def is_terminal(self) -> bool:
        return self is SubscriptionState.CANCELED


ACCESS_GRANTING_STATES = frozenset({
    SubscriptionState.TRIALING,
    SubscriptionState.ACTIVE,
    SubscriptionState.CANCEL_SCHEDULED,
})

# States that count as churn when entered
CHURN_STATES = frozenset({SubscriptionState.CANCELED, SubscriptionState.UNPAID})


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class MembershipRole(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


_ACCESS_STATES_SQL = "state IN ('active', 'trialing', 'cancel_scheduled')"


# ============================================================
# USER (owned by the account service; projection used here)
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, max_length=255, nullable=False)
    username: str = Field(max_length=50, index=True)
    display_name: Optional[str] = Field(default=None, max_length=100)
    is_platform_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def public_name(self) -> str:
        return self.display_name or self.username


# ============================================================
# COMMUNITY (owned by the community service; projection used here)
# ============================================================
class Community(SQLModel, table=True):
    __tablename__ = "community"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    slug: str = Field(max_length=100, unique=True, index=True)
    creator_id: int = Field(foreign_key="user.id", index=True)

    # Active members; paid-access changes go through the entitlement manager
    member_count: int = Field(default=0)

    # Minor units (cents)
    price_monthly: int = Field(default=0)
    currency: str = Field(default="usd", max_length=3)
    requires_payment: bool = Field(default=True)

    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# COMMUNITY MEMBERSHIP
# ============================================================
class CommunityMembership(SQLModel, table=True):
    __tablename__ = "community_membership"
    __table_args__ = (UniqueConstraint("user_id", "community_id", name="uq_membership_user_community"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    community_id: int = Field(foreign_key="community.id", index=True)
    role: str = Field(default=MembershipRole.MEMBER.value, max_length=20)
    status: str = Field(default=MembershipStatus.ACTIVE.value, max_length=20)
    joined_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# SUBSCRIPTION (ledger row)
# ============================================================
class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"
    __table_args__ = (
        # At most one access-granting row per (user, community)
        Index(
            "uq_subscription_active_access",
            "user_id",
            "community_id",
            unique=True,
            postgresql_where=text(_ACCESS_STATES_SQL),
            sqlite_where=text(_ACCESS_STATES_SQL),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    community_id: int = Field(foreign_key="community.id", index=True)

    provider_subscription_id: str = Field(max_length=255, unique=True, index=True)
    provider_customer_id: Optional[str] = Field(default=None, max_length=255)
    provider_price_id: Optional[str] = Field(default=None, max_length=255)

    state: str = Field(max_length=20, index=True)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    # Provider timestamp of the newest applied event
    last_event_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def subscription_state(self) -> SubscriptionState:
        return SubscriptionState(self.state)

    @property
    def grants_access(self) -> bool:
        return self.subscription_state.grants_access


# ============================================================
# PENDING SUBSCRIPTION (creation request awaiting first event)
# ============================================================
class PendingSubscription(SQLModel, table=True):
    __tablename__ = "pending_subscription"

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: str = Field(max_length=64, unique=True, index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    community_id: int = Field(foreign_key="community.id", index=True)
    price_id: str = Field(max_length=255)
    provider_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    consumed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# SUBSCRIPTION STATE CHANGE LOG
# ============================================================
class SubscriptionStateChange(SQLModel, table=True):
    __tablename__ = "subscription_state_change"

    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    from_state: Optional[str] = Field(default=None, max_length=20)
    to_state: str = Field(max_length=20, index=True)
    provider_event_id: Optional[str] = Field(default=None, max_length=255)
    changed_at: datetime = Field(default_factory=utcnow, index=True)


# ============================================================
# PROCESSED EVENT (webhook idempotency)
# ============================================================
class ProcessedEvent(SQLModel, table=True):
    __tablename__ = "processed_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider_event_id: str = Field(max_length=255, unique=True, index=True)
    event_type: str = Field(max_length=100)
    processed_at: datetime = Field(default_factory=utcnow, index=True)


# ============================================================
# LEDGER INVOICE (paid invoices seen through webhooks)
# ============================================================
class LedgerInvoice(SQLModel, table=True):
    __tablename__ = "ledger_invoice"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider_invoice_id: str = Field(max_length=255, unique=True, index=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    community_id: int = Field(foreign_key="community.id", index=True)

    # Minor units
    amount_paid: int = Field(default=0)
    currency: str = Field(default="usd", max_length=3)

    period_start: datetime = Field(index=True)
    period_end: datetime
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "User",
    "Community",
    "CommunityMembership",
    "Subscription",
    "PendingSubscription",
    "SubscriptionStateChange",
    "ProcessedEvent",
    "LedgerInvoice",
    "SubscriptionState",
    "MembershipStatus",
    "MembershipRole",
    "ACCESS_GRANTING_STATES",
    "CHURN_STATES",
]
