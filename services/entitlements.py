# ================================================================
# services/entitlements.py: Paid-access grants on community memberships
# ================================================================
import logging
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from core.clock import utcnow
from models.models import (
    Community,
    CommunityMembership,
    MembershipRole,
    MembershipStatus,
    Subscription,
)

logger = logging.getLogger(__name__)


class EntitlementAction(str, Enum):
    CREATED = "created"
    REACTIVATED = "reactivated"
    SUSPENDED = "suspended"
    UNCHANGED = "unchanged"


def _membership(session: Session, user_id: int, community_id: int) -> Optional[CommunityMembership]:
    statement = (
        select(CommunityMembership)
        .where(
            CommunityMembership.user_id == user_id,
            CommunityMembership.community_id == community_id,
        )
        .with_for_update()
    )
    return session.exec(statement).first()


def _adjust_member_count(session: Session, community_id: int, delta: int) -> None:
    # Increment in SQL so concurrent writers never lose an update
    session.execute(
        update(Community)
        .where(Community.id == community_id)
        .values(member_count=Community.member_count + delta)
    )


def grant_entitlement(session: Session, subscription: Subscription) -> EntitlementAction:
    """
    Give the subscriber active membership. Idempotent, no commit.

    - no membership: create one (member, active) and count it
    - suspended: reactivate, counter untouched
    - already active: nothing to do
    """
    membership = _membership(session, subscription.user_id, subscription.community_id)

    if membership is None:
        session.add(CommunityMembership(
            user_id=subscription.user_id,
            community_id=subscription.community_id,
            role=MembershipRole.MEMBER.value,
            status=MembershipStatus.ACTIVE.value,
        ))
        session.flush()
        _adjust_member_count(session, subscription.community_id, +1)
        logger.info(f"✅ Membership created for user {subscription.user_id} in community {subscription.community_id}")
        return EntitlementAction.CREATED

    if membership.status == MembershipStatus.SUSPENDED.value:
        membership.status = MembershipStatus.ACTIVE.value
        membership.updated_at = utcnow()
        session.add(membership)
        logger.info(f"🔓 Membership {membership.id} reactivated")
        return EntitlementAction.REACTIVATED

    return EntitlementAction.UNCHANGED


def revoke_entitlement(session: Session, subscription: Subscription) -> EntitlementAction:
    """Suspend an active membership and uncount it. Free communities are left alone."""
    community = session.get(Community, subscription.community_id)
    if community is None:
        logger.warning(f"⚠️ Community {subscription.community_id} not found while revoking access")
        return EntitlementAction.UNCHANGED
    if not community.requires_payment:
        return EntitlementAction.UNCHANGED

    membership = _membership(session, subscription.user_id, subscription.community_id)
    if membership is None or membership.status != MembershipStatus.ACTIVE.value:
        return EntitlementAction.UNCHANGED

    membership.status = MembershipStatus.SUSPENDED.value
    membership.updated_at = utcnow()
    session.add(membership)
    session.flush()
    _adjust_member_count(session, subscription.community_id, -1)
    logger.info(f"🔒 Membership {membership.id} suspended (subscription {subscription.provider_subscription_id})")
    return EntitlementAction.SUSPENDED
