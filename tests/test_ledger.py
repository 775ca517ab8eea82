import pytest
from sqlalchemy.exc import IntegrityError

from models.models import Subscription
from services import ledger
from tests.factories import make_community, make_pending, make_subscription, make_user


@pytest.fixture
def world(session):
    creator = make_user(session, "creator")
    alice = make_user(session, "alice")
    community = make_community(session, creator)
    return alice, community


def test_database_refuses_second_access_granting_row(session, world):
    alice, community = world
    make_subscription(session, alice, community, provider_subscription_id="sub_1", state="active")

    session.add(Subscription(
        user_id=alice.id,
        community_id=community.id,
        provider_subscription_id="sub_2",
        state="trialing",
    ))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


def test_lapsed_rows_do_not_hold_the_access_slot(session, world):
    alice, community = world
    make_subscription(session, alice, community, provider_subscription_id="sub_old", state="canceled")
    make_subscription(session, alice, community, provider_subscription_id="sub_unpaid", state="unpaid")
    make_subscription(session, alice, community, provider_subscription_id="sub_1", state="active")

    holder = ledger.find_access_granting(session, alice.id, community.id)
    assert holder.provider_subscription_id == "sub_1"
    assert ledger.find_access_granting(session, alice.id, community.id, exclude_id=holder.id) is None


def test_no_holder_for_other_members(session, world):
    alice, community = world
    bob = make_user(session, "bob")
    make_subscription(session, alice, community)

    assert ledger.find_access_granting(session, bob.id, community.id) is None


def test_close_pending_marks_request_answered(session, world):
    alice, community = world
    pending = make_pending(session, alice, community, request_id="req_9")

    ledger.close_pending(session, pending, "sub_9")
    session.commit()

    assert ledger.find_pending(session, provider_subscription_id="sub_9").request_id == "req_9"
    assert pending.consumed_at is not None
