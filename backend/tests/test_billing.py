from pathlib import Path

import pytest
from sqlalchemy import select

from accountguard.billing import apply_billing_event, sign_payload, sync_profile_plan, verify_signature
from accountguard.config import settings
from accountguard.db import get_db, init_db, reset_database_engine
from accountguard.errors import InvalidWebhookSignature
from accountguard.idempotency import apply_external_event
from accountguard.models import Profile, Subscription, SubscriptionEvent

SECRET = "whsec_test"
TS = 1_762_516_800


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    test_url = f"sqlite:///{tmp_path / 'billing-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    reset_database_engine(test_url)
    init_db()
    with get_db() as session:
        session.add(Profile(id="a1", email="a1@example.com", plan="free"))

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        reset_database_engine(original_db_url)


def _event(event_id, event_type, status="active", **extra):
    obj = {
        "id": "sub_123",
        "customer": "cus_9",
        "status": status,
        "metadata": {"account_id": "a1", "plan_type": "pro"},
        "items": {"data": [{"current_period_end": TS + 30 * 86400}]},
    }
    obj.update(extra)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _apply(event):
    return apply_external_event(event["id"], lambda session: apply_billing_event(session, event))


def _history():
    with get_db() as session:
        rows = session.execute(select(SubscriptionEvent).order_by(SubscriptionEvent.id)).scalars().all()
        return [(row.event_type, row.previous_status, row.new_status, row.previous_plan, row.new_plan) for row in rows]


def _plan():
    with get_db() as session:
        return session.get(Profile, "a1").plan


def test_signature_round_trip_and_tolerance():
    payload = b'{"id": "evt_1"}'
    header = sign_payload(payload, SECRET, timestamp=TS)

    verify_signature(payload, header, SECRET, tolerance_seconds=300, now=TS + 10)

    with pytest.raises(InvalidWebhookSignature):
        verify_signature(payload, header, SECRET, tolerance_seconds=300, now=TS + 301)
    with pytest.raises(InvalidWebhookSignature):
        verify_signature(payload + b" ", header, SECRET, tolerance_seconds=300, now=TS)
    with pytest.raises(InvalidWebhookSignature):
        verify_signature(payload, header, "other-secret", tolerance_seconds=300, now=TS)


def test_signature_header_must_be_well_formed():
    for header in (None, "", "v1=abc", "t=notanumber,v1=abc", f"t={TS}"):
        with pytest.raises(InvalidWebhookSignature):
            verify_signature(b"{}", header, SECRET, now=TS)


def test_rotated_secret_signature_is_accepted():
    payload = b"{}"
    good = sign_payload(payload, SECRET, timestamp=TS).split(",")[1]
    header = f"t={TS},v1=deadbeef,{good}"
    verify_signature(payload, header, SECRET, now=TS)


def test_subscription_lifecycle_drives_profile_plan():
    assert _apply(_event("evt_1", "customer.subscription.created", status="trialing")) is True
    assert _plan() == "pro"

    assert _apply(_event("evt_2", "customer.subscription.updated", status="past_due")) is True
    assert _plan() == "free"

    assert _apply(_event("evt_3", "customer.subscription.updated", status="active")) is True
    assert _plan() == "pro"

    assert _apply(_event("evt_4", "customer.subscription.deleted", canceled_at=TS)) is True
    assert _plan() == "free"

    with get_db() as session:
        sub = session.execute(select(Subscription)).scalar_one()
        assert sub.status == "canceled"
        assert session.get(Profile, "a1").billing_customer_id == "cus_9"


def test_duplicate_delivery_is_a_no_op():
    event = _event("evt_1", "customer.subscription.created")
    assert _apply(event) is True
    assert _apply(event) is False

    with get_db() as session:
        assert len(session.execute(select(Subscription)).scalars().all()) == 1


def test_late_update_does_not_revive_canceled_subscription():
    _apply(_event("evt_1", "customer.subscription.created"))
    _apply(_event("evt_3", "customer.subscription.deleted"))
    _apply(_event("evt_2", "customer.subscription.updated", status="active"))

    assert _plan() == "free"


def test_update_arriving_before_create_creates_the_row():
    _apply(_event("evt_2", "customer.subscription.updated", status="active"))
    assert _plan() == "pro"


def test_unhandled_event_types_are_claimed_but_ignored():
    assert _apply({"id": "evt_x", "type": "invoice.paid", "data": {"object": {}}}) is True
    assert _plan() == "free"


def test_missing_metadata_rejects_event_and_releases_claim():
    event = _event("evt_1", "customer.subscription.created", metadata={})

    with pytest.raises(ValueError):
        _apply(event)

    fixed = _event("evt_1", "customer.subscription.created")
    assert _apply(fixed) is True


def test_sync_profile_plan_prefers_team_over_pro():
    with get_db() as session:
        session.add(Subscription(account_id="a1", external_subscription_id="s1", plan_type="pro", status="active"))
        session.add(Subscription(account_id="a1", external_subscription_id="s2", plan_type="team", status="trialing"))

    with get_db() as session:
        assert sync_profile_plan(session, "a1") == "team"


def test_lifecycle_changes_are_recorded_as_history():
    _apply(_event("evt_1", "customer.subscription.created", status="trialing"))
    _apply(_event("evt_2", "customer.subscription.updated", status="active"))
    _apply(_event("evt_3", "customer.subscription.updated", status="past_due"))
    _apply(_event("evt_4", "customer.subscription.updated", status="active"))
    _apply(_event("evt_5", "customer.subscription.updated", status="active"))
    _apply(_event("evt_6", "customer.subscription.deleted", canceled_at=TS))

    assert _history() == [
        ("trial_started", None, "trialing", None, "pro"),
        ("trial_converted", "trialing", "active", "pro", "pro"),
        ("payment_failed", "active", "past_due", "pro", "pro"),
        ("payment_succeeded", "past_due", "active", "pro", "pro"),
        ("canceled", "active", "canceled", "pro", "pro"),
    ]


def test_plan_change_is_recorded_as_upgrade():
    _apply(_event("evt_1", "customer.subscription.created"))
    _apply(
        _event(
            "evt_2",
            "customer.subscription.updated",
            metadata={"account_id": "a1", "plan_type": "team"},
        )
    )

    assert _plan() == "team"
    assert _history()[-1] == ("upgraded", "active", "active", "pro", "team")


def test_duplicate_delivery_records_history_once():
    event = _event("evt_1", "customer.subscription.created")
    _apply(event)
    _apply(event)

    assert _history() == [("created", None, "active", None, "pro")]


def test_checkout_completion_links_billing_customer():
    event = {
        "id": "evt_c1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "mode": "subscription", "customer": "cus_42", "client_reference_id": "a1"}},
    }

    with get_db() as session:
        assert apply_billing_event(session, event) is True

    with get_db() as session:
        profile = session.get(Profile, "a1")
        assert profile.billing_customer_id == "cus_42"
        assert profile.plan == "free"


def test_one_off_checkout_is_ignored():
    event = {
        "id": "evt_c2",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_2", "mode": "payment", "customer": "cus_42", "client_reference_id": "a1"}},
    }

    with get_db() as session:
        assert apply_billing_event(session, event) is False

    with get_db() as session:
        assert session.get(Profile, "a1").billing_customer_id is None


def test_checkout_without_account_reference_is_rejected():
    event = {
        "id": "evt_c3",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_3", "mode": "subscription", "customer": "cus_42"}},
    }

    with pytest.raises(ValueError):
        _apply(event)
