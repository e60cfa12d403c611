from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidWebhookSignature
from .models import Profile, Subscription, SubscriptionEvent, utcnow

logger = logging.getLogger("accountguard.billing")

PAID_STATUSES = frozenset({"active", "trialing"})
KNOWN_STATUSES = frozenset({"trialing", "active", "past_due", "canceled", "suspended", "incomplete", "unpaid"})
_STATUS_ALIASES = {"incomplete_expired": "canceled", "paused": "suspended"}
_PLAN_RANK = {"free": 0, "pro": 1, "team": 2}
_SUBSCRIPTION_EVENTS = frozenset(
    {"customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"}
)


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Check a ``t=<unix>,v1=<hex hmac-sha256>`` signature header.

    The signed content is ``"<t>." + payload``. Several ``v1`` entries may be
    present while a secret is being rotated; any match is accepted.
    """
    if not secret:
        raise InvalidWebhookSignature("Webhook secret is not configured.")
    if not header:
        raise InvalidWebhookSignature("Missing signature header.")

    timestamp: Optional[int] = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidWebhookSignature("Malformed signature timestamp.") from None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise InvalidWebhookSignature("Malformed signature header.")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise InvalidWebhookSignature("Signature timestamp outside the tolerance window.")

    signed = str(timestamp).encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidWebhookSignature("Signature mismatch.")


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), str(ts).encode("utf-8") + b"." + payload, hashlib.sha256)
    return f"t={ts},v1={digest.hexdigest()}"


def _epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_end(obj: dict[str, Any]) -> Optional[datetime]:
    if obj.get("current_period_end"):
        return _epoch(obj["current_period_end"])
    items = (obj.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return _epoch(items[0]["current_period_end"])
    return None


def _status(raw: Any) -> str:
    status = _STATUS_ALIASES.get(str(raw), str(raw))
    if status not in KNOWN_STATUSES:
        raise ValueError(f"unknown subscription status: {raw}")
    return status


def sync_profile_plan(session: Session, account_id: str) -> Optional[str]:
    """Derive the profile plan from its paid subscriptions; ``free`` when none."""
    profile = session.execute(
        select(Profile).where(Profile.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if profile is None:
        return None

    plan = "free"
    for sub in session.execute(select(Subscription).where(Subscription.account_id == account_id)).scalars():
        if sub.status in PAID_STATUSES and _PLAN_RANK[sub.plan_type] > _PLAN_RANK[plan]:
            plan = sub.plan_type

    if profile.plan != plan:
        logger.info(
            "Profile plan changed",
            extra={"event": "plan_synced", "account_id": account_id, "status": f"{profile.plan}->{plan}"},
        )
        profile.plan = plan
        profile.updated_at = utcnow()
    session.flush()
    return plan



def _existing(session: Session, external_subscription_id: str) -> Optional[Subscription]:
    return session.execute(
        select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
    ).scalar_one_or_none()


def _link_customer(session: Session, account_id: str, customer: Any) -> None:
    if isinstance(customer, dict):
        customer = customer.get("id")
    if not customer:
        return
    profile = session.get(Profile, account_id)
    if profile is not None and not profile.billing_customer_id:
        profile.billing_customer_id = str(customer)
        profile.updated_at = utcnow()


def _history_type(
    created: bool,
    previous_status: Optional[str],
    new_status: str,
    previous_plan: Optional[str],
    new_plan: str,
) -> Optional[str]:
    """Name the lifecycle change, or None when nothing worth recording happened."""
    if new_status == "canceled":
        return "trial_canceled" if previous_status == "trialing" else "canceled"
    if created:
        return "trial_started" if new_status == "trialing" else "created"
    if previous_plan != new_plan:
        return "upgraded" if _PLAN_RANK[new_plan] > _PLAN_RANK[previous_plan or "free"] else "downgraded"
    if previous_status == new_status:
        return None
    if previous_status == "trialing" and new_status == "active":
        return "trial_converted"
    if new_status == "suspended":
        return "suspended"
    if previous_status == "suspended" and new_status in PAID_STATUSES:
        return "resumed"
    if new_status in ("past_due", "unpaid"):
        return "payment_failed"
    if previous_status in ("past_due", "unpaid", "incomplete") and new_status == "active":
        return "payment_succeeded"
    return None


def _record_history(
    session: Session,
    subscription: Subscription,
    event_type: str,
    previous_status: Optional[str],
    previous_plan: Optional[str],
    metadata: dict[str, Any],
) -> None:
    session.add(
        SubscriptionEvent(
            subscription_id=subscription.id,
            account_id=subscription.account_id,
            event_type=event_type,
            previous_plan=previous_plan,
            new_plan=subscription.plan_type,
            previous_status=previous_status,
            new_status=subscription.status,
            event_metadata=metadata,
        )
    )


def _upsert_subscription(session: Session, obj: dict[str, Any], deleted: bool) -> Optional[str]:
    sub_id = obj.get("id")
    if not sub_id:
        raise ValueError("subscription object has no id")

    subscription = _existing(session, sub_id)
    metadata = obj.get("metadata") or {}
    created = subscription is None

    if subscription is None:
        account_id = metadata.get("account_id")
        plan_type = metadata.get("plan_type")
        if not account_id or plan_type not in ("pro", "team"):
            raise ValueError("subscription metadata needs account_id and plan_type")
        if session.get(Profile, account_id) is None:
            # Late delivery for a purged account.
            logger.warning(
                "Subscription event for unknown account ignored",
                extra={"event": "billing_unknown_account", "account_id": account_id, "external_id": sub_id},
            )
            return None
        subscription = Subscription(
            account_id=account_id,
            external_subscription_id=sub_id,
            plan_type=plan_type,
            status="incomplete",
        )
        session.add(subscription)
        session.flush()

    if subscription.status == "canceled" and not deleted:
        # Cancellation is terminal; a late "updated" must not revive it.
        logger.info(
            "Stale update for canceled subscription ignored",
            extra={"event": "billing_stale_update", "external_id": sub_id},
        )
        return subscription.account_id

    previous_status = None if created else subscription.status
    previous_plan = None if created else subscription.plan_type

    if deleted:
        subscription.status = "canceled"
        subscription.canceled_at = _epoch(obj.get("canceled_at")) or utcnow()
    else:
        subscription.status = _status(obj.get("status", subscription.status))
        subscription.canceled_at = _epoch(obj.get("canceled_at"))
        if metadata.get("plan_type") in ("pro", "team"):
            subscription.plan_type = metadata["plan_type"]
    period_end = _period_end(obj)
    if period_end is not None:
        subscription.current_period_end = period_end
    subscription.updated_at = utcnow()

    _link_customer(session, subscription.account_id, obj.get("customer"))

    history = _history_type(created, previous_status, subscription.status, previous_plan, subscription.plan_type)
    if history is not None:
        _record_history(
            session,
            subscription,
            history,
            previous_status,
            previous_plan,
            {"external_subscription_id": sub_id, "billing_cycle": metadata.get("billing_cycle")},
        )

    session.flush()
    return subscription.account_id


def _apply_checkout_completed(session: Session, obj: dict[str, Any]) -> bool:
    """Link the billing customer to the account; the plan follows the subscription events."""
    if obj.get("mode") != "subscription":
        return False

    account_id = (obj.get("metadata") or {}).get("account_id") or obj.get("client_reference_id")
    if not account_id:
        raise ValueError("checkout session has no account reference")

    profile = session.execute(
        select(Profile).where(Profile.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if profile is None:
        logger.warning(
            "Checkout for unknown account ignored",
            extra={"event": "billing_unknown_account", "account_id": account_id, "external_id": obj.get("id")},
        )
        return True

    _link_customer(session, account_id, obj.get("customer"))
    session.flush()
    logger.info(
        "Checkout completed",
        extra={"event": "checkout_completed", "account_id": account_id, "external_id": obj.get("id")},
    )
    return True


def apply_billing_event(session: Session, event: dict[str, Any]) -> bool:
    """Apply a billing lifecycle event inside ``session``; False for ignored types."""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        if _apply_checkout_completed(session, obj):
            return True
    elif event_type in _SUBSCRIPTION_EVENTS:
        account_id = _upsert_subscription(session, obj, deleted=event_type == "customer.subscription.deleted")
        if account_id is not None:
            sync_profile_plan(session, account_id)
        return True

    logger.info(
        "Billing event type not handled",
        extra={"event": "billing_event_ignored", "reason": event_type, "external_id": event.get("id")},
    )
    return False
