"""Subscription state machine.

A user's rows move between three states: nonexistent, active and inactive.
Every ``customer.subscription.*`` snapshot runs the same ordered decision:

1. an active row exists      -> overwrite it in place
2. else an inactive row      -> reactivate the most recent one
3. else                      -> insert a new row

The ordering keeps at most one active row per user; never insert before
both lookups came back empty. A request that loses an insert race fails
with PersistenceFailure and takes the update path on redelivery. Rows are never deleted, a cancelled
subscription just becomes ``inactive``.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from billing_sync.core.errors import UnattributableEvent
from billing_sync.core.time import iso_from_epoch, now_iso
from billing_sync.models import SubscriptionData
from billing_sync.services.audit import log_warning, log_webhook_event
from billing_sync.services.billing_period import map_billing_period, map_local_status, tier_for_price

ACTION_UPDATED = "updated"
ACTION_REACTIVATED = "reactivated"
ACTION_INSERTED = "inserted"
ACTION_RESUMED = "resumed"
ACTION_STALE = "stale"


@dataclass(frozen=True)
class ReconcileResult:
    action: str
    user_id: str
    record_id: Optional[str]
    status: str
    billing_period: str


def new_record_id(user_id: str, stripe_subscription_id: str) -> str:
    # One id per (user, subscription): a concurrent duplicate insert fails its condition.
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"stripe-subscription:{user_id}:{stripe_subscription_id}"))


def resolve_user_id(snapshot: SubscriptionData, override: Optional[str] = None) -> str:
    user_id = override or snapshot.user_id
    if not user_id:
        raise UnattributableEvent(
            "No user_id in subscription metadata",
            context={"stripe_subscription_id": snapshot.id, "stripe_customer_id": snapshot.customer},
        )
    return user_id


def subscription_fields(
    snapshot: SubscriptionData,
    *,
    now: str,
    tier_map: Optional[Mapping[str, str]] = None,
    for_insert: bool = False,
) -> Dict[str, Any]:
    """Fields every branch overwrites.

    ``last_payment_date`` only moves forward on active snapshots; an inactive
    snapshot leaves the stored value alone.
    """
    status = map_local_status(snapshot.status)
    fields: Dict[str, Any] = {
        "tier": tier_for_price(snapshot.price_id, tier_map),
        "billing_period": map_billing_period(snapshot.interval),
        "stripe_subscription_id": snapshot.id,
        "stripe_customer_id": snapshot.customer,
        "current_period_start": iso_from_epoch(snapshot.period_start, now),
        "current_period_end": iso_from_epoch(snapshot.period_end, now),
        "status": status,
        "cancel_at_period_end": bool(snapshot.cancel_at_period_end),
        "updated_at": now,
        "payment_status": "paid" if status == "active" else (snapshot.status or "unknown"),
    }
    if status == "active":
        fields["last_payment_date"] = now
    elif for_insert:
        fields["last_payment_date"] = None
    return fields


def _result(action: str, user_id: str, record_id: Optional[str], fields: Dict[str, Any]) -> ReconcileResult:
    return ReconcileResult(
        action=action,
        user_id=user_id,
        record_id=record_id,
        status=fields["status"],
        billing_period=fields["billing_period"],
    )


def _log(action: str, user_id: str, record_id: Optional[str], snapshot: SubscriptionData, fields: Dict[str, Any]) -> None:
    log_webhook_event(
        f"subscription_{action}",
        user_id=user_id,
        record_id=record_id,
        stripe_subscription_id=snapshot.id,
        stripe_customer_id=snapshot.customer,
        local_status=fields["status"],
        billing_period=fields["billing_period"],
    )


def _absorb_stale(store: Any, user_id: str, snapshot: SubscriptionData, fields: Dict[str, Any]) -> ReconcileResult:
    # An inactive snapshot for a subscription other than the one the user is
    # currently entitled by. Refresh its own history row, leave the active one.
    row = store.find_subscription_by_stripe_id(user_id, snapshot.id)
    record_id = None
    if row and row.get("status") != "active":
        record_id = row["id"]
        store.update_subscription(record_id, fields)
    log_warning(
        "subscription_snapshot_superseded",
        user_id=user_id,
        record_id=record_id,
        stripe_subscription_id=snapshot.id,
        stripe_status=snapshot.status,
    )
    return _result(ACTION_STALE, user_id, record_id, fields)


def reconcile_subscription(
    store: Any,
    snapshot: SubscriptionData,
    *,
    user_id: Optional[str] = None,
    tier_map: Optional[Mapping[str, str]] = None,
    now: Optional[str] = None,
) -> ReconcileResult:
    uid = resolve_user_id(snapshot, user_id)
    now = now or now_iso()
    fields = subscription_fields(snapshot, now=now, tier_map=tier_map)

    active = store.find_subscription(uid, "active")
    if active:
        current_sid = active.get("stripe_subscription_id")
        if fields["status"] != "active" and current_sid and current_sid != snapshot.id:
            return _absorb_stale(store, uid, snapshot, fields)
        store.update_subscription(active["id"], fields)
        _log(ACTION_UPDATED, uid, active["id"], snapshot, fields)
        return _result(ACTION_UPDATED, uid, active["id"], fields)

    inactive = store.find_subscription(uid, "inactive")
    if inactive:
        store.update_subscription(inactive["id"], fields)
        _log(ACTION_REACTIVATED, uid, inactive["id"], snapshot, fields)
        return _result(ACTION_REACTIVATED, uid, inactive["id"], fields)

    record_id = new_record_id(uid, snapshot.id)
    item = {
        **subscription_fields(snapshot, now=now, tier_map=tier_map, for_insert=True),
        "id": record_id,
        "user_id": uid,
        "is_early_adopter": False,
        "is_lifetime": False,
        "created_at": now,
    }
    store.insert_subscription(item)
    _log(ACTION_INSERTED, uid, record_id, snapshot, fields)
    return _result(ACTION_INSERTED, uid, record_id, fields)


def reconcile_checkout_subscription(
    store: Any,
    snapshot: SubscriptionData,
    *,
    user_id: str,
    tier_map: Optional[Mapping[str, str]] = None,
    now: Optional[str] = None,
) -> ReconcileResult:
    """Checkout-completed variant, keyed by (user_id, stripe_subscription_id).

    A known pair means a resumed or duplicate notification: that row is
    refreshed unless doing so would leave the user with two active rows, in
    which case the shared decision tree takes over.
    """
    now = now or now_iso()
    existing = store.find_subscription_by_stripe_id(user_id, snapshot.id)
    if existing:
        fields = subscription_fields(snapshot, now=now, tier_map=tier_map)
        safe = (
            existing.get("status") == "active"
            or fields["status"] != "active"
            or store.find_subscription(user_id, "active") is None
        )
        if safe:
            store.update_subscription(existing["id"], fields)
            _log(ACTION_RESUMED, user_id, existing["id"], snapshot, fields)
            return _result(ACTION_RESUMED, user_id, existing["id"], fields)
    return reconcile_subscription(store, snapshot, user_id=user_id, tier_map=tier_map, now=now)
