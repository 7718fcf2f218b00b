from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from billing_sync.core.errors import MalformedEvent, PersistenceFailure, UnattributableEvent
from billing_sync.metrics import record_reconcile_action, record_webhook_event
from billing_sync.models import (
    MIRROR_CATEGORIES,
    CheckoutSessionData,
    Envelope,
    EventCategory,
    MirrorObject,
    SubscriptionData,
)
from billing_sync.services.audit import log_error, log_warning, log_webhook_event
from billing_sync.services.checkout import handle_checkout_completed
from billing_sync.services.envelope import classify_event_type
from billing_sync.services.mirror import apply_mirror_event
from billing_sync.services.reconciler import reconcile_subscription

__all__ = ["DispatchResult", "WebhookDeps", "classify_event_type", "dispatch"]

T = TypeVar("T")


@dataclass(frozen=True)
class WebhookDeps:
    """Clients built once at startup and handed to every request."""

    store: Any
    stripe_api: Any
    webhook_secret: str = ""
    tier_map: Mapping[str, str] = field(default_factory=dict)
    signature_tolerance: Optional[int] = None


@dataclass(frozen=True)
class DispatchResult:
    category: EventCategory
    outcome: str
    action: Optional[str] = None
    user_id: Optional[str] = None


def _payload(envelope: Envelope, expected: Type[T]) -> T:
    data = envelope.data
    if not isinstance(data, expected):
        raise MalformedEvent(
            f"Expected {expected.__name__} for {envelope.type}",
            context={"event_id": envelope.id, "event_type": envelope.type},
        )
    return data


def _finish(envelope: Envelope, result: DispatchResult) -> DispatchResult:
    record_webhook_event(result.category.value, result.outcome)
    log_webhook_event(
        "event_dispatched",
        event_id=envelope.id,
        event_type=envelope.type,
        category=result.category.value,
        outcome=result.outcome,
        action=result.action,
        user_id=result.user_id,
    )
    return result


def _dispatch_mirror(envelope: Envelope, deps: WebhookDeps, now: Optional[str]) -> DispatchResult:
    obj = _payload(envelope, MirrorObject)
    try:
        action = apply_mirror_event(envelope.category, envelope.type, obj, store=deps.store, now=now)
    except PersistenceFailure as exc:
        # Mirror rows are advisory copies; a failed write is logged, not retried.
        log_error(
            "mirror_write_failed",
            exc,
            event_id=envelope.id,
            event_type=envelope.type,
            object_id=obj.id,
            **exc.context,
        )
        return DispatchResult(envelope.category, "mirror_failed")
    outcome = "ignored" if action == "skipped" else "processed"
    return DispatchResult(envelope.category, outcome, action=action)


def dispatch(envelope: Envelope, deps: WebhookDeps, *, now: Optional[str] = None) -> DispatchResult:
    """Route one parsed envelope to its category handler.

    Reconciler and checkout failures propagate so the caller can answer 500
    and Stripe redelivers. Unattributable events are logged and acknowledged.
    """
    category = envelope.category
    ctx: Dict[str, Any] = {"event_id": envelope.id, "event_type": envelope.type}

    try:
        if category == EventCategory.CHECKOUT_COMPLETED:
            session = _payload(envelope, CheckoutSessionData)
            res = handle_checkout_completed(
                session,
                store=deps.store,
                stripe_api=deps.stripe_api,
                tier_map=deps.tier_map,
                now=now,
            )
            if res.mode == "subscription":
                record_reconcile_action(res.action)
            outcome = "processed" if res.record_id else "ignored"
            return _finish(envelope, DispatchResult(category, outcome, action=res.action, user_id=res.user_id))

        if category == EventCategory.SUBSCRIPTION:
            snapshot = _payload(envelope, SubscriptionData)
            res = reconcile_subscription(deps.store, snapshot, tier_map=deps.tier_map, now=now)
            record_reconcile_action(res.action)
            return _finish(envelope, DispatchResult(category, "processed", action=res.action, user_id=res.user_id))

        if category in MIRROR_CATEGORIES:
            return _finish(envelope, _dispatch_mirror(envelope, deps, now))

        if category == EventCategory.IGNORED:
            return _finish(envelope, DispatchResult(category, "ignored"))

    except UnattributableEvent as exc:
        log_warning("unattributable_event", reason=exc.message, **ctx, **exc.context)
        return _finish(envelope, DispatchResult(category, "skipped"))

    raise ValueError(f"No handler for event category {category!r}")
