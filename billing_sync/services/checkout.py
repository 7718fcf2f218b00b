from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from billing_sync.core.errors import UnattributableEvent, WebhookError
from billing_sync.core.time import now_iso
from billing_sync.models import CheckoutSessionData, SubscriptionData
from billing_sync.services.audit import log_warning, log_webhook_event
from billing_sync.services.reconciler import reconcile_checkout_subscription

DEFAULT_PACKAGE_TIER = "silver"
DEFAULT_GENRE = "other"


@dataclass(frozen=True)
class CheckoutResult:
    mode: str
    action: str
    user_id: Optional[str] = None
    record_id: Optional[str] = None


def cents_to_major(amount: Any) -> Decimal:
    try:
        cents = int(amount or 0)
    except (TypeError, ValueError):
        cents = 0
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _package_tier(metadata: Mapping[str, Any]) -> Optional[str]:
    value = metadata.get("packageId") or metadata.get("package_id")
    return str(value).lower() if value else None


def promotion_id_for_session(session_id: str) -> str:
    # Stable per checkout session so a redelivered event finds its own row.
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"stripe-checkout-session:{session_id}"))


def _require_user(session: CheckoutSessionData) -> str:
    user_id = session.user_id
    if not user_id:
        raise UnattributableEvent(
            "No user id in checkout session metadata",
            context={"checkout_session_id": session.id},
        )
    return user_id


def _handle_subscription_checkout(
    session: CheckoutSessionData,
    *,
    store: Any,
    stripe_api: Any,
    tier_map: Optional[Mapping[str, str]],
    now: str,
) -> CheckoutResult:
    user_id = _require_user(session)

    # The checkout event has no period bounds; the subscription object does.
    raw = stripe_api.retrieve_subscription(session.subscription)
    try:
        snapshot = SubscriptionData.model_validate(raw)
    except ValidationError as exc:
        raise WebhookError(
            f"Unexpected subscription shape from Stripe for {session.subscription}",
            context={"user_id": user_id},
        ) from exc
    if not snapshot.customer and session.customer:
        snapshot = snapshot.model_copy(update={"customer": session.customer})

    result = reconcile_checkout_subscription(store, snapshot, user_id=user_id, tier_map=tier_map, now=now)
    return CheckoutResult(mode="subscription", action=result.action, user_id=user_id, record_id=result.record_id)


def _new_promotion(promotion_id: str, user_id: str, session: CheckoutSessionData, now: str) -> Dict[str, Any]:
    md = session.metadata
    return {
        "id": promotion_id,
        "user_id": user_id,
        "track_name": md.get("trackName"),
        "track_artist": md.get("trackArtist"),
        "spotify_track_id": md.get("spotifyTrackId"),
        "spotify_artist_id": md.get("spotifyArtistId"),
        "submission_count": _int(md.get("submissionCount")),
        "estimated_additions": _int(md.get("estimatedAdditions")),
        "genre": md.get("genre") or DEFAULT_GENRE,
        "package_tier": _package_tier(md) or DEFAULT_PACKAGE_TIER,
        "total_cost": cents_to_major(session.amount_total),
        "currency": (session.currency or "usd").lower(),
        "status": "active",
        "start_date": now,
        "stripe_checkout_session_id": session.id,
        "created_at": now,
        "updated_at": now,
    }


def _handle_promotion_checkout(session: CheckoutSessionData, *, store: Any, now: str) -> CheckoutResult:
    if session.payment_status != "paid":
        log_webhook_event(
            "promotion_checkout_not_paid",
            "skipped",
            checkout_session_id=session.id,
            payment_status=session.payment_status,
        )
        return CheckoutResult(mode="promotion", action="not_paid")

    user_id = _require_user(session)
    supplied_id = session.promotion_id
    promotion_id = supplied_id or promotion_id_for_session(session.id)

    existing = store.get_promotion(promotion_id)
    if existing is None:
        store.insert_promotion(_new_promotion(promotion_id, user_id, session, now))
        action = "recovered" if supplied_id else "created"
        log_webhook_event(f"promotion_{action}", user_id=user_id, promotion_id=promotion_id, checkout_session_id=session.id)
        return CheckoutResult(mode="promotion", action=action, user_id=user_id, record_id=promotion_id)

    owner = existing.get("user_id")
    if owner and owner != user_id:
        log_warning(
            "promotion_owner_mismatch",
            user_id=user_id,
            owner_user_id=owner,
            promotion_id=promotion_id,
            checkout_session_id=session.id,
        )
        return CheckoutResult(mode="promotion", action="owner_mismatch", user_id=user_id, record_id=promotion_id)

    if not supplied_id:
        # Redelivery of a checkout that already created its promotion.
        return CheckoutResult(mode="promotion", action="duplicate", user_id=user_id, record_id=promotion_id)

    fields: Dict[str, Any] = {"status": "active", "updated_at": now}
    if not (existing.get("status") == "active" and existing.get("start_date")):
        fields["start_date"] = now
    tier = _package_tier(session.metadata)
    if not existing.get("package_tier") and tier:
        fields["package_tier"] = tier
    store.update_promotion(promotion_id, fields)
    log_webhook_event("promotion_activated", user_id=user_id, promotion_id=promotion_id, checkout_session_id=session.id)
    return CheckoutResult(mode="promotion", action="activated", user_id=user_id, record_id=promotion_id)


def handle_checkout_completed(
    session: CheckoutSessionData,
    *,
    store: Any,
    stripe_api: Any,
    tier_map: Optional[Mapping[str, str]] = None,
    now: Optional[str] = None,
) -> CheckoutResult:
    now = now or now_iso()
    if session.mode == "subscription" and session.subscription:
        return _handle_subscription_checkout(session, store=store, stripe_api=stripe_api, tier_map=tier_map, now=now)
    if session.metadata.get("type") == "promotion":
        return _handle_promotion_checkout(session, store=store, now=now)

    log_webhook_event("checkout_completed_ignored", "skipped", checkout_session_id=session.id, mode=session.mode)
    return CheckoutResult(mode=session.mode or "unknown", action="ignored")
