from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from billing_sync.core.errors import MalformedEvent
from billing_sync.models import (
    CheckoutSessionData,
    Envelope,
    EventCategory,
    EventData,
    MirrorObject,
    SubscriptionData,
)
from billing_sync.services.signature import verify_signature

# Most specific first: "customer.subscription." must win over "customer."
_PREFIXES: Tuple[Tuple[str, EventCategory], ...] = (
    ("customer.subscription.", EventCategory.SUBSCRIPTION),
    ("customer.", EventCategory.CUSTOMER),
    ("product.", EventCategory.PRODUCT),
    ("price.", EventCategory.PRICE),
    ("invoice.", EventCategory.INVOICE),
    ("charge.", EventCategory.CHARGE),
)


def classify_event_type(event_type: Optional[str]) -> EventCategory:
    t = (event_type or "").strip().lower()
    if t == "checkout.session.completed":
        return EventCategory.CHECKOUT_COMPLETED
    for prefix, category in _PREFIXES:
        if t.startswith(prefix):
            return category
    return EventCategory.IGNORED


def _parse_data(category: EventCategory, obj: Dict[str, Any]) -> EventData:
    if category == EventCategory.SUBSCRIPTION:
        return SubscriptionData.model_validate(obj)
    if category == EventCategory.CHECKOUT_COMPLETED:
        return CheckoutSessionData.model_validate(obj)
    if category == EventCategory.IGNORED:
        return None
    return MirrorObject.model_validate(obj)


def parse_envelope(payload: bytes) -> Envelope:
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(raw, dict):
        raise MalformedEvent("Event payload must be a JSON object")

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent("Event is missing an id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Event is missing a type", context={"event_id": event_id})

    category = classify_event_type(event_type)
    data = raw.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    # ignored events are acknowledged whatever their body looks like
    if not isinstance(obj, dict) and category != EventCategory.IGNORED:
        raise MalformedEvent("Event is missing data.object", context={"event_id": event_id, "event_type": event_type})

    try:
        parsed = _parse_data(category, obj or {})
        created = raw.get("created")
        return Envelope(
            id=event_id,
            type=event_type,
            created=int(created) if isinstance(created, (int, float)) else None,
            livemode=bool(raw.get("livemode", False)),
            category=category,
            data=parsed,
        )
    except ValidationError as exc:
        raise MalformedEvent(
            f"Invalid {category.value} payload: {exc.error_count()} validation error(s)",
            context={"event_id": event_id, "event_type": event_type},
        ) from exc


def verify_and_parse(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    *,
    tolerance: Optional[int] = None,
) -> Envelope:
    verify_signature(payload, sig_header, secret, tolerance=tolerance)
    return parse_envelope(payload)
