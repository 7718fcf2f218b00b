from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from billing_sync.core.time import iso_from_epoch, now_iso
from billing_sync.models import EventCategory, MirrorObject

# category -> (stripe object kind, projected columns)
MIRROR_KINDS: Dict[EventCategory, Tuple[str, Tuple[str, ...]]] = {
    EventCategory.CUSTOMER: ("customer", ("email", "name", "description", "created")),
    EventCategory.PRODUCT: ("product", ("name", "active", "description", "created")),
    EventCategory.PRICE: ("price", ("product", "currency", "unit_amount", "type", "active", "created")),
    EventCategory.INVOICE: (
        "invoice",
        ("customer", "subscription", "currency", "total", "status", "period_start", "period_end"),
    ),
    EventCategory.CHARGE: (
        "charge",
        ("customer", "amount", "currency", "status", "invoice", "payment_intent", "description", "created"),
    ),
}

_TIMESTAMP_COLUMNS = ("created", "period_start", "period_end")


def _ddb_safe(value: Any) -> Any:
    # DynamoDB rejects floats; round-trip through JSON into Decimals.
    return json.loads(json.dumps(value, default=str), parse_float=Decimal)


def _column(obj: Dict[str, Any], column: str) -> Any:
    value = obj.get(column)
    if isinstance(value, dict):
        value = value.get("id")
    if column in _TIMESTAMP_COLUMNS:
        return iso_from_epoch(value)
    return value


def project(category: EventCategory, obj: MirrorObject, now: str) -> Dict[str, Any]:
    _, columns = MIRROR_KINDS[category]
    raw = obj.raw
    row = {column: _column(raw, column) for column in columns}
    row["id"] = obj.id
    row["attrs"] = raw
    row["updated_at"] = now
    return _ddb_safe(row)


def apply_mirror_event(
    category: EventCategory,
    event_type: str,
    obj: MirrorObject,
    *,
    store: Any,
    now: Optional[str] = None,
) -> str:
    """Upsert or delete the mirror row for ``obj``; returns what was done.

    Nested objects under a mirrored prefix (``charge.dispute.*``,
    ``customer.discount.*``, ...) carry a different ``object`` and are skipped.
    """
    kind, _ = MIRROR_KINDS[category]
    if obj.object != kind:
        return "skipped"
    if event_type.lower().endswith(".deleted"):
        store.delete_mirror(kind, obj.id)
        return "deleted"
    store.put_mirror(kind, obj.id, project(category, obj, now or now_iso()))
    return "upserted"
