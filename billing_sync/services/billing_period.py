from __future__ import annotations

from typing import Any, Mapping, Optional

ACTIVE_STRIPE_STATUSES = ("active", "trialing")
DEFAULT_TIER = "pro"


def map_billing_period(interval: Any) -> str:
    # anything other than exactly "year" is monthly
    if interval == "year":
        return "annual"
    return "monthly"


def map_local_status(stripe_status: Any) -> str:
    if stripe_status in ACTIVE_STRIPE_STATUSES:
        return "active"
    return "inactive"


def tier_for_price(price_id: Optional[str], tier_map: Optional[Mapping[str, str]] = None) -> str:
    if price_id and tier_map:
        return tier_map.get(price_id, DEFAULT_TIER)
    return DEFAULT_TIER
