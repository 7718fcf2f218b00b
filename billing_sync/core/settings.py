from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict


def parse_tier_map(raw: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for chunk in (raw or "").split(","):
        if ":" not in chunk:
            continue
        price_id, tier = chunk.split(":", 1)
        price_id = price_id.strip()
        tier = tier.strip().lower()
        if price_id and tier in ("free", "pro"):
            out[price_id] = tier
    return out


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # DynamoDB tables
    subscriptions_table_name: str = os.environ.get("SUBSCRIPTIONS_TABLE_NAME", "subscriptions")
    subscriptions_user_index: str = os.environ.get("SUBSCRIPTIONS_USER_INDEX", "user_id-index")
    promotions_table_name: str = os.environ.get("PROMOTIONS_TABLE_NAME", "promotions")
    stripe_objects_table_name: str = os.environ.get("STRIPE_OBJECTS_TABLE_NAME", "stripe_objects")
    webhook_events_table_name: str = os.environ.get("WEBHOOK_EVENTS_TABLE_NAME", "webhook_events")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    webhook_event_ttl_seconds: int = int(os.environ.get("WEBHOOK_EVENT_TTL_SECONDS", str(7 * 24 * 3600)))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    # "price_123:pro,price_456:free"; unmapped prices are pro
    stripe_price_tier_map: str = os.environ.get("STRIPE_PRICE_TIER_MAP", "")

    # Operator endpoints
    admin_api_token: str = os.environ.get("ADMIN_API_TOKEN", "")

    audit_log_enabled: bool = os.environ.get("AUDIT_LOG_ENABLED", "1") not in ("0", "false", "False")
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")

    @property
    def price_tiers(self) -> Dict[str, str]:
        return parse_tier_map(self.stripe_price_tier_map)


S = Settings()
