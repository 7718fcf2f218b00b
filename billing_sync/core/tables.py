from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .aws import dynamodb_resource
from .settings import S, Settings


@dataclass(frozen=True)
class Tables:
    subscriptions: Any
    promotions: Any
    stripe_objects: Any
    webhook_events: Any
    subscriptions_user_index: str = "user_id-index"


def build_tables(settings: Settings = S, ddb: Optional[Any] = None) -> Tables:
    ddb = ddb or dynamodb_resource(settings)
    return Tables(
        subscriptions=ddb.Table(settings.subscriptions_table_name),
        promotions=ddb.Table(settings.promotions_table_name),
        stripe_objects=ddb.Table(settings.stripe_objects_table_name),
        webhook_events=ddb.Table(settings.webhook_events_table_name),
        subscriptions_user_index=settings.subscriptions_user_index,
    )
