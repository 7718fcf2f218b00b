from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from billing_sync.core.errors import PersistenceFailure
from billing_sync.core.settings import S
from billing_sync.core.tables import Tables
from billing_sync.core.time import now_ts

EVENT_PK = "STRIPE_EVENT"


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "unknown")


def _set_expression(fields: Dict[str, Any]) -> tuple[str, Dict[str, str], Dict[str, Any]]:
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    sets: List[str] = []
    for i, (key, value) in enumerate(fields.items(), start=1):
        nk = f"#f{i}"
        vk = f":v{i}"
        names[nk] = key
        values[vk] = value
        sets.append(f"{nk} = {vk}")
    return "SET " + ", ".join(sets), names, values


class DynamoBillingStore:
    """Row-level access to the billing tables.

    Every boto3 failure surfaces as ``PersistenceFailure`` so the webhook
    answers 500 and Stripe redelivers the event.
    """

    def __init__(
        self,
        tables: Tables,
        *,
        event_ttl_seconds: int = 7 * 24 * 3600,
        ttl_attr: str = S.ddb_ttl_attr,
    ) -> None:
        self.tables = tables
        self.event_ttl_seconds = event_ttl_seconds
        self.ttl_attr = ttl_attr

    def _call(self, op: str, fn: Callable[..., Dict[str, Any]], **kwargs: Any) -> Dict[str, Any]:
        try:
            return fn(**kwargs) or {}
        except ClientError as exc:
            raise PersistenceFailure(
                f"DynamoDB {op} failed: {_error_message(exc)}",
                context={"operation": op, "code": _error_code(exc)},
            ) from exc

    # subscriptions

    def _query_user_subscriptions(
        self,
        user_id: str,
        *,
        filter_expression: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        names: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {
            "IndexName": self.tables.subscriptions_user_index,
            "KeyConditionExpression": "user_id = :u",
            "ExpressionAttributeValues": {":u": user_id, **(values or {})},
            "ScanIndexForward": False,
        }
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if names:
            kwargs["ExpressionAttributeNames"] = names

        items: List[Dict[str, Any]] = []
        while True:
            resp = self._call("query", self.tables.subscriptions.query, **kwargs)
            items.extend(resp.get("Items", []))
            last = resp.get("LastEvaluatedKey")
            if not last:
                break
            kwargs["ExclusiveStartKey"] = last
        items.sort(key=lambda it: str(it.get("created_at") or ""), reverse=True)
        return items

    def list_subscriptions(self, user_id: str) -> List[Dict[str, Any]]:
        return self._query_user_subscriptions(user_id)

    def find_subscription(self, user_id: str, status: str) -> Optional[Dict[str, Any]]:
        """Most recently created row for ``user_id`` with the given status."""
        items = self._query_user_subscriptions(
            user_id,
            filter_expression="#st = :st",
            values={":st": status},
            names={"#st": "status"},
        )
        return items[0] if items else None

    def find_subscription_by_stripe_id(self, user_id: str, stripe_subscription_id: str) -> Optional[Dict[str, Any]]:
        items = self._query_user_subscriptions(
            user_id,
            filter_expression="stripe_subscription_id = :sid",
            values={":sid": stripe_subscription_id},
        )
        return items[0] if items else None

    def get_subscription(self, record_id: str) -> Optional[Dict[str, Any]]:
        resp = self._call("get_item", self.tables.subscriptions.get_item, Key={"id": record_id})
        return resp.get("Item")

    def insert_subscription(self, item: Dict[str, Any]) -> None:
        self._call(
            "put_item",
            self.tables.subscriptions.put_item,
            Item=item,
            ConditionExpression="attribute_not_exists(id)",
        )

    def update_subscription(self, record_id: str, fields: Dict[str, Any]) -> None:
        expr, names, values = _set_expression(fields)
        self._call(
            "update_item",
            self.tables.subscriptions.update_item,
            Key={"id": record_id},
            UpdateExpression=expr,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ConditionExpression="attribute_exists(id)",
        )

    # promotions

    def get_promotion(self, promotion_id: str) -> Optional[Dict[str, Any]]:
        resp = self._call("get_item", self.tables.promotions.get_item, Key={"id": promotion_id})
        return resp.get("Item")

    def insert_promotion(self, item: Dict[str, Any]) -> None:
        self._call(
            "put_item",
            self.tables.promotions.put_item,
            Item=item,
            ConditionExpression="attribute_not_exists(id)",
        )

    def update_promotion(self, promotion_id: str, fields: Dict[str, Any]) -> None:
        expr, names, values = _set_expression(fields)
        self._call(
            "update_item",
            self.tables.promotions.update_item,
            Key={"id": promotion_id},
            UpdateExpression=expr,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ConditionExpression="attribute_exists(id)",
        )

    # stripe object mirror

    def get_mirror(self, kind: str, object_id: str) -> Optional[Dict[str, Any]]:
        resp = self._call("get_item", self.tables.stripe_objects.get_item, Key={"pk": kind, "sk": object_id})
        return resp.get("Item")

    def put_mirror(self, kind: str, object_id: str, item: Dict[str, Any]) -> None:
        self._call("put_item", self.tables.stripe_objects.put_item, Item={**item, "pk": kind, "sk": object_id})

    def delete_mirror(self, kind: str, object_id: str) -> None:
        self._call("delete_item", self.tables.stripe_objects.delete_item, Key={"pk": kind, "sk": object_id})

    # processed events

    def is_event_processed(self, event_id: str) -> bool:
        resp = self._call("get_item", self.tables.webhook_events.get_item, Key={"pk": EVENT_PK, "sk": event_id})
        return bool(resp.get("Item"))

    def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        ts = now_ts()
        # expired markers are reaped by the table TTL
        item = {"pk": EVENT_PK, "sk": event_id, "type": event_type, "ts": ts, self.ttl_attr: ts + self.event_ttl_seconds}
        try:
            self.tables.webhook_events.put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
            return True
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise PersistenceFailure(
                f"DynamoDB put_item failed: {_error_message(exc)}",
                context={"operation": "put_item", "code": _error_code(exc)},
            ) from exc
