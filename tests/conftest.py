from __future__ import annotations

import asyncio
import copy
import hashlib
import hmac
import json
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest
from botocore.exceptions import ClientError
from starlette.requests import Request

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing_sync.core.tables import Tables
from billing_sync.services.dispatcher import WebhookDeps
from billing_sync.services.store import DynamoBillingStore

WEBHOOK_SECRET = "whsec_test_secret"
NOW = "2024-05-01T12:00:00+00:00"
LATER = "2024-06-01T12:00:00+00:00"


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} on {op}"}}, op)


class FakeTable:
    """Enough of the boto3 Table surface for the billing store."""

    def __init__(self, key_names: Tuple[str, ...], page_size: Optional[int] = None) -> None:
        self.key_names = key_names
        self.page_size = page_size
        self.items: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self.fail_on: Set[str] = set()
        self.writes: List[str] = []

    def _key(self, mapping: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(mapping[k] for k in self.key_names)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise _client_error("InternalServerError", op)

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail("get_item")
        item = self.items.get(self._key(Key))
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Optional[str] = None, **_: Any) -> Dict[str, Any]:
        self._maybe_fail("put_item")
        key = self._key(Item)
        if ConditionExpression and ConditionExpression.startswith("attribute_not_exists") and key in self.items:
            raise _client_error("ConditionalCheckFailedException", "put_item")
        self.items[key] = copy.deepcopy(Item)
        self.writes.append("put_item")
        return {}

    def delete_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail("delete_item")
        self.items.pop(self._key(Key), None)
        self.writes.append("delete_item")
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ConditionExpression: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("update_item")
        key = self._key(Key)
        if ConditionExpression and ConditionExpression.startswith("attribute_exists") and key not in self.items:
            raise _client_error("ConditionalCheckFailedException", "update_item")
        item = self.items.setdefault(key, dict(Key))
        names = ExpressionAttributeNames or {}
        for part in UpdateExpression.replace("SET", "", 1).split(","):
            lhs, rhs = [chunk.strip() for chunk in part.split("=", 1)]
            item[names.get(lhs, lhs)] = copy.deepcopy(ExpressionAttributeValues[rhs])
        self.writes.append("update_item")
        return {}

    def query(
        self,
        *,
        KeyConditionExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        FilterExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ScanIndexForward: bool = True,
        ExclusiveStartKey: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("query")
        names = ExpressionAttributeNames or {}
        attr, ref = [chunk.strip() for chunk in KeyConditionExpression.split("=", 1)]
        matches = [it for it in self.items.values() if it.get(attr) == ExpressionAttributeValues[ref]]
        matches.sort(key=lambda it: str(it.get("created_at") or ""), reverse=not ScanIndexForward)
        if FilterExpression:
            fattr, fref = [chunk.strip() for chunk in FilterExpression.split("=", 1)]
            fattr = names.get(fattr, fattr)
            matches = [it for it in matches if it.get(fattr) == ExpressionAttributeValues[fref]]

        start = int((ExclusiveStartKey or {}).get("offset", 0))
        if self.page_size is None:
            return {"Items": copy.deepcopy(matches[start:])}
        page = matches[start:start + self.page_size]
        resp: Dict[str, Any] = {"Items": copy.deepcopy(page)}
        if start + self.page_size < len(matches):
            resp["LastEvaluatedKey"] = {"offset": start + self.page_size}
        return resp

    def rows(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(it) for it in self.items.values()]


class FakeStripeApi:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.error: Optional[Exception] = None

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.calls.append(("retrieve_subscription", subscription_id))
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("retrieve_customer", customer_id))
        return copy.deepcopy(self.customers.get(customer_id))

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("find_customer_by_email", email))
        for cust in self.customers.values():
            if cust.get("email") == email:
                return copy.deepcopy(cust)
        return None

    def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_subscriptions", customer_id))
        return [copy.deepcopy(s) for s in self.subscriptions.values() if s.get("customer") == customer_id]


def make_stripe_subscription(
    sub_id: str = "sub_1",
    *,
    user_id: Optional[str] = "u1",
    status: str = "active",
    interval: str = "month",
    customer: str = "cus_1",
    price_id: str = "price_pro",
    period_start: int = 1714564800,
    period_end: int = 1717243200,
    cancel_at_period_end: bool = False,
    created: int = 1714564800,
) -> Dict[str, Any]:
    metadata = {"user_id": user_id} if user_id else {}
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "created": created,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "price": {"id": price_id, "recurring": {"interval": interval}},
                    "plan": {"id": price_id, "interval": interval},
                }
            ],
        },
    }


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1714564800,
        "livemode": False,
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def build_request(
    *,
    method: str = "POST",
    body: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
    path: str = "/api/stripe/webhook",
) -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": b"",
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 1234),
    }

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def tables() -> Tables:
    return Tables(
        subscriptions=FakeTable(("id",)),
        promotions=FakeTable(("id",)),
        stripe_objects=FakeTable(("pk", "sk")),
        webhook_events=FakeTable(("pk", "sk")),
    )


@pytest.fixture
def store(tables: Tables) -> DynamoBillingStore:
    return DynamoBillingStore(tables)


@pytest.fixture
def stripe_api() -> FakeStripeApi:
    return FakeStripeApi()


@pytest.fixture
def deps(store: DynamoBillingStore, stripe_api: FakeStripeApi) -> WebhookDeps:
    return WebhookDeps(store=store, stripe_api=stripe_api, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def subscription_factory() -> Callable[..., Dict[str, Any]]:
    return make_stripe_subscription


@pytest.fixture
def event_factory() -> Callable[..., Dict[str, Any]]:
    return make_event


@pytest.fixture
def signed_request() -> Callable[..., Request]:
    def _build(event: Dict[str, Any], *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> Request:
        body = json.dumps(event).encode("utf-8")
        return build_request(body=body, headers={
            "content-type": "application/json",
            "stripe-signature": sign_payload(body, secret, timestamp),
        })

    return _build
