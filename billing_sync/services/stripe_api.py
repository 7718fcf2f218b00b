from __future__ import annotations

from typing import Any, Dict, List, Optional

import stripe

from billing_sync.core.errors import WebhookError


def to_plain(obj: Any) -> Dict[str, Any]:
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


class StripeApi:
    """Read-only Stripe calls the reconciler needs.

    The key is passed per call instead of being assigned to ``stripe.api_key``
    so several clients (or a test double) can coexist in one process.
    """

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def _key(self) -> str:
        if not self.api_key:
            raise WebhookError("Stripe is not configured")
        return self.api_key

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        sub = stripe.Subscription.retrieve(subscription_id, api_key=self._key())
        return to_plain(sub)

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        cust = to_plain(stripe.Customer.retrieve(customer_id, api_key=self._key()))
        if cust.get("deleted"):
            return None
        return cust

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        resp = stripe.Customer.list(email=email, limit=1, api_key=self._key())
        data = to_plain(resp).get("data") or []
        return data[0] if data else None

    def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        resp = stripe.Subscription.list(customer=customer_id, status="all", limit=100, api_key=self._key())
        return [to_plain(sub) for sub in resp.auto_paging_iter()]
