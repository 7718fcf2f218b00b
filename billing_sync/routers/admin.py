from __future__ import annotations

import hmac
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import ValidationError

from billing_sync.core.settings import S
from billing_sync.core.time import iso_from_epoch
from billing_sync.metrics import record_reconcile_action
from billing_sync.models import ResyncSubscriptionReq, SubscriptionData
from billing_sync.routers.stripe_webhook import get_webhook_deps
from billing_sync.services.audit import log_webhook_event
from billing_sync.services.dispatcher import WebhookDeps
from billing_sync.services.reconciler import reconcile_subscription

router = APIRouter(tags=["admin"])


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    if not S.admin_api_token:
        raise HTTPException(501, "Admin API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, S.admin_api_token):
        raise HTTPException(403, "Not authorized")


def pick_subscription(subs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Newest active subscription, else the newest of any status."""
    if not subs:
        return None
    by_created = sorted(subs, key=lambda s: int(s.get("created") or 0), reverse=True)
    for sub in by_created:
        if sub.get("status") == "active":
            return sub
    return by_created[0]


@router.post("/api/admin/subscriptions/resync")
def resync_subscription(
    body: ResyncSubscriptionReq,
    _: None = Depends(require_admin),
    deps: WebhookDeps = Depends(get_webhook_deps),
) -> Dict[str, Any]:
    if not body.customer_id and not body.email:
        raise HTTPException(400, "Provide customer_id or email")

    api = deps.stripe_api
    customer = api.retrieve_customer(body.customer_id) if body.customer_id else api.find_customer_by_email(body.email)
    if not customer:
        raise HTTPException(404, "No Stripe customer found for this user")

    chosen = pick_subscription(api.list_subscriptions(customer["id"]))
    if chosen is None:
        raise HTTPException(404, "No subscriptions found for this customer")

    try:
        snapshot = SubscriptionData.model_validate(chosen)
    except ValidationError as exc:
        raise HTTPException(502, "Unexpected subscription shape from Stripe") from exc
    if not snapshot.customer:
        snapshot = snapshot.model_copy(update={"customer": customer["id"]})

    result = reconcile_subscription(deps.store, snapshot, user_id=body.user_id, tier_map=deps.tier_map)
    record_reconcile_action(result.action)
    log_webhook_event(
        "subscription_resynced",
        user_id=body.user_id,
        record_id=result.record_id,
        action=result.action,
        stripe_subscription_id=snapshot.id,
    )
    return {
        "success": True,
        "action": result.action,
        "record_id": result.record_id,
        "subscription": {
            "id": snapshot.id,
            "status": snapshot.status,
            "local_status": result.status,
            "billing_period": result.billing_period,
            "current_period_end": iso_from_epoch(snapshot.period_end),
        },
    }
