from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from billing_sync.core.errors import MalformedEvent, SignatureInvalid
from billing_sync.metrics import record_webhook_event
from billing_sync.services.audit import log_error, log_webhook_event
from billing_sync.services.dispatcher import WebhookDeps, dispatch
from billing_sync.services.envelope import verify_and_parse
from billing_sync.services.signature import SIGNATURE_HEADER

router = APIRouter(tags=["stripe-webhook"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def get_webhook_deps(request: Request) -> WebhookDeps:
    deps = getattr(request.app.state, "webhook_deps", None)
    if deps is None:
        raise HTTPException(503, "Webhook dependencies are not initialised")
    return deps


def _json(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=CORS_HEADERS)


async def process_webhook(req: Request, deps: WebhookDeps) -> JSONResponse:
    if not deps.webhook_secret:
        log_error("webhook_secret_missing")
        return _json(500, {"error": "Webhook secret is not configured"})

    # Raw bytes: the signature covers the body exactly as sent.
    payload = await req.body()
    sig = req.headers.get(SIGNATURE_HEADER)
    log_webhook_event(
        "received",
        body_length=len(payload),
        content_type=req.headers.get("content-type"),
        has_signature=bool(sig),
    )

    try:
        envelope = verify_and_parse(payload, sig, deps.webhook_secret, tolerance=deps.signature_tolerance)
    except SignatureInvalid as exc:
        log_error("signature_verification_failed", exc)
        record_webhook_event("unverified", "rejected")
        return _json(400, {"error": f"Webhook Error: {exc.message}"})
    except MalformedEvent as exc:
        log_error("malformed_event", exc, **exc.context)
        record_webhook_event("unparsed", "rejected")
        return _json(400, {"error": f"Webhook Error: {exc.message}"})

    ctx = {"event_id": envelope.id, "event_type": envelope.type}
    log_webhook_event("verified", category=envelope.category.value, **ctx)

    try:
        if deps.store.is_event_processed(envelope.id):
            log_webhook_event("duplicate_event", "skipped", **ctx)
            record_webhook_event(envelope.category.value, "deduped")
            return _json(200, {"received": True, "event_id": envelope.id, "deduped": True})
        dispatch(envelope, deps)
        deps.store.mark_event_processed(envelope.id, envelope.type)
    except Exception as exc:
        # Anything past verification is worth a redelivery from Stripe.
        log_error("error_processing_event", exc, **{**getattr(exc, "context", {}), **ctx})
        record_webhook_event(envelope.category.value, "failed")
        return _json(500, {"error": f"Error processing event: {exc}"})

    return _json(200, {"received": True, "event_id": envelope.id})


@router.post("/api/stripe/webhook")
@router.post("/")
async def stripe_webhook(req: Request, deps: WebhookDeps = Depends(get_webhook_deps)) -> JSONResponse:
    return await process_webhook(req, deps)


@router.options("/api/stripe/webhook")
@router.options("/")
def stripe_webhook_preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


@router.api_route("/api/stripe/webhook", methods=["GET", "PUT", "PATCH", "DELETE"])
@router.api_route("/", methods=["GET", "PUT", "PATCH", "DELETE"])
def stripe_webhook_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        {"error": "Method not allowed"},
        status_code=405,
        headers={**CORS_HEADERS, "Allow": "POST, OPTIONS"},
    )
