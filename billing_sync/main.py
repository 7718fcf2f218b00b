from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from billing_sync.core.settings import S, Settings
from billing_sync.core.tables import build_tables
from billing_sync.metrics import metrics_endpoint, metrics_middleware, set_app_info
from billing_sync.routers.admin import router as admin_router
from billing_sync.routers.stripe_webhook import router as stripe_webhook_router
from billing_sync.services.dispatcher import WebhookDeps
from billing_sync.services.store import DynamoBillingStore
from billing_sync.services.stripe_api import StripeApi


def build_deps(settings: Settings = S) -> WebhookDeps:
    store = DynamoBillingStore(
        build_tables(settings),
        event_ttl_seconds=settings.webhook_event_ttl_seconds,
        ttl_attr=settings.ddb_ttl_attr,
    )
    return WebhookDeps(
        store=store,
        stripe_api=StripeApi(settings.stripe_secret_key),
        webhook_secret=settings.stripe_webhook_secret,
        tier_map=settings.price_tiers,
        signature_tolerance=settings.stripe_webhook_tolerance_seconds,
    )


def create_app(deps: Optional[WebhookDeps] = None, settings: Settings = S) -> FastAPI:
    app = FastAPI(title="Billing Sync", version="0.1.0")
    app.state.webhook_deps = deps or build_deps(settings)

    if settings.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(admin_router)
    app.include_router(stripe_webhook_router)

    return app


app = create_app()
