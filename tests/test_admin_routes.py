from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi import HTTPException
from pydantic import ValidationError

from billing_sync.core.settings import Settings
from billing_sync.core.tables import Tables
from billing_sync.models import ResyncSubscriptionReq
from billing_sync.routers import admin as routes
from billing_sync.services.dispatcher import WebhookDeps
from billing_sync.services.store import DynamoBillingStore

from conftest import WEBHOOK_SECRET, FakeStripeApi, FakeTable, make_stripe_subscription


class RequireAdminTests(unittest.TestCase):
    def test_unconfigured_token_disables_admin_api(self) -> None:
        with patch("billing_sync.routers.admin.S", Settings(admin_api_token="")):
            with self.assertRaises(HTTPException) as ctx:
                routes.require_admin("anything")
        self.assertEqual(ctx.exception.status_code, 501)

    def test_wrong_or_missing_token_is_forbidden(self) -> None:
        with patch("billing_sync.routers.admin.S", Settings(admin_api_token="s3cret")):
            for token in (None, "", "nope"):
                with self.assertRaises(HTTPException) as ctx:
                    routes.require_admin(token)
                self.assertEqual(ctx.exception.status_code, 403)
            self.assertIsNone(routes.require_admin("s3cret"))


class PickSubscriptionTests(unittest.TestCase):
    def test_prefers_newest_active(self) -> None:
        subs = [
            {"id": "a_old", "status": "active", "created": 1},
            {"id": "c_new", "status": "canceled", "created": 9},
            {"id": "a_new", "status": "active", "created": 5},
        ]
        self.assertEqual(routes.pick_subscription(subs)["id"], "a_new")

    def test_falls_back_to_newest_of_any_status(self) -> None:
        subs = [{"id": "old", "status": "canceled", "created": 1}, {"id": "new", "status": "past_due", "created": 2}]
        self.assertEqual(routes.pick_subscription(subs)["id"], "new")
        self.assertIsNone(routes.pick_subscription([]))


class ResyncSubscriptionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tables = Tables(
            subscriptions=FakeTable(("id",)),
            promotions=FakeTable(("id",)),
            stripe_objects=FakeTable(("pk", "sk")),
            webhook_events=FakeTable(("pk", "sk")),
        )
        self.stripe = FakeStripeApi()
        self.stripe.customers["cus_1"] = {"id": "cus_1", "email": "fan@example.com"}
        self.deps = WebhookDeps(
            store=DynamoBillingStore(self.tables),
            stripe_api=self.stripe,
            webhook_secret=WEBHOOK_SECRET,
        )

    def resync(self, **body):
        return routes.resync_subscription(ResyncSubscriptionReq(**body), None, self.deps)

    def test_resync_by_customer_reactivates_inactive_row(self) -> None:
        self.tables.subscriptions.put_item(Item={
            "id": "r1",
            "user_id": "u1",
            "status": "inactive",
            "created_at": "2023-01-01T00:00:00+00:00",
        })
        self.stripe.subscriptions["sub_1"] = make_stripe_subscription(user_id=None, interval="year")

        out = self.resync(user_id="u1", customer_id="cus_1")

        self.assertTrue(out["success"])
        self.assertEqual(out["action"], "reactivated")
        self.assertEqual(out["record_id"], "r1")
        self.assertEqual(out["subscription"]["billing_period"], "annual")
        self.assertEqual(out["subscription"]["local_status"], "active")
        row = self.tables.subscriptions.get_item(Key={"id": "r1"})["Item"]
        self.assertEqual(row["status"], "active")
        self.assertEqual(row["stripe_subscription_id"], "sub_1")

    def test_resync_by_email_looks_up_customer(self) -> None:
        self.stripe.subscriptions["sub_1"] = make_stripe_subscription()

        out = self.resync(userId="u1", email="fan@example.com")

        self.assertEqual(out["action"], "inserted")
        self.assertIn(("find_customer_by_email", "fan@example.com"), self.stripe.calls)

    def test_needs_customer_or_email(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self.resync(user_id="u1")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unknown_customer_is_not_found(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self.resync(user_id="u1", email="nobody@example.com")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_customer_without_subscriptions_is_not_found(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self.resync(user_id="u1", customer_id="cus_1")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(self.tables.subscriptions.writes, [])

    def test_user_id_is_required(self) -> None:
        with self.assertRaises(ValidationError):
            ResyncSubscriptionReq(user_id="", customer_id="cus_1")


if __name__ == "__main__":
    unittest.main()
