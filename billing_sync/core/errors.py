"""Failure taxonomy for the webhook pipeline.

Each class maps to one HTTP outcome in the router:

* ``SignatureInvalid`` / ``MalformedEvent`` -> 400, never worth redelivering.
* ``UnattributableEvent`` -> logged and acknowledged with 200.
* ``PersistenceFailure`` -> 500 so Stripe redelivers with backoff.

Unknown event types are not errors at all; the dispatcher ignores them.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class WebhookError(Exception):
    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


class SignatureInvalid(WebhookError):
    pass


class MalformedEvent(WebhookError):
    pass


class UnattributableEvent(WebhookError):
    pass


class PersistenceFailure(WebhookError):
    pass
