from __future__ import annotations

import json
from typing import Any, Optional

from billing_sync.core.settings import S
from billing_sync.core.time import now_iso


def log_webhook_event(event: str, status: str = "success", *, level: str = "info", **fields: Any) -> None:
    """One JSON line per pipeline step on stdout.

    ``level`` is ``info``, ``warning`` or ``error``. Fields whose value is
    None are dropped so log lines stay grep-friendly.
    """
    if not S.audit_log_enabled:
        return
    payload = {
        "timestamp": now_iso(),
        "type": "webhook_event",
        "event": event,
        "status": status,
        "level": level,
    }
    payload.update({k: v for k, v in fields.items() if v is not None})
    try:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
    except (TypeError, ValueError):
        print(json.dumps({"event": event, "status": status, "level": level}, separators=(",", ":")))


def log_warning(event: str, **fields: Any) -> None:
    log_webhook_event(event, "skipped", level="warning", **fields)


def log_error(event: str, error: Optional[BaseException] = None, **fields: Any) -> None:
    if error is not None:
        fields.setdefault("error", str(error))
        fields.setdefault("error_type", type(error).__name__)
    log_webhook_event(event, "error", level="error", **fields)
