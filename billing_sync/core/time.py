from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional


def now_ts() -> int:
    return int(time.time())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_from_epoch(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value in (None, "", 0):
        return default
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return default
