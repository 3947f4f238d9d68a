from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def is_stale(last_ms: int, interval_ms: int, *, now: Optional[int] = None) -> bool:
    """True once at least `interval_ms` has passed since `last_ms`."""
    current = now_ms() if now is None else int(now)
    return current - int(last_ms or 0) >= int(interval_ms)
