from __future__ import annotations

import math
from typing import Any


def coerce_int(value: Any, *, default: int, minimum: int = 0) -> int:
    """Coerce a loosely-typed value into an int no smaller than `minimum`.

    Used for user-authored config (YAML or environment) where numbers may
    arrive as strings like "86400000" or floats like 3.6e6. Anything that does
    not parse falls back to `default`.
    """
    if value is None or isinstance(value, bool):
        return int(default)
    if isinstance(value, int):
        out = value
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return int(default)
        out = int(value)
    elif isinstance(value, str):
        s = value.strip().replace("_", "")
        if not s:
            return int(default)
        try:
            out = int(s)
        except ValueError:
            try:
                f = float(s)
            except ValueError:
                return int(default)
            if math.isnan(f) or math.isinf(f):
                return int(default)
            out = int(f)
    else:
        return int(default)
    return max(int(minimum), out)
