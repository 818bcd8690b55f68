from __future__ import annotations

import math


def safe_float(x) -> float | None:
    """Float conversion that maps NaN, None and unparsable values to None."""
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(v) else v


def is_finite(x) -> bool:
    v = safe_float(x)
    return v is not None and math.isfinite(v)
