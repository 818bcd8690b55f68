"""Display formatting for comparison tables (numbers to strings, labels)."""
from __future__ import annotations

from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from groupfit.utils.numeric import safe_float

PVALUE_COLUMNS = ("pvalue", "pvalue.scaled", "fstat.pvalue", "chisq_diff_pvalue")
COUNT_COLUMNS = ("df", "df.scaled", "delta_df", "nobs", "n", "baseline.df")


def format_pvalue(p, floor: float = 0.001, decimals: int = 3) -> str:
    """APA style: no leading zero, values under `floor` shown as '<.001'."""
    v = safe_float(p)
    if v is None:
        return ""
    if v < floor:
        return "<" + f"{floor:.{decimals}f}".lstrip("0")
    s = f"{v:.{decimals}f}"
    return s[1:] if s.startswith("0.") else s


def format_number(x, decimals: int = 3) -> str:
    v = safe_float(x)
    if v is None:
        return ""
    return f"{v:.{decimals}f}"


def significance_stars(p) -> str:
    v = safe_float(p)
    if v is None:
        return ""
    if v < 0.001:
        return "***"
    if v < 0.01:
        return "**"
    if v < 0.05:
        return "*"
    return ""


def _integral(s: pd.Series) -> bool:
    vals = pd.to_numeric(s, errors="coerce").dropna()
    return not vals.empty and bool(np.all(np.isclose(vals, np.round(vals))))


def format_table(
    frame: pd.DataFrame,
    labels: Mapping[str, str] | None = None,
    decimals: Mapping[str, int] | None = None,
    pvalue_columns: Sequence[str] | None = None,
    p_floor: float = 0.001,
    default_decimals: int = 3,
) -> pd.DataFrame:
    """
    Return a string-valued copy of `frame` ready for display. Row order
    is kept; missing values become empty strings.
    """
    decimals = dict(decimals or {})
    pcols = set(PVALUE_COLUMNS if pvalue_columns is None else pvalue_columns)
    out = pd.DataFrame(index=frame.index)

    for col in frame.columns:
        s = frame[col]
        if col in pcols:
            out[col] = [format_pvalue(v, p_floor, decimals.get(col, 3)) for v in s]
        elif pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s):
            counts = pd.api.types.is_integer_dtype(s) or col in COUNT_COLUMNS
            d = decimals.get(col, 0 if counts and _integral(s) else default_decimals)
            out[col] = [format_number(v, d) for v in s]
        else:
            out[col] = ["" if v is None or (isinstance(v, float) and np.isnan(v)) else str(v) for v in s]

    if labels:
        out = out.rename(columns=dict(labels))
    return out
