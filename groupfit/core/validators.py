from __future__ import annotations
import pandas as pd


def coerce_numeric(df: pd.DataFrame, cols: list[str]) -> pd.DataFrame:
    out = df.copy()
    for c in cols:
        out[c] = pd.to_numeric(out[c], errors="coerce")
    return out


def group_counts(groups: dict[str, pd.DataFrame], min_n: int) -> pd.DataFrame:
    """Row count per named subgroup and whether it reaches `min_n`."""
    counts = pd.DataFrame(
        [{"group": name, "n": int(part.shape[0])} for name, part in groups.items()],
        columns=["group", "n"],
    )
    counts["ok"] = counts["n"] >= min_n
    return counts
