from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import pandas as pd

from groupfit.utils.validation import assert_columns_exist

AGE_BINS = [0, 17, 24, 34, 44, 54, 64, 120]
AGE_LABELS = ["<=17", "18-24", "25-34", "35-44", "45-54", "55-64", "65+"]


@dataclass(frozen=True)
class GroupRule:
    """
    A named selection over a dataset. A row matches when every attribute
    equals the given value, or is one of the values when a list is given.
    """
    name: str
    where: Mapping[str, Any] = field(default_factory=dict)

    def mask(self, df: pd.DataFrame) -> pd.Series:
        m = pd.Series(True, index=df.index)
        for col, value in self.where.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                m &= df[col].isin(list(value))
            else:
                m &= df[col] == value
        return m.fillna(False).astype(bool)


def partition(df: pd.DataFrame, rules: Sequence[GroupRule]) -> dict[str, pd.DataFrame]:
    """
    Split `df` into named subgroups, one per rule, in rule order.

    A rule that matches no rows yields an empty frame; the fitter reports
    it as a failure later. The input frame is never modified.
    """
    names = [r.name for r in rules]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate group names: {dupes}")

    needed = list(dict.fromkeys(col for r in rules for col in r.where))
    assert_columns_exist(df, needed, "group rules")

    return {r.name: df.loc[r.mask(df)].copy() for r in rules}


def rules_from_columns(df: pd.DataFrame, columns: Sequence[str], dropna: bool = True) -> list[GroupRule]:
    """
    One rule per observed level of `columns` (level combinations when more
    than one column is given, e.g. race x gender). Combinations that never
    occur in the data are skipped.
    """
    columns = list(columns)
    if not columns:
        raise ValueError("At least one grouping column is required.")
    assert_columns_exist(df, columns, "grouping")

    levels = []
    for c in columns:
        vals = df[c].dropna().unique().tolist() if dropna else df[c].unique().tolist()
        levels.append(sorted(vals, key=str))

    observed = set(map(tuple, df[columns].itertuples(index=False, name=None)))

    rules = []
    for combo in itertools.product(*levels):
        if combo not in observed:
            continue
        name = " / ".join(str(v) for v in combo)
        rules.append(GroupRule(name=name, where=dict(zip(columns, combo))))
    return rules


def make_age_band(
    df: pd.DataFrame,
    column: str = "age",
    target: str = "age_group",
    bins: Sequence[float] = AGE_BINS,
    labels: Sequence[str] = AGE_LABELS,
) -> pd.DataFrame:
    """Create `target` from `column` if requested but missing."""
    if target in df.columns:
        return df
    if column not in df.columns:
        raise ValueError(f"Cannot derive '{target}': column '{column}' not found.")

    out = df.copy()
    out[target] = pd.cut(out[column], bins=list(bins), labels=list(labels), right=True, include_lowest=True)
    # plain strings so rules can match on them
    out[target] = out[target].astype(object).where(out[target].notna(), None)
    return out
