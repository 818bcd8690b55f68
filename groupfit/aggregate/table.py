"""
Comparison tables: immutable, ordered collections of fit records that
share one statistic schema, plus derived deltas between successive rows
and wide/long reshapes for presentation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import reduce
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

from groupfit.core.errors import MissingStatistic, SchemaMismatch
from groupfit.extract.statistics import FitRecord
from groupfit.utils.numeric import safe_float


@dataclass(frozen=True)
class ComparisonTable:
    key: str = "group"
    records: tuple[FitRecord, ...] = ()
    statistics: tuple[str, ...] = ()
    deltas: Mapping[str, Mapping[str, float | None]] = field(default_factory=dict)
    delta_columns: tuple[str, ...] = ()

    def __post_init__(self):
        frozen = {k: MappingProxyType(dict(v)) for k, v in self.deltas.items()}
        object.__setattr__(self, "deltas", MappingProxyType(frozen))

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(r.label for r in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def value(self, label: str, statistic: str) -> float:
        for r in self.records:
            if r.label == label:
                return r[statistic]
        raise KeyError(label)

    def delta(self, label: str, column: str) -> float | None:
        return self.deltas.get(label, {}).get(column)

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for r in self.records:
            row = {self.key: r.label}
            row.update({s: r[s] for s in self.statistics})
            for c in self.delta_columns:
                d = self.delta(r.label, c)
                row[c] = np.nan if d is None else d
            rows.append(row)
        return pd.DataFrame(rows, columns=[self.key, *self.statistics, *self.delta_columns])


def _fold(state: tuple, rec: FitRecord) -> tuple:
    records, schema = state
    if schema is None:
        return (rec,), rec.keys

    missing = set(schema) - set(rec.keys)
    extra = set(rec.keys) - set(schema)
    if missing or extra:
        raise SchemaMismatch(rec.label, sorted(missing), sorted(extra))
    if rec.label in (r.label for r in records):
        raise ValueError(f"Duplicate label '{rec.label}' in comparison table.")
    return records + (rec,), schema


def build_table(records: Iterable[FitRecord], key: str = "group") -> ComparisonTable:
    """
    Collect records, in the given order, into a table. Every record must
    carry exactly the statistic keys of the first one.
    """
    recs, schema = reduce(_fold, records, ((), None))
    return ComparisonTable(key=key, records=recs, statistics=tuple(schema or ()))


def _extend(table: ComparisonTable, new: Mapping[str, Mapping[str, float | None]], columns: Sequence[str]) -> ComparisonTable:
    merged = {r.label: {**table.deltas.get(r.label, {}), **new.get(r.label, {})} for r in table.records}
    cols = tuple(dict.fromkeys([*table.delta_columns, *columns]))
    return ComparisonTable(
        key=table.key,
        records=table.records,
        statistics=table.statistics,
        deltas=merged,
        delta_columns=cols,
    )


def _require(table: ComparisonTable, names: Sequence[str]) -> None:
    missing = [n for n in names if n not in table.statistics]
    if missing:
        raise MissingStatistic(None, missing, list(table.statistics))


def with_deltas(table: ComparisonTable, statistics: Sequence[str] = ("cfi",)) -> ComparisonTable:
    """
    Add `delta_<stat>` = value(row) - value(previous row) for every row
    after the first. The first row's delta is None, never zero.
    """
    _require(table, statistics)
    new: dict[str, dict[str, float | None]] = {}
    prev = None
    for r in table.records:
        new[r.label] = {f"delta_{s}": (None if prev is None else r[s] - prev[s]) for s in statistics}
        prev = r
    return _extend(table, new, [f"delta_{s}" for s in statistics])


def chisq_difference(table: ComparisonTable) -> ComparisonTable:
    """
    Likelihood-ratio test between each row and the one before it:
    delta_chisq, delta_df and the chi-square survival p-value.
    """
    _require(table, ("chisq", "df"))
    cols = ("delta_chisq", "delta_df", "chisq_diff_pvalue")
    new: dict[str, dict[str, float | None]] = {}
    prev = None
    for r in table.records:
        if prev is None:
            new[r.label] = dict.fromkeys(cols)
        else:
            d_chi = r["chisq"] - prev["chisq"]
            d_df = r["df"] - prev["df"]
            p = float(scipy_stats.chi2.sf(d_chi, d_df)) if d_df > 0 and d_chi >= 0 else None
            new[r.label] = {"delta_chisq": d_chi, "delta_df": d_df, "chisq_diff_pvalue": p}
        prev = r
    return _extend(table, new, cols)


def to_long(table: ComparisonTable) -> pd.DataFrame:
    """(label, statistic, value) triples in table order."""
    rows = [
        {table.key: r.label, "statistic": s, "value": r[s]}
        for r in table.records
        for s in table.statistics
    ]
    return pd.DataFrame(rows, columns=[table.key, "statistic", "value"])


def pivot_wide(table: ComparisonTable) -> pd.DataFrame:
    """Statistics as rows, one column per group, for side-by-side display."""
    data = {r.label: [r[s] for s in table.statistics] for r in table.records}
    out = pd.DataFrame(data, index=pd.Index(table.statistics, name="statistic"), columns=list(table.labels))
    out.columns.name = table.key
    return out


def from_wide(frame: pd.DataFrame, key: str = "group") -> ComparisonTable:
    statistics = [str(s) for s in frame.index]
    records = [
        FitRecord(label=str(col), values={s: float(frame.at[s_raw, col]) for s, s_raw in zip(statistics, frame.index)})
        for col in frame.columns
    ]
    return build_table(records, key=key)


def from_long(frame: pd.DataFrame, key: str = "group") -> ComparisonTable:
    values: dict[str, dict[str, float]] = {}
    for label, stat, val in frame[[key, "statistic", "value"]].itertuples(index=False, name=None):
        bucket = values.setdefault(str(label), {})
        if stat in bucket:
            raise ValueError(f"Duplicate statistic '{stat}' for '{label}'.")
        v = safe_float(val)
        bucket[str(stat)] = float("nan") if v is None else v
    return build_table([FitRecord(label=k, values=v) for k, v in values.items()], key=key)
