"""
Closed registry of fit-statistic names and the projection of a fitted
result onto a fixed, ordered list of them.

Names follow lavaan's `fitMeasures()` spelling so tables line up with the
usual reporting conventions (e.g. `cfi.scaled`, `rmsea.ci.lower`).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

from groupfit.core.errors import MissingStatistic, UnknownStatistic
from groupfit.fitting.engine import FittedModel

SEM_STATISTICS = (
    "chisq", "df", "pvalue",
    "rmsea", "rmsea.ci.lower", "rmsea.ci.upper",
    "tli", "cfi",
)
SCALED_SEM_STATISTICS = (
    "chisq.scaled", "df.scaled", "pvalue.scaled",
    "rmsea.scaled", "rmsea.ci.lower.scaled", "rmsea.ci.upper.scaled",
    "tli.scaled", "cfi.scaled",
)
REGRESSION_STATISTICS = ("nobs", "r2", "adj.r2", "fstat", "fstat.pvalue", "aic", "bic")
BAYES_STATISTICS = ("nobs", "r2", "max_rhat", "min_ess")

STATISTICS = frozenset(
    SEM_STATISTICS
    + SCALED_SEM_STATISTICS
    + REGRESSION_STATISTICS
    + BAYES_STATISTICS
    + ("srmr", "aic", "bic", "loglik", "gfi", "nfi", "baseline.chisq", "baseline.df")
)


def validate_statistics(names: Iterable[str]) -> tuple[str, ...]:
    """Check `names` against the registry; returns them as an ordered tuple."""
    names = tuple(names)
    if not names:
        raise ValueError("At least one statistic name is required.")
    unknown = [n for n in names if n not in STATISTICS]
    if unknown:
        raise UnknownStatistic(unknown)
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate statistic names: {dupes}")
    return names


@dataclass(frozen=True)
class FitRecord:
    """Statistic name -> value for one group or constraint level."""
    label: str
    values: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self.values)

    def __getitem__(self, name: str) -> float:
        return self.values[name]

    def as_dict(self) -> dict[str, float]:
        return dict(self.values)


def extract_fit(result: FittedModel, names: Sequence[str], label: str | None = None) -> FitRecord:
    """
    Project `result.statistics` onto `names`, in that order.

    Raises MissingStatistic listing every requested name the result does
    not expose (for instance scaled statistics from a non-robust estimator).
    """
    names = validate_statistics(names)
    label = label if label is not None else result.label
    available = result.statistics

    missing = [n for n in names if n not in available]
    if missing:
        raise MissingStatistic(label, missing, list(available))

    return FitRecord(label=str(label), values={n: float(available[n]) for n in names})
