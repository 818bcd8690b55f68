"""
Shared types for the model fitters.

An engine turns (model spec, data, FitConfig) into a `FittedModel` whose
`statistics` use the canonical names of `groupfit.extract.statistics`.
Engines raise `ConvergenceFailure` for anything that prevents usable
estimates; the batch runners recover from it per group.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

import pandas as pd

from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure
from groupfit.utils.numeric import is_finite


class ConstraintLevel(enum.IntEnum):
    """Cross-group equality constraints, from least to most restricted."""
    CONFIGURAL = 1
    METRIC = 2
    SCALAR = 3
    STRICT = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def equal(self) -> tuple[str, ...]:
        """Parameter classes held equal across groups at this level."""
        return _EQUAL[self]

    @classmethod
    def parse(cls, value: "str | ConstraintLevel") -> "ConstraintLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown constraint level '{value}'. Use one of {[m.name.lower() for m in cls]}") from None


_EQUAL = {
    ConstraintLevel.CONFIGURAL: (),
    ConstraintLevel.METRIC: ("loadings",),
    ConstraintLevel.SCALAR: ("loadings", "intercepts"),
    ConstraintLevel.STRICT: ("loadings", "intercepts", "residuals"),
}


@dataclass(frozen=True)
class CFASpec:
    factors: Mapping[str, Sequence[str]]
    ordered: Sequence[str] = ()

    def __post_init__(self):
        if not self.factors:
            raise ValueError("A CFA needs at least one factor.")
        for name, inds in self.factors.items():
            if len(inds) < 2:
                raise ValueError(f"Factor '{name}' has fewer than 2 indicators.")
        object.__setattr__(self, "factors", {str(k): tuple(v) for k, v in self.factors.items()})
        object.__setattr__(self, "ordered", tuple(self.ordered))

    @property
    def variables(self) -> list[str]:
        return list(dict.fromkeys(v for inds in self.factors.values() for v in inds))

    def describe(self) -> str:
        return "\n".join(f"{f} =~ {' + '.join(inds)}" for f, inds in self.factors.items())


@dataclass(frozen=True)
class RegressionSpec:
    outcome: str
    predictors: Sequence[str]

    def __post_init__(self):
        if not self.predictors:
            raise ValueError("A regression needs at least one predictor.")
        object.__setattr__(self, "predictors", tuple(self.predictors))

    @property
    def variables(self) -> list[str]:
        return [self.outcome, *self.predictors]

    def describe(self) -> str:
        return f"{self.outcome} ~ {' + '.join(self.predictors)}"


@dataclass(frozen=True)
class FittedModel:
    statistics: Mapping[str, float]
    estimates: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_obs: int = 0
    engine: str = ""
    label: str | None = None
    level: ConstraintLevel | None = None


class Engine(Protocol):
    name: str

    def fit(
        self,
        spec: Any,
        data: pd.DataFrame,
        config: FitConfig,
        group_col: str | None = None,
        level: ConstraintLevel | None = None,
        label: str | None = None,
    ) -> FittedModel:
        ...


def require_finite(statistics: Mapping[str, float], label: str | None) -> None:
    """Undefined fit statistics mean the fit itself is unusable."""
    bad = sorted(k for k, v in statistics.items() if not is_finite(v))
    if bad:
        raise ConvergenceFailure(label, f"non-finite statistic(s) {bad}")
