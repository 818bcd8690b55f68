"""
Measurement invariance as a strictly ordered sequence of nested
multi-group fits:

    Unfit -> Configural -> Metric -> Scalar (-> Strict)

Each step refits the full data with more parameter classes held equal
across groups and needs the previous step's result for its deltas. No
step is gated on the previous one "passing"; judging ΔCFI against a
cut-off happens afterwards (see `groupfit.reporting.verdict`).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import pandas as pd

from groupfit.aggregate.table import ComparisonTable, build_table, chisq_difference, with_deltas
from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure, InvalidTransition
from groupfit.extract.statistics import FitRecord, extract_fit, validate_statistics
from groupfit.fitting.engine import ConstraintLevel, Engine, FittedModel, require_finite
from groupfit.fitting.runner import FitFailure, Outcome, call_with_timeout

log = logging.getLogger(__name__)

DEFAULT_LEVELS = (ConstraintLevel.CONFIGURAL, ConstraintLevel.METRIC, ConstraintLevel.SCALAR)


def parse_levels(levels: Sequence[str | ConstraintLevel]) -> tuple[ConstraintLevel, ...]:
    parsed = tuple(ConstraintLevel.parse(v) for v in levels)
    expected = tuple(ConstraintLevel)[: len(parsed)]
    if not parsed or parsed != expected:
        raise ValueError(
            f"Invariance levels must run in order from configural without gaps, got {[l.name.lower() for l in parsed]}"
        )
    return parsed


class InvarianceSequence:
    def __init__(
        self,
        engine: Engine,
        spec: Any,
        data: pd.DataFrame,
        group_col: str,
        config: FitConfig,
        statistics: Sequence[str],
        levels: Sequence[str | ConstraintLevel] = DEFAULT_LEVELS,
    ):
        if group_col not in data.columns:
            raise ValueError(f"Group column '{group_col}' not found in dataset.")
        self.engine = engine
        self.spec = spec
        self.data = data
        self.group_col = group_col
        self.config = config
        self.statistics = validate_statistics(statistics)
        self.levels = parse_levels(levels)
        self.state: ConstraintLevel | None = None
        self.fits: dict[ConstraintLevel, FittedModel] = {}
        self.records: list[FitRecord] = []

    @property
    def state_name(self) -> str:
        return "Unfit" if self.state is None else self.state.label

    @property
    def next_level(self) -> ConstraintLevel | None:
        i = 0 if self.state is None else self.levels.index(self.state) + 1
        return self.levels[i] if i < len(self.levels) else None

    @property
    def done(self) -> bool:
        return self.next_level is None

    def advance(self, level: str | ConstraintLevel | None = None) -> FitRecord:
        """
        Fit the next level. Passing `level` asserts which one that is;
        skipping or repeating a level raises InvalidTransition.
        ConvergenceFailure propagates and leaves the state unchanged.
        """
        nxt = self.next_level
        if nxt is None:
            raise InvalidTransition(f"Sequence already complete at {self.state_name}.")
        if level is not None and ConstraintLevel.parse(level) != nxt:
            raise InvalidTransition(
                f"Cannot move from {self.state_name} to {ConstraintLevel.parse(level).label}; next is {nxt.label}."
            )
        if self.state is not None and self.state not in self.fits:
            raise InvalidTransition(f"No fitted result for {self.state_name}.")

        result = call_with_timeout(
            lambda: self.engine.fit(
                self.spec, self.data, self.config, group_col=self.group_col, level=nxt, label=nxt.label
            ),
            self.config.timeout,
            nxt.label,
        )
        record = extract_fit(result, self.statistics, label=nxt.label)
        require_finite(record.values, nxt.label)

        self.fits[nxt] = result
        self.records.append(record)
        self.state = nxt
        log.info("Fitted %s model", nxt.label)
        return record


@dataclass(frozen=True)
class InvarianceResult:
    table: ComparisonTable
    outcomes: tuple[Outcome, ...] = ()
    fits: Mapping[ConstraintLevel, FittedModel] = field(default_factory=dict)
    group_col: str = ""

    @property
    def failures(self) -> tuple[FitFailure, ...]:
        return tuple(o for o in self.outcomes if isinstance(o, FitFailure))

    @property
    def complete(self) -> bool:
        return not self.failures


def run_invariance(
    engine: Engine,
    spec: Any,
    data: pd.DataFrame,
    group_col: str,
    config: FitConfig,
    statistics: Sequence[str],
    levels: Sequence[str | ConstraintLevel] = DEFAULT_LEVELS,
    delta_statistics: Sequence[str] = ("cfi",),
) -> InvarianceResult:
    """
    Fit every level in order and build the comparison table with deltas
    (and chi-square difference tests when chisq and df are extracted).
    A failed level ends the sequence; later levels are reported as not
    attempted because their deltas would have no predecessor.
    """
    missing = [s for s in delta_statistics if s not in statistics]
    if missing:
        raise ValueError(f"Delta statistics {missing} must also be extracted.")

    seq = InvarianceSequence(engine, spec, data, group_col, config, statistics, levels)
    outcomes: list[Outcome] = []

    while not seq.done:
        nxt = seq.next_level
        try:
            outcomes.append(seq.advance(nxt))
        except ConvergenceFailure as e:
            log.warning("%s model failed: %s", nxt.label, e.reason)
            outcomes.append(FitFailure(label=nxt.label, kind=type(e).__name__, message=e.reason))
            rest = seq.levels[seq.levels.index(nxt) + 1:]
            outcomes.extend(
                FitFailure(label=l.label, kind="NotAttempted", message=f"{nxt.label} model failed")
                for l in rest
            )
            break

    table = build_table(seq.records, key="level")
    if len(table):
        table = with_deltas(table, delta_statistics)
        if "chisq" in table.statistics and "df" in table.statistics:
            table = chisq_difference(table)

    return InvarianceResult(table=table, outcomes=tuple(outcomes), fits=dict(seq.fits), group_col=group_col)
