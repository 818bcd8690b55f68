"""
Per-group batch fitting.

Each subgroup is fitted independently; a group that cannot be fitted
becomes a `FitFailure` in its place and the batch carries on. Results
keep the caller's group order whether or not fits run in parallel.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence, Union

import pandas as pd

from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure
from groupfit.extract.statistics import FitRecord, extract_fit, validate_statistics
from groupfit.fitting.engine import Engine, FittedModel, require_finite

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FitFailure:
    label: str
    kind: str
    message: str


Outcome = Union[FitRecord, FitFailure]


@dataclass(frozen=True)
class BatchResult:
    outcomes: tuple[Outcome, ...] = ()
    fits: Mapping[str, FittedModel] = field(default_factory=dict)

    @property
    def records(self) -> tuple[FitRecord, ...]:
        return tuple(o for o in self.outcomes if isinstance(o, FitRecord))

    @property
    def failures(self) -> tuple[FitFailure, ...]:
        return tuple(o for o in self.outcomes if isinstance(o, FitFailure))

    @property
    def n_ok(self) -> int:
        return len(self.records)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def summary(self) -> pd.DataFrame:
        rows = []
        for o in self.outcomes:
            if isinstance(o, FitRecord):
                rows.append({"group": o.label, "status": "ok", "kind": "", "message": ""})
            else:
                rows.append({"group": o.label, "status": "failed", "kind": o.kind, "message": o.message})
        return pd.DataFrame(rows, columns=["group", "status", "kind", "message"])


def call_with_timeout(fn: Callable[[], Any], timeout: float | None, label: str | None) -> Any:
    """
    Run `fn` and give up after `timeout` seconds. The worker thread cannot
    be killed; it is abandoned and its result discarded.
    """
    if timeout is None:
        return fn()
    ex = ThreadPoolExecutor(max_workers=1)
    fut = ex.submit(fn)
    try:
        return fut.result(timeout=timeout)
    except FuturesTimeout:
        raise ConvergenceFailure(label, f"timed out after {timeout:g}s") from None
    finally:
        ex.shutdown(wait=False, cancel_futures=True)


def fit_one(
    engine: Engine,
    spec: Any,
    label: str,
    data: pd.DataFrame,
    config: FitConfig,
    statistics: Sequence[str],
) -> tuple[Outcome, FittedModel | None]:
    """Fit one subgroup; convergence problems come back as a FitFailure."""
    try:
        n = int(data.shape[0])
        if n == 0:
            raise ConvergenceFailure(label, "insufficient data: group has 0 rows")
        if n < config.min_group_n:
            raise ConvergenceFailure(label, f"insufficient data: {n} rows < min_group_n={config.min_group_n}")

        result = call_with_timeout(lambda: engine.fit(spec, data, config, label=label), config.timeout, label)
        record = extract_fit(result, statistics, label=label)
        require_finite(record.values, label)
    except ConvergenceFailure as e:
        log.warning("Group '%s' failed: %s", label, e.reason)
        return FitFailure(label=label, kind=type(e).__name__, message=e.reason), None

    return record, result


def fit_groups(
    engine: Engine,
    spec: Any,
    groups: Mapping[str, pd.DataFrame],
    config: FitConfig,
    statistics: Sequence[str],
) -> BatchResult:
    """
    Fit `spec` to every subgroup in `groups`, in insertion order.

    MissingStatistic (a configuration error) is not recovered: it would
    repeat for every group.
    """
    statistics = validate_statistics(statistics)
    items = list(groups.items())

    if config.max_workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=config.max_workers) as ex:
            futures = [ex.submit(fit_one, engine, spec, name, part, config, statistics) for name, part in items]
            results = [f.result() for f in futures]
    else:
        results = [fit_one(engine, spec, name, part, config, statistics) for name, part in items]

    outcomes = tuple(o for o, _ in results)
    fits = {o.label: r for o, r in results if r is not None}
    batch = BatchResult(outcomes=outcomes, fits=fits)
    log.info("Fitted %d/%d groups (%d failed)", batch.n_ok, len(items), batch.n_failed)
    return batch
