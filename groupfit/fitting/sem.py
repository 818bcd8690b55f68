"""
CFA engine backed by semopy.

Single-group fits use `semopy.Model` and the statistics of
`semopy.calc_stats`. Nested multi-group fits (configural / metric /
scalar / strict) use one stacked `semopy.ModelMeans`: every group gets its
own copy of the indicators and factors, rows of other groups are missing
by construction, and cross-group equality is expressed with shared
parameter labels. Fit statistics for the stacked model are computed from
the per-group implied moments (see `fit_indices`).
"""
from __future__ import annotations

import logging
import re

import numpy as np
import pandas as pd

from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure
from groupfit.core.validators import coerce_numeric
from groupfit.fitting.engine import CFASpec, ConstraintLevel, FittedModel, require_finite
from groupfit.fitting.fit_indices import fit_statistics, rmsea_ci, sample_moments
from groupfit.utils.numeric import safe_float
from groupfit.utils.validation import assert_columns_exist

log = logging.getLogger(__name__)

# estimator -> semopy objective
OBJECTIVES = {"ML": "MLW", "ULS": "ULS", "GLS": "GLS", "WLS": "WLS", "DWLS": "DWLS", "FIML": "FIML"}

# semopy calc_stats name -> canonical name
STAT_NAMES = {
    "chi2": "chisq",
    "DoF": "df",
    "chi2 p-value": "pvalue",
    "CFI": "cfi",
    "TLI": "tli",
    "RMSEA": "rmsea",
    "GFI": "gfi",
    "NFI": "nfi",
    "AIC": "aic",
    "BIC": "bic",
    "LogLik": "loglik",
}

# must be finite for a fit to count as converged
CORE_STATISTICS = ("chisq", "df", "pvalue", "cfi", "tli", "rmsea")

_SUFFIX = re.compile(r"^(?P<name>.+)__g(?P<idx>\d+)$")


def _gname(var: str, i: int) -> str:
    return f"{var}__g{i}"


def _stats_row(stats: pd.DataFrame) -> dict:
    """calc_stats returns one 'Value' row; older releases transpose it."""
    if "Value" in stats.index:
        raw = stats.loc["Value"].to_dict()
    elif "Value" in stats.columns:
        raw = stats["Value"].to_dict()
    else:
        raw = stats.iloc[0].to_dict() if stats.shape[0] else {}

    out = {}
    for k, v in raw.items():
        name = STAT_NAMES.get(str(k))
        if name is None:
            continue
        # NaN stays: an undefined statistic is a fit problem, not an absent one
        try:
            out[name] = float(v)
        except (TypeError, ValueError):
            continue
    return out


def single_group_syntax(spec: CFASpec, identification: str = "marker") -> str:
    lines = []
    for f, inds in spec.factors.items():
        if identification == "std.lv":
            lines.append(f"{f} =~ " + " + ".join(f"l_{f}_{x}*{x}" for x in inds))
            lines.append(f"{f} ~~ 1*{f}")
        else:
            lines.append(f"{f} =~ {' + '.join(inds)}")
    return "\n".join(lines)


def multigroup_syntax(
    spec: CFASpec,
    n_groups: int,
    level: ConstraintLevel,
    identification: str = "marker",
) -> tuple[str, int]:
    """
    Stacked-model syntax for `n_groups` groups at `level`, and the number
    of free parameters it implies.
    """
    equal = set(level.equal)
    std_lv = identification == "std.lv"
    factors = list(spec.factors)
    lines: list[str] = []
    starts: list[str] = []

    for i in range(1, n_groups + 1):
        for f, inds in spec.factors.items():
            terms = []
            for j, x in enumerate(inds):
                if j == 0 and not std_lv:
                    terms.append(f"1*{_gname(x, i)}")
                    continue
                lab = f"l_{f}_{x}" if "loadings" in equal else f"l_{f}_{x}_g{i}"
                terms.append(f"{lab}*{_gname(x, i)}")
            lines.append(f"{_gname(f, i)} =~ " + " + ".join(terms))

        for f in factors:
            fg = _gname(f, i)
            if std_lv and (i == 1 or "loadings" not in equal):
                lines.append(f"{fg} ~~ 1*{fg}")
            else:
                lines.append(f"{fg} ~~ {fg}")
        for a in range(len(factors)):
            for b in range(a + 1, len(factors)):
                lines.append(f"{_gname(factors[a], i)} ~~ {_gname(factors[b], i)}")

        for x in spec.variables:
            xg = _gname(x, i)
            r = f"r_{x}" if "residuals" in equal else f"r_{x}_g{i}"
            lines.append(f"{xg} ~~ {r}*{xg}")
            n = f"n_{x}" if "intercepts" in equal else f"n_{x}_g{i}"
            lines.append(f"{xg} ~ {n}*1")

        for f in factors:
            fg = _gname(f, i)
            if "intercepts" in equal and i > 1:
                # labelled with an explicit start: semopy derives intercept
                # starting values from observed columns only
                lines.append(f"{fg} ~ m_{f}_g{i}*1")
                starts.append(f"m_{f}_g{i}")
            else:
                lines.append(f"{fg} ~ 0*1")

    # groups share no rows, so their factors cannot covary
    for i in range(1, n_groups + 1):
        for j in range(i + 1, n_groups + 1):
            for fa in factors:
                for fb in factors:
                    lines.append(f"{_gname(fa, i)} ~~ 0*{_gname(fb, j)}")
    if starts:
        lines.append(f"start 0.0: {' '.join(starts)}")

    G = n_groups
    p = len(spec.variables)
    k = len(factors)
    n_load = p if std_lv else p - k
    n_free = 0
    n_free += n_load if "loadings" in equal else G * n_load
    if std_lv:
        n_free += (G - 1) * k if "loadings" in equal else 0
    else:
        n_free += G * k
    n_free += G * k * (k - 1) // 2
    n_free += p if "residuals" in equal else G * p
    n_free += p if "intercepts" in equal else G * p
    n_free += (G - 1) * k if "intercepts" in equal else 0

    return "\n".join(lines), n_free


def _check_indicators(df: pd.DataFrame, spec: CFASpec, label: str | None) -> None:
    n, p = df.shape[0], len(spec.variables)
    if n <= p:
        raise ConvergenceFailure(label, f"insufficient data: {n} complete rows for {p} indicators")
    for x in spec.variables:
        if df[x].nunique() < 2:
            raise ConvergenceFailure(label, f"indicator '{x}' has no variance")


def _check_categories(df: pd.DataFrame, spec: CFASpec, group_col: str, groups: list) -> None:
    for item in spec.ordered:
        cats = set(df[item].dropna().unique().tolist())
        for g in groups:
            seen = set(df.loc[df[group_col] == g, item].dropna().unique().tolist())
            absent = sorted(cats - seen)
            if absent:
                raise ConvergenceFailure(
                    str(g), f"no responses in category {absent} of ordered item '{item}'"
                )


def _param_lookup(params: pd.DataFrame) -> dict:
    est = {}
    for _, row in params.iterrows():
        v = safe_float(row.get("Estimate"))
        if v is not None:
            est[(str(row["lval"]), str(row["op"]), str(row["rval"]))] = v
    return est


def _get(est: dict, lval: str, op: str, rval: str, default: float | None = None, label: str | None = None) -> float:
    keys = [(lval, op, rval)]
    if op == "~~":
        keys.append((rval, op, lval))
    if op == "~":
        keys.append((rval, "=~", lval))
    for k in keys:
        if k in est:
            return est[k]
    if default is None:
        raise ConvergenceFailure(label, f"parameter '{lval} {op} {rval}' not estimated")
    return default


def implied_moments(
    est: dict,
    spec: CFASpec,
    i: int,
    identification: str = "marker",
    label: str | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Sigma = L Phi L' + Theta and mu = nu + L alpha for group `i`."""
    xs = spec.variables
    fs = list(spec.factors)
    L = np.zeros((len(xs), len(fs)))
    for b, f in enumerate(fs):
        for j, x in enumerate(spec.factors[f]):
            fixed = 1.0 if (j == 0 and identification != "std.lv") else None
            L[xs.index(x), b] = _get(est, _gname(x, i), "~", _gname(f, i), fixed, label)

    Phi = np.zeros((len(fs), len(fs)))
    for a, fa in enumerate(fs):
        for b, fb in enumerate(fs):
            if b < a:
                continue
            default = 1.0 if a == b and identification == "std.lv" else (None if a == b else 0.0)
            Phi[a, b] = Phi[b, a] = _get(est, _gname(fa, i), "~~", _gname(fb, i), default, label)

    theta = np.array([_get(est, _gname(x, i), "~~", _gname(x, i), None, label) for x in xs])
    nu = np.array([_get(est, _gname(x, i), "~", "1", None, label) for x in xs])
    alpha = np.array([_get(est, _gname(f, i), "~", "1", 0.0, label) for f in fs])

    sigma = L @ Phi @ L.T + np.diag(theta)
    mu = nu + L @ alpha
    return sigma, mu


def _tidy_estimates(params: pd.DataFrame, groups: list) -> pd.DataFrame:
    """Strip the per-group suffixes and add a `group` column."""
    out = params.copy()
    grp = []
    for col in ("lval", "rval"):
        names = []
        for v in out[col].astype(str):
            m = _SUFFIX.match(v)
            names.append(m.group("name") if m else v)
            if col == "lval":
                grp.append(str(groups[int(m.group("idx")) - 1]) if m else None)
        out[col] = names
    out.insert(0, "group", grp)
    return out


class SemEngine:
    name = "semopy"

    def fit(
        self,
        spec: CFASpec,
        data: pd.DataFrame,
        config: FitConfig,
        group_col: str | None = None,
        level: ConstraintLevel | None = None,
        label: str | None = None,
    ) -> FittedModel:
        if not isinstance(spec, CFASpec):
            raise TypeError(f"SemEngine fits CFASpec models, got {type(spec).__name__}")
        assert_columns_exist(data, [*spec.variables, *([group_col] if group_col else [])], "the CFA")
        if group_col is None:
            return self._fit_single(spec, data, config, label)
        return self._fit_multigroup(spec, data, config, group_col, ConstraintLevel.parse(level or "configural"), label)

    def _fit_single(self, spec: CFASpec, data: pd.DataFrame, config: FitConfig, label: str | None) -> FittedModel:
        import semopy
        from semopy.stats import calc_dof

        obj = OBJECTIVES.get(config.estimator)
        if obj is None:
            raise ValueError(f"Estimator '{config.estimator}' is not available in semopy; use one of {sorted(OBJECTIVES)}")

        df = coerce_numeric(data[spec.variables], spec.variables)
        if obj != "FIML":
            df = df.dropna(axis=0, how="any")
        _check_indicators(df, spec, label)

        model = semopy.Model(single_group_syntax(spec, config.identification))
        try:
            res = model.fit(df, obj=obj, solver=config.solver)
            dof = calc_dof(model)
            # calc_stats divides by the degrees of freedom
            stats = semopy.calc_stats(model) if dof > 0 else None
            params = model.inspect()
        except Exception as e:
            raise ConvergenceFailure(label, f"{type(e).__name__}: {e}") from e

        if not getattr(res, "success", True):
            raise ConvergenceFailure(label, str(getattr(res, "message", "optimizer did not converge")))
        if stats is None:
            raise ConvergenceFailure(label, f"model has {dof} degrees of freedom; fit statistics are undefined")

        values = _stats_row(stats)
        n = int(df.shape[0])
        values["nobs"] = float(n)
        require_finite({k: v for k, v in values.items() if k in CORE_STATISTICS}, label)
        if "chisq" in values:
            values["rmsea.ci.lower"], values["rmsea.ci.upper"] = rmsea_ci(values["chisq"], values["df"], n, 1)

        return FittedModel(
            statistics=values,
            estimates=params,
            n_obs=int(df.shape[0]),
            engine=self.name,
            label=label,
        )

    def _fit_multigroup(
        self,
        spec: CFASpec,
        data: pd.DataFrame,
        config: FitConfig,
        group_col: str,
        level: ConstraintLevel,
        label: str | None,
    ) -> FittedModel:
        import semopy

        if config.estimator not in ("ML", "FIML"):
            raise ValueError(f"Nested multi-group fits need the ML estimator, got '{config.estimator}'")
        for name in [*spec.variables, *spec.factors]:
            if not name.isidentifier():
                raise ValueError(f"Variable name '{name}' cannot be used in model syntax.")

        label = label or level.label
        df = coerce_numeric(data[[*spec.variables, group_col]], spec.variables).dropna(axis=0, how="any")
        groups = sorted(df[group_col].unique().tolist(), key=str)
        if len(groups) < 2:
            raise ConvergenceFailure(label, f"grouping variable '{group_col}' has fewer than 2 groups")

        _check_categories(df, spec, group_col, groups)
        parts = []
        for g in groups:
            part = df.loc[df[group_col] == g, spec.variables]
            _check_indicators(part, spec, f"{label} / {g}")
            parts.append(part)

        stacked = pd.concat(
            [part.rename(columns={x: _gname(x, i) for x in spec.variables}) for i, part in enumerate(parts, start=1)],
            axis=0,
            ignore_index=True,
        )
        syntax, n_free = multigroup_syntax(spec, len(groups), level, config.identification)

        model = semopy.ModelMeans(syntax)
        try:
            # ModelMeans "ML" is full-information ML over the missing blocks
            res = model.fit(stacked, solver=config.solver)
            params = model.inspect()
        except Exception as e:
            raise ConvergenceFailure(label, f"{type(e).__name__}: {e}") from e

        if not getattr(res, "success", True):
            raise ConvergenceFailure(label, str(getattr(res, "message", "optimizer did not converge")))

        est = _param_lookup(params)
        samples, implied = [], []
        for i, part in enumerate(parts, start=1):
            samples.append(sample_moments(part))
            implied.append(implied_moments(est, spec, i, config.identification, label))

        try:
            values = fit_statistics(samples, implied, n_free)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise ConvergenceFailure(label, str(e)) from e

        require_finite({k: v for k, v in values.items() if k in CORE_STATISTICS}, label)

        tidy = _tidy_estimates(params, groups)
        neg = tidy[(tidy["op"] == "~~") & (tidy["lval"] == tidy["rval"]) & (pd.to_numeric(tidy["Estimate"], errors="coerce") < 0)]
        if not neg.empty:
            log.warning("%s: negative variance estimate(s) for %s", label, sorted(set(neg["lval"])))

        return FittedModel(
            statistics=values,
            estimates=tidy,
            n_obs=int(df.shape[0]),
            engine=self.name,
            label=label,
            level=level,
        )
