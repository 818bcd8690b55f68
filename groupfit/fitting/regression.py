from __future__ import annotations

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure
from groupfit.fitting.engine import ConstraintLevel, FittedModel, RegressionSpec
from groupfit.utils.numeric import is_finite
from groupfit.utils.validation import assert_columns_exist


def _term(name: str) -> str:
    return name if name.isidentifier() else f'Q("{name}")'


def regression_formula(spec: RegressionSpec) -> str:
    return f"{_term(spec.outcome)} ~ " + " + ".join(_term(p) for p in spec.predictors)


def standardized_coefficients(params: pd.Series, exog: pd.DataFrame, y: pd.Series) -> pd.Series:
    """
    beta_std = b * sd(x) / sd(y) on the design-matrix columns
    (dummy-coded factors included, intercept left undefined).
    """
    sd_y = float(y.std(ddof=1))
    out = {}
    for name, b in params.items():
        if name == "Intercept" or sd_y == 0:
            out[name] = np.nan
            continue
        out[name] = float(b) * float(exog[name].std(ddof=1)) / sd_y
    return pd.Series(out)


class OLSEngine:
    name = "statsmodels-ols"

    def fit(
        self,
        spec: RegressionSpec,
        data: pd.DataFrame,
        config: FitConfig,
        group_col: str | None = None,
        level: ConstraintLevel | None = None,
        label: str | None = None,
    ) -> FittedModel:
        if group_col is not None or level is not None:
            raise ValueError("OLSEngine fits single-group models only.")

        assert_columns_exist(data, spec.variables, "the regression")
        df = data[spec.variables].dropna(axis=0, how="any")
        if df.shape[0] == 0:
            raise ConvergenceFailure(label, "insufficient data: 0 complete rows")

        try:
            model = smf.ols(regression_formula(spec), data=df)
        except Exception as e:
            raise ConvergenceFailure(label, f"{type(e).__name__}: {e}") from e

        n, k = model.exog.shape
        if n <= k:
            raise ConvergenceFailure(label, f"insufficient data: {n} rows for {k} coefficients")
        if np.linalg.matrix_rank(model.exog) < k:
            raise ConvergenceFailure(label, "singular design matrix (a predictor is constant or collinear)")

        res = model.fit()
        if not is_finite(res.rsquared):
            raise ConvergenceFailure(label, "non-finite R-squared (outcome has no variance)")

        exog = pd.DataFrame(model.exog, columns=model.exog_names, index=df.index)
        y = pd.Series(model.endog, index=df.index)
        ci = res.conf_int()
        estimates = pd.DataFrame({
            "term": res.params.index,
            "estimate": res.params.values,
            "se": res.bse.values,
            "t": res.tvalues.values,
            "pvalue": res.pvalues.values,
            "ci_lower": ci[0].values,
            "ci_upper": ci[1].values,
            "std_estimate": standardized_coefficients(res.params, exog, y).reindex(res.params.index).values,
        })

        return FittedModel(
            statistics={
                "nobs": float(res.nobs),
                "r2": float(res.rsquared),
                "adj.r2": float(res.rsquared_adj),
                "fstat": float(res.fvalue),
                "fstat.pvalue": float(res.f_pvalue),
                "aic": float(res.aic),
                "bic": float(res.bic),
                "loglik": float(res.llf),
            },
            estimates=estimates,
            n_obs=int(res.nobs),
            engine=self.name,
            label=label,
        )
