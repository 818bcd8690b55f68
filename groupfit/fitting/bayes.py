from __future__ import annotations

import numpy as np
import pandas as pd

from groupfit.core.config import FitConfig
from groupfit.core.errors import ConvergenceFailure
from groupfit.fitting.engine import ConstraintLevel, FittedModel, RegressionSpec
from groupfit.utils.validation import assert_columns_exist


def design_matrix(df: pd.DataFrame, predictors: list[str]) -> pd.DataFrame:
    """Numeric predictors as-is; categorical ones dummy-coded against their first level."""
    parts = []
    for p in predictors:
        s = df[p]
        if pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s):
            parts.append(s.astype(float).rename(p))
        else:
            d = pd.get_dummies(s.astype("category"), prefix=p, prefix_sep="[", drop_first=True, dtype=float)
            d.columns = [f"{c}]" for c in d.columns]
            parts.append(d)
    return pd.concat(parts, axis=1)


def bayes_r2(mu: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Gelman et al. (2019) R-squared per posterior draw: var(fit) / (var(fit) + sigma^2)."""
    var_fit = mu.var(axis=-1, ddof=1)
    return var_fit / (var_fit + sigma ** 2)


def rope_share(draws: np.ndarray, low: float, high: float) -> float:
    """Share of posterior draws inside the region of practical equivalence."""
    draws = np.asarray(draws, dtype=float).ravel()
    if draws.size == 0:
        return float("nan")
    return float(np.mean((draws >= low) & (draws <= high)))


class BayesEngine:
    """
    Bayesian linear regression with weakly-informative, data-scaled priors
    (rstanarm-style autoscaling), sampled with PyMC's NUTS.
    """
    name = "pymc"

    def fit(
        self,
        spec: RegressionSpec,
        data: pd.DataFrame,
        config: FitConfig,
        group_col: str | None = None,
        level: ConstraintLevel | None = None,
        label: str | None = None,
    ) -> FittedModel:
        import pymc as pm
        import arviz as az

        if group_col is not None or level is not None:
            raise ValueError("BayesEngine fits single-group models only.")

        assert_columns_exist(data, spec.variables, "the regression")
        bcfg = config.bayes
        df = data[spec.variables].dropna(axis=0, how="any")
        X = design_matrix(df, list(spec.predictors))
        y = pd.to_numeric(df[spec.outcome], errors="coerce").to_numpy(dtype=float)

        N, K = X.shape
        if N < K + 2:
            raise ConvergenceFailure(label, f"insufficient data: {N} rows for {K} coefficients")

        sd_y = float(np.std(y, ddof=1))
        sd_x = X.std(ddof=1).to_numpy(dtype=float)
        if sd_y == 0 or np.any(sd_x == 0):
            raise ConvergenceFailure(label, "outcome or predictor has no variance")

        terms = list(X.columns)
        with pm.Model(coords={"term": terms}):
            intercept = pm.Normal("intercept", mu=float(np.mean(y)), sigma=2.5 * sd_y)
            beta = pm.Normal("beta", mu=0.0, sigma=2.5 * sd_y / sd_x, dims="term")
            sigma = pm.Exponential("sigma", lam=1.0 / sd_y)
            mu = intercept + pm.math.dot(X.to_numpy(dtype=float), beta)
            pm.Normal("y", mu=mu, sigma=sigma, observed=y)

            try:
                idata = pm.sample(
                    draws=bcfg.draws,
                    tune=bcfg.tune,
                    chains=bcfg.chains,
                    target_accept=bcfg.target_accept,
                    random_seed=bcfg.seed,
                    progressbar=False,
                )
            except Exception as e:
                raise ConvergenceFailure(label, f"{type(e).__name__}: {e}") from e

        post = idata.posterior
        rhat = az.rhat(idata)
        ess = az.ess(idata)
        max_rhat = float(max(float(rhat[v].max()) for v in ("intercept", "beta", "sigma")))
        min_ess = float(min(float(ess[v].min()) for v in ("intercept", "beta", "sigma")))
        if not np.isfinite(max_rhat) or max_rhat > bcfg.rhat_max:
            raise ConvergenceFailure(label, f"R-hat {max_rhat:.3f} exceeds {bcfg.rhat_max}")

        beta_draws = post["beta"].stack(sample=("chain", "draw")).transpose("sample", "term").values
        a_draws = post["intercept"].stack(sample=("chain", "draw")).values
        s_draws = post["sigma"].stack(sample=("chain", "draw")).values
        fitted = a_draws[:, None] + beta_draws @ X.to_numpy(dtype=float).T
        r2 = float(np.median(bayes_r2(fitted, s_draws)))

        half = bcfg.rope_sd * sd_y
        rows = []
        for j, t in enumerate(["Intercept", *terms]):
            d = a_draws if j == 0 else beta_draws[:, j - 1]
            lo, hi = az.hdi(d, hdi_prob=bcfg.hdi_prob)
            rows.append({
                "term": t,
                "estimate": float(np.mean(d)),
                "sd": float(np.std(d, ddof=1)),
                "hdi_lower": float(lo),
                "hdi_upper": float(hi),
                "pd": float(max(np.mean(d > 0), np.mean(d < 0))),
                "rope_share": rope_share(d, -half, half) if j > 0 else np.nan,
                "rhat": float(rhat["intercept"]) if j == 0 else float(rhat["beta"].sel(term=t)),
                "ess": float(ess["intercept"]) if j == 0 else float(ess["beta"].sel(term=t)),
            })

        return FittedModel(
            statistics={
                "nobs": float(N),
                "r2": r2,
                "max_rhat": max_rhat,
                "min_ess": min_ess,
            },
            estimates=pd.DataFrame(rows),
            n_obs=int(N),
            engine=self.name,
            label=label,
        )
