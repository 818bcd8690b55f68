"""
Normal-theory ML fit statistics for one or more groups, computed from
sample moments and model-implied moments. Conventions follow lavaan:
biased (divide-by-N) sample covariances, chi-square = sum_g N_g * F_g,
independence baseline with free means and variances, multi-group RMSEA
scaled by sqrt(G).
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import optimize
from scipy import stats as scipy_stats


@dataclass(frozen=True)
class Moments:
    n: int
    cov: np.ndarray
    mean: np.ndarray | None = None


def sample_moments(df: pd.DataFrame, meanstructure: bool = True) -> Moments:
    X = df.to_numpy(dtype=float)
    if X.shape[0] < 2:
        raise ValueError("Need at least 2 rows for sample moments.")
    cov = np.atleast_2d(np.cov(X, rowvar=False, bias=True))
    mean = X.mean(axis=0) if meanstructure else None
    return Moments(n=int(X.shape[0]), cov=cov, mean=mean)


def ml_discrepancy(sample: Moments, sigma: np.ndarray, mu: np.ndarray | None = None) -> float:
    """F_ML = log|Sigma| + tr(S Sigma^-1) - log|S| - p (+ mean term)."""
    S = sample.cov
    p = S.shape[0]
    sign_sigma, logdet_sigma = np.linalg.slogdet(sigma)
    sign_s, logdet_s = np.linalg.slogdet(S)
    if sign_sigma <= 0:
        raise np.linalg.LinAlgError("Model-implied covariance matrix is not positive definite.")
    if sign_s <= 0:
        raise np.linalg.LinAlgError("Sample covariance matrix is singular.")

    inv = np.linalg.inv(sigma)
    f = logdet_sigma + np.trace(S @ inv) - logdet_s - p
    if mu is not None and sample.mean is not None:
        d = sample.mean - mu
        f += float(d @ inv @ d)
    return float(max(f, 0.0))


def rmsea_ci(chisq: float, df: float, n: int, n_groups: int, level: float = 0.90) -> tuple[float, float]:
    """Confidence bounds by inverting the noncentral chi-square in lambda."""
    if df <= 0:
        return float("nan"), float("nan")

    lo_target = 1.0 - (1.0 - level) / 2.0
    hi_target = (1.0 - level) / 2.0

    def solve(target: float) -> float:
        if scipy_stats.chi2.cdf(chisq, df) < target:
            return 0.0

        def g(lam):
            return scipy_stats.ncx2.cdf(chisq, df, lam) - target

        upper = max(chisq, 1.0)
        while g(upper) > 0:
            upper *= 2.0
        return float(optimize.brentq(g, 1e-10, upper))

    scale = np.sqrt(n_groups)
    lam_lo = solve(lo_target)
    lam_hi = solve(hi_target)
    return (
        float(np.sqrt(lam_lo / (n * df)) * scale),
        float(np.sqrt(lam_hi / (n * df)) * scale),
    )


def fit_statistics(
    samples: list[Moments],
    implied: list[tuple[np.ndarray, np.ndarray | None]],
    n_free: int,
) -> dict[str, float]:
    """
    Chi-square test, baseline comparison (CFI/TLI) and RMSEA with 90% CI.
    `implied` holds (Sigma, mu) per group in the order of `samples`.
    """
    if len(samples) != len(implied) or not samples:
        raise ValueError("samples and implied moments must be non-empty and aligned.")

    G = len(samples)
    p = samples[0].cov.shape[0]
    meanstructure = samples[0].mean is not None
    N = int(sum(s.n for s in samples))

    chisq = float(sum(s.n * ml_discrepancy(s, sig, mu) for s, (sig, mu) in zip(samples, implied)))
    n_moments = G * (p * (p + 1) // 2 + (p if meanstructure else 0))
    df = float(n_moments - n_free)

    chisq_b = 0.0
    for s in samples:
        _, logdet_s = np.linalg.slogdet(s.cov)
        chisq_b += s.n * (float(np.sum(np.log(np.diag(s.cov)))) - logdet_s)
    df_b = float(G * p * (p - 1) // 2)

    pvalue = float(scipy_stats.chi2.sf(chisq, df)) if df > 0 else float("nan")

    d_model = max(chisq - df, 0.0)
    d_base = max(chisq_b - df_b, d_model)
    cfi = 1.0 - d_model / d_base if d_base > 0 else 1.0

    if df > 0 and df_b > 0 and chisq_b / df_b != 1.0:
        tli = ((chisq_b / df_b) - (chisq / df)) / ((chisq_b / df_b) - 1.0)
    else:
        tli = float("nan") if df <= 0 else 1.0

    if df > 0:
        rmsea = float(np.sqrt(max((chisq / N) / df - 1.0 / N, 0.0)) * np.sqrt(G))
    else:
        rmsea = 0.0
    ci_lo, ci_hi = rmsea_ci(chisq, df, N, G)

    return {
        "chisq": chisq,
        "df": df,
        "pvalue": pvalue,
        "cfi": float(cfi),
        "tli": float(tli),
        "rmsea": rmsea,
        "rmsea.ci.lower": ci_lo,
        "rmsea.ci.upper": ci_hi,
        "baseline.chisq": float(chisq_b),
        "baseline.df": df_b,
        "nobs": float(N),
    }
