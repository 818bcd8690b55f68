import numpy as np
import pandas as pd
import pytest

from groupfit.core.errors import ConvergenceFailure
from groupfit.fitting.engine import CFASpec, ConstraintLevel
from groupfit.fitting.fit_indices import fit_statistics, ml_discrepancy, rmsea_ci, sample_moments
from groupfit.fitting.sem import _stats_row, implied_moments, multigroup_syntax, single_group_syntax


def _correlated(n, seed):
    rng = np.random.default_rng(seed)
    f = rng.normal(size=n)
    return pd.DataFrame({x: 0.8 * f + rng.normal(scale=0.6, size=n) for x in "abcd"})


def test_sample_moments_use_biased_covariance():
    df = pd.DataFrame({"a": [1.0, 2.0, 3.0, 4.0], "b": [2.0, 1.0, 4.0, 3.0]})
    m = sample_moments(df)
    assert m.n == 4
    assert m.cov[0, 0] == pytest.approx(1.25)
    assert np.allclose(m.mean, [2.5, 2.5])


def test_discrepancy_is_zero_at_sample_moments():
    m = sample_moments(_correlated(100, 1))
    assert ml_discrepancy(m, m.cov, m.mean) == pytest.approx(0.0, abs=1e-10)


def test_saturated_model_fits_perfectly():
    samples = [sample_moments(_correlated(150, 1)), sample_moments(_correlated(120, 2))]
    implied = [(s.cov, s.mean) for s in samples]
    # one free parameter fewer than the number of moments keeps df positive
    out = fit_statistics(samples, implied, n_free=27)

    assert out["df"] == 1.0
    assert out["chisq"] == pytest.approx(0.0, abs=1e-8)
    assert out["cfi"] == pytest.approx(1.0)
    assert out["rmsea"] == pytest.approx(0.0)
    assert out["rmsea.ci.lower"] == pytest.approx(0.0)
    assert out["nobs"] == 270.0


def test_independence_model_has_zero_cfi():
    samples = [sample_moments(_correlated(200, 3)), sample_moments(_correlated(200, 4))]
    implied = [(np.diag(np.diag(s.cov)), s.mean) for s in samples]
    # free means and variances: 2 * p per group
    out = fit_statistics(samples, implied, n_free=16)

    assert out["df"] == out["baseline.df"] == 12.0
    assert out["chisq"] == pytest.approx(out["baseline.chisq"])
    assert out["cfi"] == pytest.approx(0.0, abs=1e-9)
    assert out["rmsea.ci.lower"] <= out["rmsea"] <= out["rmsea.ci.upper"]


def test_misaligned_inputs_rejected():
    s = sample_moments(_correlated(50, 5))
    with pytest.raises(ValueError):
        fit_statistics([s], [], n_free=1)


SPEC = CFASpec({"F": ["a", "b", "c", "d"]})


@pytest.mark.parametrize("identification", ["marker", "std.lv"])
@pytest.mark.parametrize(
    "level, df",
    [
        (ConstraintLevel.CONFIGURAL, 4),
        (ConstraintLevel.METRIC, 7),
        (ConstraintLevel.SCALAR, 10),
        (ConstraintLevel.STRICT, 14),
    ],
)
def test_degrees_of_freedom_per_level(level, df, identification):
    _, n_free = multigroup_syntax(SPEC, 2, level, identification)
    n_moments = 2 * (4 * 5 // 2 + 4)
    assert n_moments - n_free == df


def test_shared_labels_express_equality():
    configural, _ = multigroup_syntax(SPEC, 2, ConstraintLevel.CONFIGURAL)
    metric, _ = multigroup_syntax(SPEC, 2, ConstraintLevel.METRIC)
    scalar, _ = multigroup_syntax(SPEC, 2, ConstraintLevel.SCALAR)

    assert "l_F_b_g1*b__g1" in configural and "l_F_b_g2*b__g2" in configural
    assert "l_F_b*b__g1" in metric and "l_F_b*b__g2" in metric
    assert "n_a_g2*1" in metric
    assert "a__g2 ~ n_a*1" in scalar
    assert "F__g2 ~ m_F_g2*1" in scalar
    assert "start 0.0: m_F_g2" in scalar
    assert "m_F_g2" not in metric
    assert "F__g1 ~~ 0*F__g2" in configural


def test_single_group_syntax():
    assert single_group_syntax(SPEC) == "F =~ a + b + c + d"
    assert "F ~~ 1*F" in single_group_syntax(SPEC, "std.lv")


def test_implied_moments_from_estimates():
    spec = CFASpec({"F": ["a", "b"]})
    est = {
        ("b__g1", "~", "F__g1"): 0.8,
        ("F__g1", "~~", "F__g1"): 2.0,
        ("a__g1", "~~", "a__g1"): 0.5,
        ("b__g1", "~~", "b__g1"): 0.4,
        ("a__g1", "~", "1"): 1.0,
        ("b__g1", "~", "1"): 2.0,
    }
    sigma, mu = implied_moments(est, spec, 1)

    assert np.allclose(sigma, [[2.5, 1.6], [1.6, 1.68]])
    assert np.allclose(mu, [1.0, 2.0])


def test_implied_moments_missing_parameter():
    spec = CFASpec({"F": ["a", "b"]})
    with pytest.raises(ConvergenceFailure):
        implied_moments({}, spec, 1, label="Configural")


def test_stats_row_maps_names_in_either_orientation():
    wide = pd.DataFrame({"DoF": [5.0], "chi2": [12.3], "CFI": [0.97], "RMSEA": [0.05], "Other": [1.0]}, index=["Value"])
    expected = {"df": 5.0, "chisq": 12.3, "cfi": 0.97, "rmsea": 0.05}
    assert _stats_row(wide) == expected
    assert _stats_row(wide.T) == expected


def test_stats_row_keeps_undefined_values():
    row = pd.DataFrame({"DoF": [0.0], "chi2": [0.0], "RMSEA": [np.inf], "chi2 p-value": [np.nan]}, index=["Value"])
    values = _stats_row(row)
    assert values["df"] == 0.0
    assert np.isinf(values["rmsea"])
    assert np.isnan(values["pvalue"])


def test_rmsea_interval_brackets_the_point_estimate():
    lower, upper = rmsea_ci(30.0, 10.0, 200, 1)
    point = np.sqrt(max(30.0 - 10.0, 0.0) / (10.0 * 200))
    assert 0.0 <= lower < point < upper
    assert rmsea_ci(2.0, 10.0, 200, 1)[0] == 0.0
