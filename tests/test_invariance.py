import pandas as pd
import pytest

from groupfit.core.config import FitConfig, InvarianceCriteria
from groupfit.core.errors import ConvergenceFailure, InvalidTransition
from groupfit.fitting.engine import CFASpec, ConstraintLevel
from groupfit.fitting.invariance import InvarianceSequence, parse_levels, run_invariance
from groupfit.fitting.runner import FitFailure
from groupfit.reporting.verdict import invariance_steps, invariance_verdict

SPEC = CFASpec({"F": ["a", "b", "c", "d"]})
STATS = ["chisq", "df", "cfi", "rmsea"]


def _data():
    return pd.DataFrame({
        "grp": ["x"] * 5 + ["y"] * 5,
        "a": range(10), "b": range(10), "c": range(10), "d": range(10),
    }, dtype=object)


def _stats(cfi, chisq, df, rmsea=0.05):
    return {"chisq": chisq, "df": df, "cfi": cfi, "rmsea": rmsea}


NESTED = {
    "Configural": _stats(0.980, 20.0, 8.0, 0.040),
    "Metric": _stats(0.975, 25.0, 11.0, 0.042),
    "Scalar": _stats(0.968, 33.0, 14.0, 0.047),
}


def test_nested_levels_with_deltas(make_engine):
    engine = make_engine(stats=NESTED)
    result = run_invariance(engine, SPEC, _data(), "grp", FitConfig(), STATS)

    assert engine.calls == ["Configural", "Metric", "Scalar"]
    assert result.complete
    table = result.table
    assert table.labels == ("Configural", "Metric", "Scalar")
    assert table.delta("Configural", "delta_cfi") is None
    assert table.delta("Metric", "delta_cfi") == pytest.approx(-0.005, abs=1e-9)
    assert table.delta("Scalar", "delta_cfi") == pytest.approx(-0.007, abs=1e-9)
    assert table.delta("Metric", "delta_df") == pytest.approx(3.0)
    assert set(result.fits) == set(ConstraintLevel) - {ConstraintLevel.STRICT}


def test_engine_receives_level_and_group_column():
    seen = []

    class Recorder:
        name = "rec"

        def fit(self, spec, data, config, group_col=None, level=None, label=None):
            from groupfit.fitting.engine import FittedModel
            seen.append((group_col, level))
            return FittedModel(statistics=NESTED[label], label=label, level=level)

    run_invariance(Recorder(), SPEC, _data(), "grp", FitConfig(), STATS)
    assert seen == [
        ("grp", ConstraintLevel.CONFIGURAL),
        ("grp", ConstraintLevel.METRIC),
        ("grp", ConstraintLevel.SCALAR),
    ]


def test_failed_level_stops_the_sequence(make_engine):
    engine = make_engine(stats=NESTED, fail={"Metric"})
    result = run_invariance(engine, SPEC, _data(), "grp", FitConfig(), STATS)

    assert engine.calls == ["Configural", "Metric"]
    assert not result.complete
    assert result.table.labels == ("Configural",)
    kinds = [(f.label, f.kind) for f in result.failures]
    assert kinds == [("Metric", "ConvergenceFailure"), ("Scalar", "NotAttempted")]


def test_sequence_rejects_skipping_and_repeating(make_engine):
    seq = InvarianceSequence(make_engine(stats=NESTED), SPEC, _data(), "grp", FitConfig(), STATS)
    assert seq.state_name == "Unfit"

    with pytest.raises(InvalidTransition):
        seq.advance("metric")
    seq.advance("configural")
    with pytest.raises(InvalidTransition):
        seq.advance("configural")
    with pytest.raises(InvalidTransition):
        seq.advance("scalar")

    seq.advance()
    seq.advance()
    assert seq.state is ConstraintLevel.SCALAR
    assert seq.done
    with pytest.raises(InvalidTransition):
        seq.advance()


def test_failure_leaves_state_unchanged(make_engine):
    seq = InvarianceSequence(make_engine(fail={"Metric"}), SPEC, _data(), "grp", FitConfig(), STATS)
    seq.advance()
    with pytest.raises(ConvergenceFailure):
        seq.advance()
    assert seq.state is ConstraintLevel.CONFIGURAL
    assert seq.next_level is ConstraintLevel.METRIC


def test_strict_level_is_optional(make_engine):
    stats = dict(NESTED, Strict=_stats(0.965, 37.0, 18.0))
    engine = make_engine(stats=stats)
    result = run_invariance(
        engine, SPEC, _data(), "grp", FitConfig(), STATS,
        levels=["configural", "metric", "scalar", "strict"],
    )
    assert result.table.labels[-1] == "Strict"
    assert invariance_verdict(result.table)["verdict"] == "COMPARABLE"


@pytest.mark.parametrize("levels", [[], ["metric", "scalar"], ["configural", "scalar"], ["configural", "bogus"]])
def test_parse_levels_errors(levels):
    with pytest.raises(ValueError):
        parse_levels(levels)


def test_unknown_group_column(make_engine):
    with pytest.raises(ValueError, match="not found"):
        InvarianceSequence(make_engine(), SPEC, _data(), "nope", FitConfig(), STATS)


def test_delta_statistics_must_be_extracted(make_engine):
    with pytest.raises(ValueError):
        run_invariance(make_engine(), SPEC, _data(), "grp", FitConfig(), ["cfi"], delta_statistics=["rmsea"])


def test_verdict_when_both_steps_hold(make_engine):
    result = run_invariance(make_engine(stats=NESTED), SPEC, _data(), "grp", FitConfig(), STATS)
    out = invariance_verdict(result.table)

    assert out["verdict"] == "COMPARABLE"
    assert out["highest_level"] == "Scalar"
    assert list(out["steps"]["holds"]) == [True, True]


def test_verdict_metric_only(make_engine):
    stats = dict(NESTED, Scalar=_stats(0.950, 60.0, 14.0))
    result = run_invariance(make_engine(stats=stats), SPEC, _data(), "grp", FitConfig(), STATS)
    out = invariance_verdict(result.table)

    assert out["verdict"] == "CAUTION"
    assert out["highest_level"] == "Metric"
    assert "Scalar" in out["reason"]


def test_verdict_configural_only_after_failure(make_engine):
    result = run_invariance(make_engine(stats=NESTED, fail={"Metric"}), SPEC, _data(), "grp", FitConfig(), STATS)
    assert invariance_verdict(result.table)["verdict"] == "NOT_COMPARABLE"


def test_cutoff_is_injectable(make_engine):
    result = run_invariance(make_engine(stats=NESTED), SPEC, _data(), "grp", FitConfig(), STATS)

    strict = invariance_verdict(result.table, InvarianceCriteria(max_delta_cfi=0.006))
    assert strict["verdict"] == "CAUTION"

    result = run_invariance(
        make_engine(stats=NESTED), SPEC, _data(), "grp", FitConfig(), STATS, delta_statistics=("cfi", "rmsea")
    )
    steps = invariance_steps(result.table, InvarianceCriteria(max_delta_cfi=0.010, max_delta_rmsea=0.004))
    assert list(steps["holds"]) == [True, False]


def test_drop_of_exactly_the_cutoff_holds():
    from groupfit.aggregate.table import build_table, with_deltas
    from groupfit.extract.statistics import FitRecord

    table = with_deltas(build_table([FitRecord("Configural", {"cfi": 0.98}), FitRecord("Metric", {"cfi": 0.97})], key="level"))
    assert invariance_steps(table)["holds"].tolist() == [True]


def test_non_finite_level_statistic_stops_the_sequence(make_engine):
    stats = dict(NESTED, Metric=_stats(0.975, 25.0, 11.0, float("nan")))
    result = run_invariance(make_engine(stats=stats), SPEC, _data(), "grp", FitConfig(), STATS)

    assert result.table.labels == ("Configural",)
    kinds = [(f.label, f.kind) for f in result.failures]
    assert kinds == [("Metric", "ConvergenceFailure"), ("Scalar", "NotAttempted")]
