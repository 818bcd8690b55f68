import os

import pandas as pd

import run as pipeline
from groupfit.core.config import config_from_dict


def _config(tmp_path, df, **extra):
    path = tmp_path / "survey.csv"
    df.to_csv(path, index=False)
    raw = {
        "data": {"path": str(path)},
        "run": {"outdir": str(tmp_path / "out"), "tag": "t"},
    }
    raw.update(extra)
    return config_from_dict(raw)


def test_regression_by_group(tmp_path, survey_df):
    cfg = _config(
        tmp_path, survey_df,
        model={"kind": "ols", "outcome": "y", "predictors": ["x", "z"]},
        groups={"columns": ["gender"]},
        statistics=["nobs", "r2", "adj.r2"],
    )
    out = pipeline.run(cfg)

    assert out["batch"].n_ok == 2
    assert out["verdict"] is None
    tables = out["tables_dir"]
    fit = pd.read_csv(os.path.join(tables, "t_fit_by_group.csv"))
    assert list(fit.columns) == ["group", "nobs", "r2", "adj.r2"]
    assert list(fit["group"]) == ["female", "male"]
    assert fit["nobs"].sum() == len(survey_df)
    for name in ("t_group_counts.csv", "t_fit_by_group_wide.csv", "t_fit_status.csv", "t_estimates_01_female.csv"):
        assert os.path.exists(os.path.join(tables, name))
    assert os.path.exists(out["report"])


def test_invariance_run_writes_verdict(tmp_path, survey_df, make_engine, monkeypatch):
    stats = {
        "Configural": {"chisq": 20.0, "df": 8.0, "cfi": 0.980, "rmsea": 0.04},
        "Metric": {"chisq": 25.0, "df": 11.0, "cfi": 0.975, "rmsea": 0.04},
        "Scalar": {"chisq": 60.0, "df": 14.0, "cfi": 0.940, "rmsea": 0.07},
    }
    monkeypatch.setattr(pipeline, "build_engine", lambda kind: make_engine(stats=stats))
    cfg = _config(
        tmp_path, survey_df,
        model={"kind": "cfa", "factors": {"F": ["x", "z", "y"]}},
        groups={"columns": ["gender"]},
        statistics=["chisq", "df", "cfi", "rmsea"],
        invariance={"enabled": True, "group_col": "gender"},
    )
    out = pipeline.run(cfg)

    assert out["verdict"]["verdict"] == "CAUTION"
    inv = pd.read_csv(os.path.join(out["tables_dir"], "t_invariance.csv"))
    assert list(inv["level"]) == ["Configural", "Metric", "Scalar"]
    assert pd.isna(inv.loc[0, "delta_cfi"])
    with open(out["report"], encoding="utf-8") as f:
        html = f.read()
    assert "Use caution" in html
    lines = pipeline._summary_lines(out)
    assert "✅ Invariance levels fitted: 3 ok, 0 failed, 0 not attempted" in lines


def test_group_names_sharing_a_slug_keep_separate_estimates(tmp_path, survey_df):
    cfg = _config(
        tmp_path, survey_df,
        model={"kind": "ols", "outcome": "y", "predictors": ["x"]},
        groups={"rules": [
            {"name": "a/b", "where": {"gender": "female"}},
            {"name": "a_b", "where": {"gender": "male"}},
        ]},
        statistics=["nobs", "r2"],
    )
    out = pipeline.run(cfg)

    first = pd.read_csv(os.path.join(out["tables_dir"], "t_estimates_01_a_b.csv"))
    second = pd.read_csv(os.path.join(out["tables_dir"], "t_estimates_02_a_b.csv"))
    assert set(first["group"]) == {"a/b"}
    assert set(second["group"]) == {"a_b"}


def test_summary_counts_failed_invariance_levels(tmp_path, survey_df, make_engine, monkeypatch):
    monkeypatch.setattr(pipeline, "build_engine", lambda kind: make_engine(fail={"Metric"}))
    cfg = _config(
        tmp_path, survey_df,
        model={"kind": "cfa", "factors": {"F": ["x", "z", "y"]}},
        groups={"columns": ["gender"]},
        statistics=["chisq", "df", "cfi", "rmsea"],
        invariance={"enabled": True, "group_col": "gender"},
    )
    lines = pipeline._summary_lines(pipeline.run(cfg))

    assert "✅ Groups fitted: 2 ok, 0 failed" in lines
    assert "✅ Invariance levels fitted: 1 ok, 1 failed, 1 not attempted" in lines
