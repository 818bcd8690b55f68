import numpy as np
import pandas as pd
import pytest

from groupfit.core.data_loader import load_table, select_columns
from groupfit.core.validators import group_counts


def test_load_csv_and_recode_missing(tmp_path):
    path = tmp_path / "survey.csv"
    pd.DataFrame({"gender": ["f", "m", "f"], "x": [1.0, -1.0, 99.0], "extra": [0, 0, 0]}).to_csv(path, index=False)

    df = select_columns(load_table(str(path)), ["x", "gender"], missing_codes=[-1, 99])

    assert list(df.columns) == ["x", "gender"]
    assert df["x"].iloc[0] == 1.0
    assert df["x"].iloc[1:].isna().all()
    assert pd.api.types.is_float_dtype(df["x"])


def test_load_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_table(str(tmp_path / "nope.csv"))

    path = tmp_path / "data.txt"
    path.write_text("a,b\n1,2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported"):
        load_table(str(path))


def test_select_columns_reports_missing():
    with pytest.raises(ValueError, match="age"):
        select_columns(pd.DataFrame({"x": [1]}), ["x", "age"])


def test_group_counts():
    counts = group_counts({"a": pd.DataFrame({"x": np.arange(5)}), "b": pd.DataFrame({"x": []})}, min_n=3)
    assert counts.to_dict("records") == [
        {"group": "a", "n": 5, "ok": True},
        {"group": "b", "n": 0, "ok": False},
    ]
