from __future__ import annotations
import os
from typing import Any, Sequence

import numpy as np
import pandas as pd

from groupfit.utils.validation import assert_columns_exist


def load_table(path: str, fmt: str = "auto") -> pd.DataFrame:
    """
    Load CSV, Parquet or Excel from disk.
    fmt: auto | csv | parquet | excel
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Data file not found: {path}")

    if fmt == "auto":
        ext = os.path.splitext(path)[1].lower()
        if ext == ".csv":
            fmt = "csv"
        elif ext in [".parquet", ".pq"]:
            fmt = "parquet"
        elif ext in [".xlsx", ".xls"]:
            fmt = "excel"
        else:
            raise ValueError(f"Unsupported file extension: {ext} (use .csv, .parquet or .xlsx)")

    if fmt == "csv":
        return pd.read_csv(path)
    if fmt == "parquet":
        return pd.read_parquet(path)
    if fmt == "excel":
        return pd.read_excel(path)

    raise ValueError(f"Unknown format: {fmt}")


def select_columns(
    df: pd.DataFrame,
    columns: Sequence[str],
    missing_codes: Sequence[Any] = (),
) -> pd.DataFrame:
    """
    Return a copy holding only `columns`, with survey missing codes
    (e.g. -1, 99) replaced by NA.
    """
    if not columns:
        return df.copy()

    assert_columns_exist(df, columns, "the configured model and groups")

    out = df[list(dict.fromkeys(columns))].copy()
    if missing_codes:
        out = out.replace(list(missing_codes), np.nan)
    return out
