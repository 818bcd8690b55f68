from __future__ import annotations

from typing import Iterable

import pandas as pd


def assert_columns_exist(df: pd.DataFrame, cols: Iterable[str], context: str = "") -> None:
    """Raise a ValueError naming every requested column absent from `df`."""
    missing = [c for c in dict.fromkeys(cols) if c not in df.columns]
    if missing:
        where = f" (needed for {context})" if context else ""
        raise ValueError(f"Missing required columns{where}: {missing}")
