import time

import numpy as np
import pandas as pd
import pytest

from groupfit.core.errors import ConvergenceFailure
from groupfit.fitting.engine import FittedModel


class StubEngine:
    """Returns canned statistics per label; records every call."""
    name = "stub"

    def __init__(self, stats=None, fail=(), delay=0.0, min_rows=1):
        self.stats = stats or {}
        self.fail = set(fail)
        self.delay = delay
        self.min_rows = min_rows
        self.calls = []

    def fit(self, spec, data, config, group_col=None, level=None, label=None):
        self.calls.append(label)
        if self.delay:
            time.sleep(self.delay)
        if label in self.fail:
            raise ConvergenceFailure(label, "stub failure")
        if data.shape[0] < self.min_rows:
            raise ConvergenceFailure(label, f"insufficient data: {data.shape[0]} rows")
        return FittedModel(
            statistics=dict(self.stats.get(label, {"chisq": 10.0, "df": 5.0, "cfi": 0.95, "rmsea": 0.05})),
            n_obs=int(data.shape[0]),
            engine=self.name,
            label=label,
            level=level,
        )


@pytest.fixture
def make_engine():
    return StubEngine


@pytest.fixture
def survey_df():
    rng = np.random.default_rng(7)
    n = 240
    df = pd.DataFrame({
        "race": rng.choice(["asian", "black", "white"], size=n),
        "gender": rng.choice(["female", "male"], size=n),
        "age": rng.integers(16, 80, size=n),
        "x": rng.normal(size=n),
        "z": rng.normal(size=n),
    })
    df["y"] = 1.0 + 2.0 * df["x"] - 0.5 * df["z"] + rng.normal(scale=0.5, size=n)
    return df
