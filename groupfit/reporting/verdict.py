from __future__ import annotations

import pandas as pd

from groupfit.aggregate.table import ComparisonTable
from groupfit.core.config import InvarianceCriteria

# float noise around the cut-off (0.97 - 0.98 is not exactly -0.01)
_TOL = 1e-9


def invariance_steps(table: ComparisonTable, criteria: InvarianceCriteria = InvarianceCriteria()) -> pd.DataFrame:
    """
    One row per step after the first: the deltas and whether the step
    holds. A drop in CFI larger than `max_delta_cfi` means non-invariance;
    an RMSEA increase is judged only when `max_delta_rmsea` is set and
    the table carries `delta_rmsea`.
    """
    rows = []
    for r in table.records[1:]:
        d_cfi = table.delta(r.label, "delta_cfi")
        d_rmsea = table.delta(r.label, "delta_rmsea")
        holds = d_cfi is not None and -d_cfi <= criteria.max_delta_cfi + _TOL
        if criteria.max_delta_rmsea is not None and d_rmsea is not None:
            holds = holds and d_rmsea <= criteria.max_delta_rmsea + _TOL
        rows.append({"level": r.label, "delta_cfi": d_cfi, "delta_rmsea": d_rmsea, "holds": bool(holds)})
    return pd.DataFrame(rows, columns=["level", "delta_cfi", "delta_rmsea", "holds"])


def invariance_verdict(table: ComparisonTable, criteria: InvarianceCriteria = InvarianceCriteria()) -> dict:
    """
    Transparent rule-based verdict.
    Returns dict with: verdict, reason, highest_level, steps
    """
    if len(table) == 0:
        return {"verdict": "NOT_COMPARABLE", "reason": "No invariance models were fitted.",
                "highest_level": None, "steps": invariance_steps(table, criteria)}

    steps = invariance_steps(table, criteria)
    highest = table.records[0].label
    for _, s in steps.iterrows():
        if not s["holds"]:
            break
        highest = s["level"]

    cut = f"ΔCFI ≤ {criteria.max_delta_cfi:.3f}"
    failed = steps[~steps["holds"]]
    first_fail = None if failed.empty else failed.iloc[0]["level"]

    if highest.lower() in ("scalar", "strict"):
        return {"verdict": "COMPARABLE",
                "reason": f"{highest} invariance holds ({cut}); latent means can be compared across groups.",
                "highest_level": highest, "steps": steps}

    if highest.lower() == "metric":
        why = f"{first_fail} step exceeds {cut}" if first_fail else "scalar model not fitted"
        return {"verdict": "CAUTION",
                "reason": f"Metric invariance only ({why}); compare relationships, not means.",
                "highest_level": highest, "steps": steps}

    why = f"{first_fail} step exceeds {cut}" if first_fail else "no constrained model fitted"
    return {"verdict": "NOT_COMPARABLE",
            "reason": f"Configural invariance only ({why}). Group comparisons may be biased.",
            "highest_level": highest, "steps": steps}
