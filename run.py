from __future__ import annotations

import argparse
import logging
import os

import pandas as pd

# ---------- CORE ----------
from groupfit.core.config import RunConfig, ModelConfig, load_config
from groupfit.core.data_loader import load_table, select_columns
from groupfit.core.validators import group_counts

# ---------- GROUPS ----------
from groupfit.groups.partition import GroupRule, make_age_band, partition, rules_from_columns

# ---------- FITTING ----------
from groupfit.fitting.engine import CFASpec, RegressionSpec
from groupfit.fitting.sem import SemEngine
from groupfit.fitting.regression import OLSEngine
from groupfit.fitting.bayes import BayesEngine
from groupfit.fitting.runner import fit_groups
from groupfit.fitting.invariance import run_invariance

# ---------- TABLES ----------
from groupfit.extract.statistics import BAYES_STATISTICS, REGRESSION_STATISTICS, SEM_STATISTICS
from groupfit.aggregate.table import build_table, pivot_wide

# ---------- REPORTING ----------
from groupfit.reporting.formatting import format_table
from groupfit.reporting.verdict import invariance_verdict
from groupfit.reporting.report_html import write_report_html

log = logging.getLogger("groupfit")

DEFAULT_STATISTICS = {"cfa": SEM_STATISTICS, "ols": REGRESSION_STATISTICS, "bayes": BAYES_STATISTICS}


def parse_args():
    p = argparse.ArgumentParser(description="Multi-group model fitting and comparison")
    p.add_argument("--config", default="configs/config.yaml", help="Path to YAML config")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args()


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def build_spec(model: ModelConfig):
    if model.kind == "cfa":
        return CFASpec(factors=model.factors, ordered=model.ordered)
    return RegressionSpec(outcome=model.outcome, predictors=model.predictors)


def build_engine(kind: str):
    return {"cfa": SemEngine, "ols": OLSEngine, "bayes": BayesEngine}[kind]()


def build_groups(df: pd.DataFrame, cfg: RunConfig) -> dict[str, pd.DataFrame]:
    if cfg.groups.rules:
        rules = [GroupRule(name=name, where=where) for name, where in cfg.groups.rules]
    elif cfg.groups.columns:
        rules = rules_from_columns(df, cfg.groups.columns)
    else:
        rules = [GroupRule(name="all")]
    return partition(df, rules)


def run(cfg: RunConfig) -> dict:
    # =========================
    # 1) Prepare folders
    # =========================
    tables_dir = os.path.join(cfg.outdir, "tables")
    reports_dir = os.path.join(cfg.outdir, "reports")
    _ensure_dir(tables_dir)
    _ensure_dir(reports_dir)
    tag = cfg.tag

    # =========================
    # 2) Load data + preprocessing
    # =========================
    df = load_table(cfg.data.path, fmt=cfg.data.format)
    if cfg.groups.age_band:
        df = make_age_band(df)

    spec = build_spec(cfg.model)
    required = list(spec.variables) + list(cfg.data.columns) + list(cfg.groups.columns)
    for _, where in cfg.groups.rules:
        required.extend(where)
    if cfg.invariance.enabled:
        required.append(cfg.invariance.group_col)
    df = select_columns(df, list(dict.fromkeys(required)), cfg.data.missing_codes)

    engine = build_engine(cfg.model.kind)
    statistics = cfg.statistics or DEFAULT_STATISTICS[cfg.model.kind]
    fmt = dict(labels=cfg.report.labels, decimals=cfg.report.decimals,
               p_floor=cfg.report.p_floor, default_decimals=cfg.report.default_decimals)

    # =========================
    # A) Per-group fits
    # =========================
    groups = build_groups(df, cfg)
    group_counts(groups, cfg.fit.min_group_n).to_csv(os.path.join(tables_dir, f"{tag}_group_counts.csv"), index=False)

    batch = fit_groups(engine, spec, groups, cfg.fit, statistics)
    group_table = build_table(batch.records, key="group")
    group_df = group_table.to_frame()
    group_df.to_csv(os.path.join(tables_dir, f"{tag}_fit_by_group.csv"), index=False)
    pivot_wide(group_table).to_csv(os.path.join(tables_dir, f"{tag}_fit_by_group_wide.csv"))
    batch.summary().to_csv(os.path.join(tables_dir, f"{tag}_fit_status.csv"), index=False)

    # numbered by group position: distinct names can share a slug
    for i, name in enumerate(groups, start=1):
        fitted = batch.fits.get(name)
        if fitted is None:
            continue
        est = fitted.estimates.copy()
        est.insert(0, "group", name)
        est.to_csv(os.path.join(tables_dir, f"{tag}_estimates_{i:02d}_{_slug(name)}.csv"), index=False)

    # =========================
    # B) Measurement invariance
    # =========================
    inv = None
    verdict = None
    if cfg.invariance.enabled:
        if cfg.model.kind != "cfa":
            raise ValueError("Invariance testing requires model.kind 'cfa'.")
        inv = run_invariance(
            engine, spec, df, cfg.invariance.group_col, cfg.fit, statistics,
            levels=cfg.invariance.levels, delta_statistics=cfg.invariance.delta_statistics,
        )
        inv.table.to_frame().to_csv(os.path.join(tables_dir, f"{tag}_invariance.csv"), index=False)
        verdict = invariance_verdict(inv.table, cfg.invariance.criteria)
        verdict["steps"].to_csv(os.path.join(tables_dir, f"{tag}_invariance_steps.csv"), index=False)

    # =========================
    # C) Report
    # =========================
    failures = batch.summary()
    failures = failures[failures["status"] == "failed"]
    if inv is not None and inv.failures:
        inv_fail = pd.DataFrame([{"group": f.label, "status": "failed", "kind": f.kind, "message": f.message}
                                 for f in inv.failures])
        failures = pd.concat([failures, inv_fail], ignore_index=True)

    report_path = os.path.join(reports_dir, f"{tag}_report.html")
    write_report_html(
        out_path=report_path,
        tag=tag,
        engine=engine.name,
        model_syntax=spec.describe(),
        n_groups=len(groups),
        n_ok=batch.n_ok,
        group_fit_df=format_table(group_df, **fmt),
        invariance_df=format_table(inv.table.to_frame(), **fmt) if inv is not None else None,
        failures_df=failures,
        verdict=verdict,
        group_col=cfg.invariance.group_col,
    )

    return {"batch": batch, "table": group_table, "invariance": inv, "verdict": verdict,
            "tables_dir": tables_dir, "report": report_path}


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() else "_" for c in str(name)).strip("_") or "group"


def _summary_lines(out: dict) -> list[str]:
    batch = out["batch"]
    lines = ["✅ Run complete.", f"✅ Groups fitted: {batch.n_ok} ok, {batch.n_failed} failed"]
    inv = out["invariance"]
    if inv is not None:
        failed = sum(f.kind != "NotAttempted" for f in inv.failures)
        skipped = len(inv.failures) - failed
        lines.append(f"✅ Invariance levels fitted: {len(inv.table)} ok, {failed} failed, {skipped} not attempted")
    if out["verdict"] is not None:
        lines.append(f"✅ Invariance: {out['verdict']['verdict']} ({out['verdict']['reason']})")
    lines.append(f"✅ Tables written to:  {out['tables_dir']}")
    lines.append(f"✅ Report written to:  {out['report']}")
    return lines


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config(args.config)
    out = run(cfg)

    for line in _summary_lines(out):
        print(line)


if __name__ == "__main__":
    main()
