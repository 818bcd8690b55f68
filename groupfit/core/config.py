"""
Run configuration.

Every engine option that would otherwise live in ambient session state
(estimator, identification, solver, sampler settings)
is carried by an explicit frozen `FitConfig` passed to each fit call.
`load_config` reads the YAML file used by `run.py`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

# estimators semopy can fit; robust (scaled) variants are not available
ESTIMATORS = {"ML", "ULS", "GLS", "WLS", "DWLS", "FIML"}
IDENTIFICATIONS = {"marker", "std.lv"}
MODEL_KINDS = {"cfa", "ols", "bayes"}


@dataclass(frozen=True)
class BayesConfig:
    draws: int = 1000
    tune: int = 1000
    chains: int = 2
    target_accept: float = 0.9
    seed: int = 42
    rhat_max: float = 1.01
    hdi_prob: float = 0.95
    # ROPE half-width in standard deviations of the outcome (0.1 SD by convention)
    rope_sd: float = 0.1


@dataclass(frozen=True)
class FitConfig:
    estimator: str = "ML"
    identification: str = "marker"
    solver: str = "SLSQP"
    timeout: float | None = None
    max_workers: int = 1
    min_group_n: int = 1
    bayes: BayesConfig = field(default_factory=BayesConfig)

    def __post_init__(self):
        if self.estimator.upper() not in ESTIMATORS:
            raise ValueError(f"fit.estimator must be one of {sorted(ESTIMATORS)}, got '{self.estimator}'")
        object.__setattr__(self, "estimator", self.estimator.upper())
        if self.identification not in IDENTIFICATIONS:
            raise ValueError(f"fit.identification must be one of {sorted(IDENTIFICATIONS)}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("fit.timeout must be positive when set.")
        if self.max_workers < 1:
            raise ValueError("fit.max_workers must be >= 1.")
        if self.min_group_n < 1:
            raise ValueError("fit.min_group_n must be >= 1.")


@dataclass(frozen=True)
class InvarianceCriteria:
    """Cut-offs applied to the comparison table after fitting, never during."""
    max_delta_cfi: float = 0.010
    max_delta_rmsea: float | None = None


@dataclass(frozen=True)
class DataConfig:
    path: str
    format: str = "auto"
    columns: tuple[str, ...] = ()
    missing_codes: tuple[Any, ...] = ()


@dataclass(frozen=True)
class GroupsConfig:
    columns: tuple[str, ...] = ()
    rules: tuple[tuple[str, Mapping[str, Any]], ...] = ()
    age_band: bool = False


@dataclass(frozen=True)
class ModelConfig:
    kind: str
    factors: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    ordered: tuple[str, ...] = ()
    outcome: str | None = None
    predictors: tuple[str, ...] = ()


@dataclass(frozen=True)
class InvarianceConfig:
    enabled: bool = False
    group_col: str | None = None
    levels: tuple[str, ...] = ("configural", "metric", "scalar")
    delta_statistics: tuple[str, ...] = ("cfi",)
    criteria: InvarianceCriteria = field(default_factory=InvarianceCriteria)


@dataclass(frozen=True)
class ReportConfig:
    decimals: Mapping[str, int] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    p_floor: float = 0.001
    default_decimals: int = 3


@dataclass(frozen=True)
class RunConfig:
    data: DataConfig
    model: ModelConfig
    groups: GroupsConfig = field(default_factory=GroupsConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    statistics: tuple[str, ...] = ()
    invariance: InvarianceConfig = field(default_factory=InvarianceConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    outdir: str = "outputs"
    tag: str = "run"


def _as_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (str, int, float)):
        return (value,)
    return tuple(value)


def _build_model(raw: dict) -> ModelConfig:
    kind = str(raw.get("kind", "")).lower()
    if kind not in MODEL_KINDS:
        raise ValueError(f"model.kind must be one of {sorted(MODEL_KINDS)}, got '{kind}'")

    if kind == "cfa":
        factors = raw.get("factors") or {}
        if not isinstance(factors, dict) or not factors:
            raise ValueError("model.factors must be a non-empty mapping for kind 'cfa'.")
        return ModelConfig(
            kind=kind,
            factors={str(k): tuple(str(v) for v in _as_tuple(vs)) for k, vs in factors.items()},
            ordered=tuple(str(v) for v in _as_tuple(raw.get("ordered"))),
        )

    outcome = raw.get("outcome")
    predictors = _as_tuple(raw.get("predictors"))
    if not outcome or not predictors:
        raise ValueError(f"model.outcome and model.predictors are required for kind '{kind}'.")
    return ModelConfig(kind=kind, outcome=str(outcome), predictors=tuple(str(p) for p in predictors))


def _build_groups(raw: dict) -> GroupsConfig:
    rules = []
    for i, r in enumerate(raw.get("rules") or []):
        if "name" not in r or not isinstance(r.get("where"), dict):
            raise ValueError(f"groups.rules[{i}] needs 'name' and a 'where' mapping.")
        rules.append((str(r["name"]), dict(r["where"])))
    return GroupsConfig(
        columns=tuple(str(c) for c in _as_tuple(raw.get("columns"))),
        rules=tuple(rules),
        age_band=bool(raw.get("age_band", False)),
    )


def _build_fit(raw: dict) -> FitConfig:
    raw = dict(raw)
    bayes = BayesConfig(**(raw.pop("bayes", None) or {}))
    return FitConfig(bayes=bayes, **raw)


def _build_invariance(raw: dict) -> InvarianceConfig:
    raw = dict(raw)
    criteria = InvarianceCriteria(**(raw.pop("criteria", None) or {}))
    enabled = bool(raw.get("enabled", False))
    group_col = raw.get("group_col")
    if enabled and not group_col:
        raise ValueError("invariance.group_col is required when invariance is enabled.")
    return InvarianceConfig(
        enabled=enabled,
        group_col=group_col,
        levels=tuple(str(v).lower() for v in _as_tuple(raw.get("levels", ("configural", "metric", "scalar")))),
        delta_statistics=tuple(_as_tuple(raw.get("delta_statistics", ("cfi",)))),
        criteria=criteria,
    )


def config_from_dict(cfg: dict) -> RunConfig:
    if "data" not in cfg or "path" not in (cfg["data"] or {}):
        raise ValueError("Config requires data.path.")
    if "model" not in cfg:
        raise ValueError("Config requires a 'model' section.")

    data_cfg = cfg["data"]
    run_cfg = cfg.get("run", {}) or {}
    report_cfg = cfg.get("report", {}) or {}

    try:
        fit = _build_fit(cfg.get("fit", {}) or {})
    except TypeError as e:
        raise ValueError(f"Invalid 'fit' section: {e}") from e

    return RunConfig(
        data=DataConfig(
            path=str(data_cfg["path"]),
            format=str(data_cfg.get("format", "auto")),
            columns=tuple(str(c) for c in _as_tuple(data_cfg.get("columns"))),
            missing_codes=_as_tuple(data_cfg.get("missing_codes")),
        ),
        model=_build_model(cfg["model"]),
        groups=_build_groups(cfg.get("groups", {}) or {}),
        fit=fit,
        statistics=tuple(str(s) for s in _as_tuple(cfg.get("statistics"))),
        invariance=_build_invariance(cfg.get("invariance", {}) or {}),
        report=ReportConfig(
            decimals=dict(report_cfg.get("decimals", {}) or {}),
            labels=dict(report_cfg.get("labels", {}) or {}),
            p_floor=float(report_cfg.get("p_floor", 0.001)),
            default_decimals=int(report_cfg.get("default_decimals", 3)),
        ),
        outdir=str(run_cfg.get("outdir", "outputs")),
        tag=str(run_cfg.get("tag", "run")),
    )


def load_config(path: str) -> RunConfig:
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    return config_from_dict(cfg)
