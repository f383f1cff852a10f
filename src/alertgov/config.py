"""Configuration for the governance engine.

Defaults reproduce the production constants. A YAML file (``configs/governance.yaml``
or the path in ``ALERTGOV_CONFIG``) overrides them per section, and a handful
of ``ALERTGOV_*`` environment variables override the YAML.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

WEIGHT_KEYS: Tuple[str, ...] = ("w1", "w2", "w3", "w4", "w5")

MINUTE_MS = 60_000

DEFAULT_WEIGHTS: Dict[str, float] = {"w1": 0.30, "w2": 0.25, "w3": 0.15, "w4": 0.15, "w5": 0.15}


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _check_weights(weights: Mapping[str, float], where: str) -> None:
    missing = [k for k in WEIGHT_KEYS if k not in weights]
    if missing:
        raise ConfigError(f"{where}: missing weight components {missing}")
    for k in WEIGHT_KEYS:
        if float(weights[k]) < 0:
            raise ConfigError(f"{where}: weight {k} must be non-negative")
    if sum(float(weights[k]) for k in WEIGHT_KEYS) <= 0:
        raise ConfigError(f"{where}: weights must not all be zero")


@dataclass(frozen=True)
class RobustConfig:
    enabled: bool = True
    history_size: int = 30
    min_samples_for_robust: int = 8
    k_high: float = 1.2
    k_low: float = 0.4
    epsilon_mad: float = 0.01
    min_consecutive_above_high: int = 2

    def validate(self) -> None:
        if self.history_size < 1:
            raise ConfigError("robust.history_size must be >= 1")
        if self.min_samples_for_robust < 1:
            raise ConfigError("robust.min_samples_for_robust must be >= 1")
        if self.min_samples_for_robust > self.history_size:
            raise ConfigError("robust.min_samples_for_robust cannot exceed history_size")
        if self.epsilon_mad <= 0:
            raise ConfigError("robust.epsilon_mad must be > 0")
        if self.k_low > self.k_high:
            raise ConfigError("robust.k_low must be <= k_high")
        if self.min_consecutive_above_high < 1:
            raise ConfigError("robust.min_consecutive_above_high must be >= 1")


@dataclass(frozen=True)
class SuppressionConfig:
    eval_interval_ms: int = MINUTE_MS
    high: float = 0.65
    low: float = 0.45
    min_volume: float = 5
    stable_recovery_windows: int = 3
    recovery_ack_rate_jump: float = 0.3
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    escalation_effectiveness_block_threshold: float = 0.6
    allow_suppress_critical: bool = False
    re_noise_horizon_s: int = 20 * 60
    signal_timeout_s: float = 5.0
    transition_log_limit: int = 500
    robust: RobustConfig = field(default_factory=RobustConfig)

    def validate(self) -> None:
        if self.eval_interval_ms < 0:
            raise ConfigError("suppression.eval_interval_ms must be non-negative")
        if not (0.0 <= self.low < self.high <= 1.0):
            raise ConfigError("suppression hysteresis requires 0 <= low < high <= 1")
        if self.min_volume < 0:
            raise ConfigError("suppression.min_volume must be non-negative")
        if self.stable_recovery_windows < 1:
            raise ConfigError("suppression.stable_recovery_windows must be >= 1")
        if self.signal_timeout_s <= 0:
            raise ConfigError("suppression.signal_timeout_s must be > 0")
        if self.re_noise_horizon_s < 0:
            raise ConfigError("suppression.re_noise_horizon_s must be non-negative")
        _check_weights(self.weights, "suppression.weights")
        self.robust.validate()


@dataclass(frozen=True)
class MetricTargets:
    ack_rate: float = 0.85
    escalation_effectiveness: float = 0.70
    false_suppression_rate: float = 0.10
    suspected_false_rate: float = 0.15
    re_noise_rate: float = 0.20

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class AdaptiveWeightConfig:
    initial_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    w_min: float = 0.05
    w_max: float = 0.60
    adjust_factor: float = 0.2
    max_delta: float = 0.05
    deadband: float = 0.03
    cooldown_cycles: int = 3
    max_cycle_drift: float = 0.15
    targets: MetricTargets = field(default_factory=MetricTargets)
    outlier_mad_k: float = 4.0
    history_size: int = 60
    convergence_window: int = 6
    convergence_threshold: float = 0.015
    stable_freeze_cycles: int = 6
    severe_deviation_threshold: float = 0.12
    min_freeze_hold_cycles: int = 10
    log_limit: int = 1000

    def validate(self) -> None:
        if self.w_min < 0 or self.w_max > 1:
            raise ConfigError("weights bounds must lie within [0, 1]")
        if self.w_min > self.w_max:
            raise ConfigError(f"w_min ({self.w_min}) > w_max ({self.w_max})")
        n = len(WEIGHT_KEYS)
        if n * self.w_min > 1.0 + 1e-9 or n * self.w_max < 1.0 - 1e-9:
            raise ConfigError("weight bounds admit no vector summing to 1")
        _check_weights(self.initial_weights, "tuning.initial_weights")
        for name in ("adjust_factor", "max_delta", "deadband", "max_cycle_drift", "outlier_mad_k",
                     "convergence_threshold", "severe_deviation_threshold"):
            if getattr(self, name) < 0:
                raise ConfigError(f"tuning.{name} must be non-negative")
        for name in ("cooldown_cycles", "stable_freeze_cycles", "min_freeze_hold_cycles"):
            if getattr(self, name) < 0:
                raise ConfigError(f"tuning.{name} must be non-negative")
        if self.history_size < 1 or self.convergence_window < 1:
            raise ConfigError("tuning.history_size and convergence_window must be >= 1")


@dataclass(frozen=True)
class EscalationConfig:
    run_interval_ms: int = MINUTE_MS
    base_sla_ms: Dict[str, int] = field(
        default_factory=lambda: {"critical": 5 * MINUTE_MS, "high": 15 * MINUTE_MS}
    )
    default_base_sla_ms: int = 5 * MINUTE_MS
    n_min_samples: int = 8
    cooldown_min_ms: int = 2 * MINUTE_MS
    cooldown_max_ms: int = 30 * MINUTE_MS
    effectiveness_window_factor: float = 0.8
    suspected_false_factor: float = 0.2
    eligible_severities: Tuple[str, ...] = ("critical", "high")
    sample_limit: int = 200

    def validate(self) -> None:
        if self.run_interval_ms < 0:
            raise ConfigError("escalation.run_interval_ms must be non-negative")
        if self.default_base_sla_ms < 0 or any(v < 0 for v in self.base_sla_ms.values()):
            raise ConfigError("escalation base SLA values must be non-negative")
        if self.cooldown_min_ms < 0 or self.cooldown_max_ms < 0:
            raise ConfigError("escalation cooldowns must be non-negative")
        if self.cooldown_min_ms > self.cooldown_max_ms:
            raise ConfigError("escalation.cooldown_min_ms must be <= cooldown_max_ms")
        if self.n_min_samples < 1:
            raise ConfigError("escalation.n_min_samples must be >= 1")
        if not (0 < self.effectiveness_window_factor):
            raise ConfigError("escalation.effectiveness_window_factor must be > 0")

    def base_for(self, severity: str) -> int:
        return int(self.base_sla_ms.get(severity, self.default_base_sla_ms))


@dataclass(frozen=True)
class RunnerConfig:
    interval_ms: int = MINUTE_MS
    warmup_cycles: int = 2
    debounce_cooldown_every: int = 5
    snapshot_every: int = 10
    persistence_timeout_s: float = 3.0
    persistence_max_pending: int = 100
    prune_interval_ms: int = 60 * MINUTE_MS
    history_retention_days: int = 14
    audit_retention_days: int = 7
    prune_batch_size: int = 500
    prune_budget_s: float = 0.2

    def validate(self) -> None:
        if self.interval_ms < 0:
            raise ConfigError("runner.interval_ms must be non-negative")
        if self.warmup_cycles < 0 or self.debounce_cooldown_every < 1 or self.snapshot_every < 1:
            raise ConfigError("runner cycle counts out of range")
        if self.persistence_timeout_s <= 0:
            raise ConfigError("runner.persistence_timeout_s must be > 0")
        if self.persistence_max_pending < 1:
            raise ConfigError("runner.persistence_max_pending must be >= 1")
        if self.prune_interval_ms < 0 or self.prune_batch_size < 1 or self.prune_budget_s <= 0:
            raise ConfigError("runner prune settings out of range")
        if self.history_retention_days < 1 or self.audit_retention_days < 1:
            raise ConfigError("runner retention windows must be at least one day")


@dataclass(frozen=True)
class GovernanceConfig:
    suppression: SuppressionConfig = field(default_factory=SuppressionConfig)
    tuning: AdaptiveWeightConfig = field(default_factory=AdaptiveWeightConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    database_url: Optional[str] = None
    audit_path: Optional[str] = None

    def validate(self) -> "GovernanceConfig":
        self.suppression.validate()
        self.tuning.validate()
        self.escalation.validate()
        self.runner.validate()
        return self


def _build(cls, data: Optional[Mapping[str, Any]], **nested):
    """Instantiate a config dataclass from a mapping, rejecting unknown keys."""
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown keys for {cls.__name__}: {unknown}")
    for key, sub in nested.items():
        if key in data and isinstance(data[key], Mapping):
            data[key] = sub(data[key])
    if "eligible_severities" in data:
        data["eligible_severities"] = tuple(data["eligible_severities"])
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


def config_from_dict(raw: Optional[Mapping[str, Any]]) -> GovernanceConfig:
    raw = dict(raw or {})
    suppression = _build(
        SuppressionConfig,
        raw.pop("suppression", None),
        robust=lambda d: _build(RobustConfig, d),
    )
    tuning = _build(
        AdaptiveWeightConfig,
        raw.pop("tuning", None),
        targets=lambda d: _build(MetricTargets, d),
    )
    escalation = _build(EscalationConfig, raw.pop("escalation", None))
    runner = _build(RunnerConfig, raw.pop("runner", None))
    cfg = _build(
        GovernanceConfig,
        raw,
    )
    return replace(cfg, suppression=suppression, tuning=tuning, escalation=escalation, runner=runner)


def apply_env_overrides(cfg: GovernanceConfig) -> GovernanceConfig:
    db_url = os.getenv("ALERTGOV_DB_URL")
    if db_url:
        cfg = replace(cfg, database_url=db_url)
    audit_path = os.getenv("ALERTGOV_AUDIT_PATH")
    if audit_path:
        cfg = replace(cfg, audit_path=audit_path)
    allow_critical = _env_flag("ALERTGOV_ALLOW_SUPPRESS_CRITICAL")
    if allow_critical is not None:
        cfg = replace(cfg, suppression=replace(cfg.suppression, allow_suppress_critical=allow_critical))
    return cfg


def load_config(path: Optional[str | Path] = None) -> GovernanceConfig:
    """Load configuration from YAML plus environment overrides and validate it.

    A missing file is not an error: defaults are used. A file that does not
    parse, or that holds unknown keys or inconsistent values, raises ConfigError.
    """
    cfg_path = Path(path or os.getenv("ALERTGOV_CONFIG", "./configs/governance.yaml"))
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            with open(cfg_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {cfg_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{cfg_path} must contain a mapping at the top level")
        logger.info(f"Loaded governance config from {cfg_path}")
    else:
        logger.debug(f"No config file at {cfg_path}; using defaults")
    cfg = apply_env_overrides(config_from_dict(raw))
    return cfg.validate()
