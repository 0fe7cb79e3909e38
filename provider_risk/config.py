"""Pipeline configuration.

All policy constants live here. ``seed`` and ``threshold`` have no defaults:
a run without them is refused before any data is touched. The peer-group and
label-history minimums have documented defaults, but a YAML config file must
spell them out explicitly (see ``POLICY_KEYS``).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

import yaml

from provider_risk.errors import ConfigError


DATA_DIR = os.environ.get("FRAUD_DATA_DIR", "data")

# Keys a config file must set explicitly; none of them is derivable from data.
POLICY_KEYS = (
    "seed",
    "threshold",
    "min_peer_count",
    "min_label_services",
    "min_label_years",
)

CLASSIFIERS = ("random_forest", "logistic_regression")


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable run configuration.

    Defaults for the minimums are judgment calls, not mathematical necessities:
    30 peers is the usual floor for a stable median/std estimate, and 50
    services over at least one active year keeps providers with a handful of
    billed lines out of the training set.
    """

    seed: int
    threshold: float
    min_peer_count: int = 30
    min_label_services: int = 50
    min_label_years: int = 1
    z_epsilon: float = 1e-6
    working_days_per_year: int = 250
    max_rejection_rate: float = 0.05
    n_folds: int = 5
    n_estimators: int = 500
    classifier: str = "random_forest"
    top_risk_factors: int = 3
    aggregation_shards: int = 1
    aggregation_workers: int = 1
    n_jobs: int = 1
    exclude_leaky_features: bool = False
    data_dir: str = DATA_DIR
    output_dir: str = "output"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError for any missing or out-of-range setting."""
        if self.seed is None or isinstance(self.seed, bool) or not isinstance(self.seed, int):
            raise ConfigError(
                "seed must be an integer",
                invariant="training is reproducible only with an explicit seed",
                detail=self.seed,
            )
        if self.threshold is None or not isinstance(self.threshold, (int, float)):
            raise ConfigError(
                "threshold must be a number",
                invariant="publication threshold is an explicit policy parameter",
                detail=self.threshold,
            )
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise ConfigError(
                "threshold must lie in [0, 1]",
                invariant="threshold is a probability",
                detail=self.threshold,
            )
        for name in (
            "min_peer_count",
            "min_label_services",
            "min_label_years",
            "working_days_per_year",
            "n_estimators",
            "top_risk_factors",
            "aggregation_shards",
            "aggregation_workers",
        ):
            value = getattr(self, name)
            if value is None or isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(
                    f"{name} must be a positive integer",
                    invariant="policy minimums are explicit positive integers",
                    detail=value,
                )
        if not isinstance(self.n_folds, int) or self.n_folds < 2:
            raise ConfigError(
                "n_folds must be an integer >= 2",
                invariant="cross-validation needs at least two folds",
                detail=self.n_folds,
            )
        if not isinstance(self.z_epsilon, (int, float)) or self.z_epsilon <= 0:
            raise ConfigError(
                "z_epsilon must be > 0",
                invariant="z-score denominator has a positive floor",
                detail=self.z_epsilon,
            )
        if not isinstance(self.max_rejection_rate, (int, float)) or not 0.0 <= self.max_rejection_rate <= 1.0:
            raise ConfigError(
                "max_rejection_rate must lie in [0, 1]",
                invariant="rejection ceiling is a fraction of input rows",
                detail=self.max_rejection_rate,
            )
        if self.classifier not in CLASSIFIERS:
            raise ConfigError(
                f"classifier must be one of {CLASSIFIERS}",
                invariant="classifier strategy is a known implementation",
                detail=self.classifier,
            )
        if not isinstance(self.n_jobs, int) or self.n_jobs == 0:
            raise ConfigError(
                "n_jobs must be a non-zero integer",
                invariant="n_jobs follows scikit-learn conventions",
                detail=self.n_jobs,
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **overrides: Any) -> "PipelineConfig":
        """Build a config from a parsed mapping, applying non-None overrides.

        Every key in POLICY_KEYS must be present in ``data`` or ``overrides``.
        """
        merged = dict(data or {})
        merged.update({k: v for k, v in overrides.items() if v is not None})

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise ConfigError(
                "unknown configuration keys",
                invariant="config keys match PipelineConfig fields",
                detail=unknown,
            )
        missing = [k for k in POLICY_KEYS if merged.get(k) is None]
        if missing:
            raise ConfigError(
                "required policy settings are missing",
                invariant="seed, threshold and minimum-history constants are set explicitly",
                detail=missing,
            )
        return cls(**merged)

    @classmethod
    def from_yaml(cls, path: str, **overrides: Any) -> "PipelineConfig":
        """Load a YAML config file."""
        if not os.path.exists(path):
            raise ConfigError("config file not found", detail=path)
        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError("config file is not valid YAML", detail=str(e)) from e
        if not isinstance(data, dict):
            raise ConfigError("config file must contain a mapping", detail=type(data).__name__)
        return cls.from_mapping(data, **overrides)

    def with_threshold(self, threshold: float) -> "PipelineConfig":
        return replace(self, threshold=threshold)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(path: Optional[str], **overrides: Any) -> PipelineConfig:
    """Load config from ``path`` if given, otherwise from overrides alone."""
    if path:
        return PipelineConfig.from_yaml(path, **overrides)
    return PipelineConfig.from_mapping({}, **overrides)
