"""Threshold and artifact writer.

Partitions scored providers at the publication threshold and writes the
watchlist and model-diagnostics JSON artifacts consumed by the site, plus a
CSV export and the full score table. Artifacts carry no wall-clock
timestamps: identical inputs, seed and threshold give byte-identical files.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import polars as pl

from provider_risk.features import FEATURE_LABELS, FEATURE_SCHEMA_VERSION, LEAKY_FEATURES
from provider_risk.model import TrainedModel


log = logging.getLogger(__name__)

CRITICAL_PROBABILITY = 0.95

# Number of specialties/states listed in the watchlist summary
TOP_GROUPS = 10


@dataclass(frozen=True)
class ThresholdPartition:
    """Scored providers split at a threshold; both halves keep rank order."""

    flagged: pl.DataFrame
    not_flagged: pl.DataFrame
    threshold: float

    @property
    def total_flagged(self) -> int:
        return len(self.flagged)

    @property
    def total_flagged_payments(self) -> float:
        if self.flagged.is_empty():
            return 0.0
        return round(float(self.flagged["total_payments"].sum()), 2)


def mark_confirmed_fraud(scored: pl.DataFrame, provider_ids) -> pl.DataFrame:
    """Add a confirmed_fraud column: provider already on an exclusion or prosecution list."""
    return scored.with_columns(
        pl.col("provider_id").is_in(list(provider_ids)).alias("confirmed_fraud")
    )


def apply_threshold(scored: pl.DataFrame, threshold: float) -> ThresholdPartition:
    """Flag providers with fraud_probability >= threshold. No rescoring."""
    ordered = scored.sort("rank")
    is_flagged = pl.col("fraud_probability") >= threshold
    return ThresholdPartition(
        flagged=ordered.filter(is_flagged),
        not_flagged=ordered.filter(~is_flagged),
        threshold=float(threshold),
    )


def classify_risk_tier(probability: float, threshold: float) -> str:
    """Risk tier for a scored provider.

    - critical: flagged and probability >= 0.95
    - high: flagged
    - below_threshold: not flagged
    """
    if probability < threshold:
        return "below_threshold"
    if probability >= CRITICAL_PROBABILITY:
        return "critical"
    return "high"


def risk_factor_labels(names: Optional[list[str]]) -> list[str]:
    return [FEATURE_LABELS.get(n, n) for n in (names or [])]


def build_flagged_entry(row: Mapping[str, Any], threshold: float) -> dict:
    """Build a single watchlist entry from a scored row.

    Args:
        row: One named row of the scored frame.
        threshold: Publication threshold, used for the risk tier.

    Returns:
        A JSON-ready dict for the ``still_out_there`` list.
    """
    probability = float(row["fraud_probability"])
    return {
        "npi": str(row["provider_id"]),
        "specialty": str(row["specialty"]),
        "state": str(row["state"]),
        "entity_type": str(row["entity_type"]),
        "total_payments": round(float(row["total_payments"]), 2),
        "total_services": round(float(row["total_services"]), 2),
        "total_beneficiaries": round(float(row["total_beneficiaries"]), 2),
        "fraud_probability": round(probability, 6),
        "risk_rank": int(row["rank"]),
        "risk_tier": classify_risk_tier(probability, threshold),
        "confirmed_fraud": bool(row.get("confirmed_fraud") or False),
        "markup_ratio": round(float(row["markup_ratio"]), 4),
        "services_per_bene": round(float(row["services_per_beneficiary"]), 4),
        "top_risk_factors": risk_factor_labels(row["top_risk_factors"]),
    }


def _group_summary(flagged: pl.DataFrame, column: str, limit: Optional[int] = None) -> list[dict]:
    if flagged.is_empty():
        return []
    grouped = (
        flagged
        .group_by(column)
        .agg([
            pl.len().alias("count"),
            pl.col("total_payments").sum().alias("total_payments"),
        ])
        .sort(["count", "total_payments", column], descending=[True, True, False])
    )
    if limit is not None:
        grouped = grouped.head(limit)
    return [
        {
            column: row[column],
            "count": int(row["count"]),
            "total_payments": round(float(row["total_payments"]), 2),
        }
        for row in grouped.iter_rows(named=True)
    ]


def build_watchlist_artifact(partition: ThresholdPartition, model_version: str) -> dict:
    """Assemble watchlist.json: every flagged provider in rank order."""
    entries = [
        build_flagged_entry(row, partition.threshold)
        for row in partition.flagged.iter_rows(named=True)
    ]
    return {
        "model_version": model_version,
        "threshold": partition.threshold,
        "total_flagged": partition.total_flagged,
        "still_out_there": entries,
        "total_flagged_payments": partition.total_flagged_payments,
        "top_specialties": _group_summary(partition.flagged, "specialty", TOP_GROUPS),
        "top_states": _group_summary(partition.flagged, "state", TOP_GROUPS),
    }


def build_diagnostics_artifact(
    model: TrainedModel,
    partition: ThresholdPartition,
    total_scored: int,
    label_coverage: Optional[Mapping[str, Any]] = None,
    ingest: Optional[Mapping[str, Any]] = None,
    peer_groups: Optional[Mapping[str, Any]] = None,
) -> dict:
    """Assemble model-diagnostics.json.

    Args:
        model: The trained model.
        partition: Output of apply_threshold().
        total_scored: Number of providers scored.
        label_coverage: LabelCoverage.to_dict().
        ingest: RejectionTally.to_dict().
        peer_groups: PeerTable.summary().
    """
    return {
        "model_version": model.model_version,
        "classifier": model.classifier,
        "feature_schema_version": FEATURE_SCHEMA_VERSION,
        "seed": model.seed,
        "threshold": partition.threshold,
        "training_examples": model.training_examples,
        "positive_examples": model.positive_examples,
        "cv": {
            "n_folds": model.n_folds,
            "fold_aucs": [round(a, 6) for a in model.fold_aucs],
            "mean_auc": round(model.mean_auc, 6),
            "std_auc": round(model.std_auc, 6),
        },
        "total_providers_scored": total_scored,
        "total_flagged": partition.total_flagged,
        "total_flagged_payments": partition.total_flagged_payments,
        "feature_importance": [
            {"name": name, "label": FEATURE_LABELS.get(name, name), "weight": round(weight, 6)}
            for name, weight in model.feature_importance
        ],
        "leakage_risk_features": list(LEAKY_FEATURES),
        "flagged_by_specialty": _group_summary(partition.flagged, "specialty"),
        "flagged_by_state": _group_summary(partition.flagged, "state"),
        "label_coverage": dict(label_coverage or {}),
        "ingest": dict(ingest or {}),
        "peer_groups": dict(peer_groups or {}),
    }


def write_artifact(artifact: dict, path: str) -> None:
    """Write an artifact dict as JSON with sorted keys and 2-space indent."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump(artifact, f, indent=2, sort_keys=True, default=_json_serializer)
        f.write("\n")
    log.info("Artifact written to %s", path)


def write_watchlist_csv(flagged: pl.DataFrame, path: str) -> None:
    """CSV export of the flagged providers, one row per provider in rank order."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    export = flagged.select([
        pl.col("provider_id").alias("npi"),
        "specialty",
        "state",
        pl.col("total_payments").round(2),
        pl.col("fraud_probability").round(6),
        pl.col("rank").alias("risk_rank"),
        pl.col("top_risk_factors")
        .map_elements(lambda names: "; ".join(risk_factor_labels(list(names))), return_dtype=pl.Utf8)
        .alias("top_risk_factors"),
    ])
    export.write_csv(path)
    log.info("Watchlist CSV written to %s (%d rows)", path, len(export))


def write_scores(scored: pl.DataFrame, path: str) -> None:
    """Persist every scored provider so thresholds can be re-applied later."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    scored.write_parquet(path)


def read_scores(path: str) -> pl.DataFrame:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Score table not found at {path}.")
    return pl.read_parquet(path).sort("rank")


def _json_serializer(obj: Any) -> Any:
    """Handle non-JSON-serializable types during artifact serialization.

    Converts date/datetime objects to ISO format strings and numpy/polars
    scalar types to native Python types.

    Raises:
        TypeError: If the object type is not recognized.
    """
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if hasattr(obj, "item"):  # numpy/polars scalars
        return obj.item()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
