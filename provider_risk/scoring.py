"""Scorer and ranker.

Every provider gets a probability, a 1-based rank in a total order and its
top risk factors. Ranking ties break on total_payments desc, then provider_id.
"""
from __future__ import annotations

import logging
from typing import Mapping

import numpy as np
import polars as pl

from provider_risk.config import PipelineConfig
from provider_risk.errors import PipelineError
from provider_risk.features import FEATURE_COLUMNS, FLAG_COLUMNS, IDENTITY_COLUMNS
from provider_risk.model import TrainedModel


log = logging.getLogger(__name__)

RANK_ORDER = ["fraud_probability", "total_payments", "provider_id"]


def explain_risk_factors(
    features: pl.DataFrame,
    feature_importance: Mapping[str, float],
    top_n: int,
) -> list[list[str]]:
    """Top contributing features per provider, in row order of ``features``.

    contribution(f) = importance(f) * max(0, (x_f - median_f) / scale_f), with
    median and IQR taken over the rows of ``features``. scale_f is the IQR, or
    max(|median_f|, 1) when the IQR is 0, as it is for sparse category
    shares, so a tiny deviation from a constant population stays tiny.
    Only positive contributions qualify; ties go to the feature name.
    """
    candidates = sorted(
        name for name, weight in feature_importance.items()
        if weight > 0 and name not in FLAG_COLUMNS and name in features.columns
    )
    if features.is_empty() or not candidates or top_n < 1:
        return [[] for _ in range(len(features))]

    X = features.select(candidates).to_numpy().astype(np.float64)
    weights = np.array([feature_importance[c] for c in candidates], dtype=np.float64)

    median = np.median(X, axis=0)
    q75, q25 = np.percentile(X, [75, 25], axis=0)
    iqr = q75 - q25
    scale = np.where(iqr > 0, iqr, np.maximum(np.abs(median), 1.0))
    contrib = weights * np.maximum(0.0, (X - median) / scale)

    # stable sort on -contribution keeps alphabetical order within ties
    order = np.argsort(-contrib, axis=1, kind="stable")

    factors = []
    for i in range(len(X)):
        row = []
        for j in order[i, :top_n]:
            if contrib[i, j] <= 0:
                break
            row.append(candidates[j])
        factors.append(row)
    return factors


def score_providers(model: TrainedModel, features: pl.DataFrame, config: PipelineConfig) -> pl.DataFrame:
    """Score every provider and rank them.

    Returns:
        IDENTITY_COLUMNS, FEATURE_COLUMNS, fraud_probability, rank and
        top_risk_factors, sorted by rank.
    """
    missing = [c for c in model.feature_columns if c not in features.columns]
    if missing:
        raise PipelineError(
            "feature frame does not match the trained model",
            stage="score",
            invariant=f"feature schema v{model.schema_version}",
            detail=missing,
        )

    X = features.select(list(model.feature_columns)).to_numpy().astype(np.float64)
    proba = np.clip(model.predict_proba(X), 0.0, 1.0) if len(X) else np.zeros(0)
    factors = explain_risk_factors(features, model.importance_dict(), config.top_risk_factors)

    scored = (
        features
        .select(IDENTITY_COLUMNS + FEATURE_COLUMNS)
        .with_columns([
            pl.Series("fraud_probability", proba, dtype=pl.Float64),
            pl.Series("top_risk_factors", factors, dtype=pl.List(pl.Utf8)),
        ])
        .sort(RANK_ORDER, descending=[True, True, False])
    )
    scored = scored.with_columns(pl.Series("rank", np.arange(1, len(scored) + 1), dtype=pl.Int64))
    log.info("Scored %d providers", len(scored))
    return scored
