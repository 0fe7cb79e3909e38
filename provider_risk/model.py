"""Classifier trainer.

Trains a class-weighted classifier on the label-eligible population, reports
stratified cross-validated ROC AUC, and packages the fitted estimator with the
metadata needed to reproduce and audit it.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import pickle
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
import polars as pl
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import roc_auc_score
from sklearn.model_selection import StratifiedKFold
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from provider_risk.config import PipelineConfig
from provider_risk.errors import InsufficientPositivesError, TrainingError
from provider_risk.features import FEATURE_SCHEMA_VERSION, model_feature_columns
from provider_risk.labels import LabelSet


log = logging.getLogger(__name__)


class ClassifierStrategy:
    """Narrow seam between the trainer and a concrete estimator."""

    name = "base"

    def params(self) -> dict[str, Any]:
        return {}

    def build(self, seed: int) -> Any:
        raise NotImplementedError

    def fit(self, estimator: Any, X: np.ndarray, y: np.ndarray) -> Any:
        return estimator.fit(X, y)

    def predict_proba(self, estimator: Any, X: np.ndarray) -> np.ndarray:
        return estimator.predict_proba(X)[:, 1]

    def importances(self, estimator: Any, feature_columns: list[str]) -> dict[str, float]:
        raise NotImplementedError


class RandomForestStrategy(ClassifierStrategy):
    """Random forest with balanced class weights. The default."""

    name = "random_forest"

    def __init__(self, n_estimators: int = 500, n_jobs: int = 1):
        self.n_estimators = n_estimators
        self.n_jobs = n_jobs

    def params(self) -> dict[str, Any]:
        return {"n_estimators": self.n_estimators, "class_weight": "balanced"}

    def build(self, seed: int) -> RandomForestClassifier:
        return RandomForestClassifier(
            n_estimators=self.n_estimators,
            class_weight="balanced",
            random_state=seed,
            n_jobs=self.n_jobs,
        )

    def importances(self, estimator, feature_columns):
        return dict(zip(feature_columns, estimator.feature_importances_.tolist()))


class LogisticRegressionStrategy(ClassifierStrategy):
    """Balanced logistic regression on standardized inputs."""

    name = "logistic_regression"

    def __init__(self, max_iter: int = 1000):
        self.max_iter = max_iter

    def params(self) -> dict[str, Any]:
        return {"max_iter": self.max_iter, "class_weight": "balanced", "scaled": True}

    def build(self, seed: int):
        return make_pipeline(
            StandardScaler(),
            LogisticRegression(class_weight="balanced", max_iter=self.max_iter, random_state=seed),
        )

    def importances(self, estimator, feature_columns):
        # coefficients are on standardized inputs, so magnitudes are comparable
        coef = np.abs(estimator[-1].coef_[0])
        return dict(zip(feature_columns, coef.tolist()))


def get_strategy(config: PipelineConfig) -> ClassifierStrategy:
    if config.classifier == "random_forest":
        return RandomForestStrategy(n_estimators=config.n_estimators, n_jobs=config.n_jobs)
    if config.classifier == "logistic_regression":
        return LogisticRegressionStrategy()
    raise TrainingError("unknown classifier strategy", detail=config.classifier)


def normalize_importance(raw: dict[str, float]) -> tuple[tuple[str, float], ...]:
    """Scale importances to sum to 1.0; order by weight desc, then name."""
    cleaned = {k: max(0.0, float(v)) if np.isfinite(v) else 0.0 for k, v in raw.items()}
    total = sum(cleaned.values())
    if total <= 0:
        n = len(cleaned)
        weights = {k: 1.0 / n for k in cleaned} if n else {}
    else:
        weights = {k: v / total for k, v in cleaned.items()}
    return tuple(sorted(weights.items(), key=lambda kv: (-kv[1], kv[0])))


@dataclass(frozen=True)
class TrainedModel:
    """Fitted estimator plus everything needed to audit the run.

    ``fold_assignment[i]`` is the CV fold of ``training_ids[i]``.
    """

    estimator: Any
    strategy: ClassifierStrategy
    feature_columns: tuple[str, ...]
    schema_version: int
    model_version: str
    seed: int
    fold_aucs: tuple[float, ...]
    mean_auc: float
    std_auc: float
    training_ids: tuple[str, ...] = ()
    fold_assignment: tuple[int, ...] = ()
    feature_importance: tuple[tuple[str, float], ...] = ()
    training_examples: int = 0
    positive_examples: int = 0
    params: dict = field(default_factory=dict)

    @property
    def classifier(self) -> str:
        return self.strategy.name

    @property
    def n_folds(self) -> int:
        return len(self.fold_aucs)

    def importance_dict(self) -> dict[str, float]:
        return dict(self.feature_importance)

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        return self.strategy.predict_proba(self.estimator, X)


def _model_digest(
    X: np.ndarray,
    y: np.ndarray,
    ids: list[str],
    columns: list[str],
    seed: int,
    strategy: ClassifierStrategy,
    n_folds: int,
) -> str:
    h = hashlib.sha256()
    h.update(np.ascontiguousarray(X, dtype=np.float64).tobytes())
    h.update(np.ascontiguousarray(y, dtype=np.int8).tobytes())
    h.update("\n".join(ids).encode())
    h.update("\n".join(columns).encode())
    meta = {"seed": seed, "strategy": strategy.name, "params": strategy.params(), "n_folds": n_folds}
    h.update(json.dumps(meta, sort_keys=True).encode())
    return h.hexdigest()


def train_classifier(
    features: pl.DataFrame,
    labels: LabelSet,
    config: PipelineConfig,
    strategy: Optional[ClassifierStrategy] = None,
) -> TrainedModel:
    """Cross-validate and fit the classifier on the eligible population.

    Args:
        features: Output of build_feature_vectors().
        labels: Output of resolve_labels().
        config: Supplies seed, n_folds and the classifier choice.
        strategy: Overrides the strategy named in config.

    Returns:
        TrainedModel fit on every training row.

    Raises:
        InsufficientPositivesError: If either class has fewer than n_folds rows.
    """
    strategy = strategy or get_strategy(config)
    columns = model_feature_columns(config)
    seed = config.seed

    train = features.join(labels.to_frame(), on="provider_id", how="inner").sort("provider_id")
    ids = train["provider_id"].to_list()
    y = train["is_fraud"].cast(pl.Int64).to_numpy()
    X = train.select(columns).to_numpy().astype(np.float64)

    n_pos = int(y.sum())
    n_neg = len(y) - n_pos
    if n_pos < config.n_folds or n_neg < config.n_folds:
        raise InsufficientPositivesError(
            "not enough examples of each class for stratified cross-validation",
            invariant=f"each class has at least n_folds={config.n_folds} training rows",
            detail={"positives": n_pos, "negatives": n_neg, "n_folds": config.n_folds},
        )

    log.info(
        "Training %s on %d providers (%d positive) with %d features",
        strategy.name, len(y), n_pos, len(columns),
    )

    skf = StratifiedKFold(n_splits=config.n_folds, shuffle=True, random_state=seed)
    fold_assignment = np.zeros(len(y), dtype=np.int64)
    fold_aucs = []
    for fold, (train_idx, test_idx) in enumerate(skf.split(X, y)):
        est = strategy.fit(strategy.build(seed), X[train_idx], y[train_idx])
        proba = strategy.predict_proba(est, X[test_idx])
        auc = float(roc_auc_score(y[test_idx], proba))
        fold_assignment[test_idx] = fold
        fold_aucs.append(auc)
        log.info("  Fold %d: AUC = %.4f", fold + 1, auc)

    mean_auc = float(np.mean(fold_aucs))
    std_auc = float(np.std(fold_aucs))
    log.info("Cross-validated AUC: %.4f +/- %.4f", mean_auc, std_auc)

    estimator = strategy.fit(strategy.build(seed), X, y)
    importance = normalize_importance(strategy.importances(estimator, columns))

    digest = _model_digest(X, y, ids, columns, seed, strategy, config.n_folds)
    model_version = f"{strategy.name}-v{FEATURE_SCHEMA_VERSION}-{digest[:12]}"

    return TrainedModel(
        estimator=estimator,
        strategy=strategy,
        feature_columns=tuple(columns),
        schema_version=FEATURE_SCHEMA_VERSION,
        model_version=model_version,
        seed=seed,
        fold_aucs=tuple(fold_aucs),
        mean_auc=mean_auc,
        std_auc=std_auc,
        training_ids=tuple(ids),
        fold_assignment=tuple(int(f) for f in fold_assignment),
        feature_importance=importance,
        training_examples=len(y),
        positive_examples=n_pos,
        params=strategy.params(),
    )


def save_model(model: TrainedModel, path: str) -> None:
    """Pickle a TrainedModel to ``path``."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)
    log.info("Model %s saved to %s", model.model_version, path)


def load_model(path: str) -> TrainedModel:
    """Load a TrainedModel written by save_model()."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found at {path}.")
    with open(path, "rb") as f:
        model = pickle.load(f)
    if not isinstance(model, TrainedModel):
        raise TrainingError("file does not hold a trained model", detail=path)
    return model
