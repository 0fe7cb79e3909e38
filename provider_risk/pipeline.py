"""Pipeline orchestration.

load -> aggregate -> normalize + features -> labels -> train -> score ->
threshold + write. Any unexpected exception inside a stage is re-raised as a
PipelineError naming that stage.
"""
from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

import polars as pl

from provider_risk.aggregate import ProviderAggregates, aggregate_billing
from provider_risk.config import PipelineConfig
from provider_risk.errors import PipelineError
from provider_risk.features import build_feature_vectors
from provider_risk.ingest import load_billing, load_crosswalk, load_exclusions, load_prosecutions
from provider_risk.labels import LabelSet, canonical_fraud_identifiers, resolve_labels
from provider_risk.model import TrainedModel, load_model, save_model, train_classifier
from provider_risk.output import (
    ThresholdPartition,
    apply_threshold,
    build_diagnostics_artifact,
    build_watchlist_artifact,
    mark_confirmed_fraud,
    read_scores,
    write_artifact,
    write_scores,
    write_watchlist_csv,
)
from provider_risk.peers import PeerTable, compute_peer_stats
from provider_risk.scoring import score_providers


log = logging.getLogger(__name__)

WATCHLIST_FILE = "watchlist.json"
DIAGNOSTICS_FILE = "model-diagnostics.json"
WATCHLIST_CSV_FILE = "watchlist.csv"
SCORES_FILE = "scores.parquet"
MODEL_FILE = "model.pkl"

TOTAL_STAGES = 7


def artifact_paths(output_dir: str) -> dict[str, str]:
    return {
        "watchlist": os.path.join(output_dir, WATCHLIST_FILE),
        "diagnostics": os.path.join(output_dir, DIAGNOSTICS_FILE),
        "watchlist_csv": os.path.join(output_dir, WATCHLIST_CSV_FILE),
        "scores": os.path.join(output_dir, SCORES_FILE),
        "model": os.path.join(output_dir, MODEL_FILE),
    }


@contextmanager
def stage(name: str, step: int, title: str, total: int = TOTAL_STAGES) -> Iterator[None]:
    """Print a stage banner, time the stage and tag failures with its name."""
    print(f"\n[{step}/{total}] {title}...")
    t = time.time()
    try:
        yield
    except PipelineError:
        raise
    except Exception as e:
        raise PipelineError(f"{type(e).__name__}: {e}", stage=name) from e
    elapsed = time.time() - t
    print(f"  {title} done in {elapsed:.1f}s")
    log.info("Stage %s finished in %.2fs", name, elapsed)


@dataclass(frozen=True)
class FeatureStage:
    aggregates: ProviderAggregates
    peers: PeerTable
    features: pl.DataFrame


@dataclass(frozen=True)
class PipelineResult:
    features: FeatureStage
    labels: LabelSet
    model: TrainedModel
    scored: pl.DataFrame
    partition: ThresholdPartition
    artifacts: dict[str, str] = field(default_factory=dict)


def build_features(billing: pl.DataFrame, config: PipelineConfig) -> FeatureStage:
    """Aggregate billing rows, compute peer baselines and build feature vectors."""
    aggregates = aggregate_billing(billing, config)
    peers = compute_peer_stats(aggregates.providers, config)
    features = build_feature_vectors(aggregates, peers, config)
    return FeatureStage(aggregates, peers, features)


def write_outputs(
    model: TrainedModel,
    scored: pl.DataFrame,
    partition: ThresholdPartition,
    output_dir: str,
    label_coverage: Optional[dict] = None,
    ingest: Optional[dict] = None,
    peer_groups: Optional[dict] = None,
) -> dict[str, str]:
    """Write watchlist JSON/CSV and diagnostics. Returns the paths written."""
    paths = artifact_paths(output_dir)
    write_artifact(build_watchlist_artifact(partition, model.model_version), paths["watchlist"])
    write_artifact(
        build_diagnostics_artifact(
            model,
            partition,
            total_scored=len(scored),
            label_coverage=label_coverage,
            ingest=ingest,
            peer_groups=peer_groups,
        ),
        paths["diagnostics"],
    )
    write_watchlist_csv(partition.flagged, paths["watchlist_csv"])
    return {k: paths[k] for k in ("watchlist", "diagnostics", "watchlist_csv")}


def run_pipeline(config: PipelineConfig) -> PipelineResult:
    """Run every stage end to end and write all artifacts under config.output_dir."""
    with stage("load", 1, "Loading billing extract and fraud lists"):
        billing = load_billing(config.data_dir)
        exclusions = load_exclusions(config.data_dir)
        prosecutions = load_prosecutions(config.data_dir)
        crosswalk = load_crosswalk(config.data_dir)
        print(f"  {len(billing):,} billing rows, {len(exclusions):,} exclusions, "
              f"{len(prosecutions):,} prosecutions")

    with stage("aggregate", 2, "Aggregating provider profiles"):
        aggregates = aggregate_billing(billing, config)
        print(f"  {len(aggregates):,} providers "
              f"({aggregates.tally.rejected_count:,} rows rejected)")

    with stage("features", 3, "Peer normalization and feature vectors"):
        peers = compute_peer_stats(aggregates.providers, config)
        features = build_feature_vectors(aggregates, peers, config)
        summary = peers.summary()
        print(f"  {summary['specialties']} specialties, "
              f"{summary['global_fallbacks']} on global baseline")

    with stage("labels", 4, "Resolving fraud labels"):
        fraud_ids = canonical_fraud_identifiers(exclusions, prosecutions)
        labels = resolve_labels(fraud_ids, aggregates, config, crosswalk)
        print(f"  {labels.coverage.positives:,} positives in "
              f"{labels.coverage.eligible_population:,} eligible providers")

    with stage("train", 5, f"Training {config.classifier}"):
        model = train_classifier(features, labels, config)
        print(f"  CV AUC {model.mean_auc:.4f} +/- {model.std_auc:.4f} ({model.model_version})")

    with stage("score", 6, "Scoring and ranking providers"):
        scored = mark_confirmed_fraud(score_providers(model, features, config), labels.confirmed)

    paths = artifact_paths(config.output_dir)
    with stage("write", 7, "Writing artifacts"):
        partition = apply_threshold(scored, config.threshold)
        write_scores(scored, paths["scores"])
        save_model(model, paths["model"])
        written = write_outputs(
            model,
            scored,
            partition,
            config.output_dir,
            label_coverage=labels.coverage.to_dict(),
            ingest=aggregates.tally.to_dict(),
            peer_groups=peers.summary(),
        )
        written.update(scores=paths["scores"], model=paths["model"])
        print(f"  {partition.total_flagged:,} providers flagged at threshold {config.threshold}")

    return PipelineResult(
        features=FeatureStage(aggregates, peers, features),
        labels=labels,
        model=model,
        scored=scored,
        partition=partition,
        artifacts=written,
    )


def _previous_context(diagnostics_path: str) -> dict:
    """Label, ingest and peer sections from an earlier diagnostics artifact."""
    if not os.path.exists(diagnostics_path):
        return {}
    with open(diagnostics_path, "r") as f:
        previous = json.load(f)
    return {k: previous.get(k) for k in ("label_coverage", "ingest", "peer_groups")}


def rethreshold(
    scores_path: str,
    model_path: str,
    config: PipelineConfig,
) -> ThresholdPartition:
    """Re-partition persisted scores at config.threshold and rewrite the artifacts."""
    with stage("rethreshold", 1, f"Re-applying threshold {config.threshold}", total=1):
        scored = read_scores(scores_path)
        model = load_model(model_path)
        partition = apply_threshold(scored, config.threshold)
        paths = artifact_paths(config.output_dir)
        context = _previous_context(paths["diagnostics"])
        write_outputs(model, scored, partition, config.output_dir, **context)
        print(f"  {partition.total_flagged:,} providers flagged")
    return partition
