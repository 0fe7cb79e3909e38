"""Tests for the output module: thresholding, risk tiers, artifact building and writing."""
import json
from datetime import date

import polars as pl
import pytest

from provider_risk.features import FEATURE_SCHEMA_VERSION
from provider_risk.output import (
    ThresholdPartition,
    _json_serializer,
    apply_threshold,
    build_diagnostics_artifact,
    build_flagged_entry,
    build_watchlist_artifact,
    classify_risk_tier,
    mark_confirmed_fraud,
    read_scores,
    write_artifact,
    write_scores,
    write_watchlist_csv,
)
from provider_risk.pipeline import build_features
from provider_risk.scoring import score_providers
from tests.fixtures import make_billing_df, make_config, make_model


@pytest.fixture
def scored():
    rows = [
        {
            "provider_id": f"10000000{i:02d}",
            "paid_amount_total": 1000.0 * (i + 1),
            "specialty": "Cardiology" if i < 4 else "Internal Medicine",
            "state": "TX" if i % 3 else "CA",
        }
        for i in range(12)
    ]
    config = make_config()
    features = build_features(make_billing_df(rows), config).features
    return score_providers(make_model(["z_payment"]), features, config)


class TestClassifyRiskTier:
    """Tests for classify_risk_tier()."""

    def test_critical_at_or_above_095(self):
        assert classify_risk_tier(0.95, 0.86) == "critical"
        assert classify_risk_tier(0.99, 0.86) == "critical"

    def test_high_between_threshold_and_critical(self):
        assert classify_risk_tier(0.86, 0.86) == "high"
        assert classify_risk_tier(0.94, 0.86) == "high"

    def test_below_threshold(self):
        assert classify_risk_tier(0.85, 0.86) == "below_threshold"

    def test_threshold_above_critical(self):
        assert classify_risk_tier(0.96, 0.97) == "below_threshold"


class TestApplyThreshold:
    """Tests for apply_threshold()."""

    def test_partition_is_complete_and_ordered(self, scored):
        part = apply_threshold(scored, 0.6)
        assert isinstance(part, ThresholdPartition)
        assert len(part.flagged) + len(part.not_flagged) == len(scored)
        assert (part.flagged["fraud_probability"] >= 0.6).all()
        assert (part.not_flagged["fraud_probability"] < 0.6).all()
        assert part.flagged["rank"].to_list() == sorted(part.flagged["rank"].to_list())

    def test_raising_threshold_gives_a_subset(self, scored):
        previous = None
        for threshold in [0.0, 0.2, 0.4, 0.5, 0.6, 0.8, 0.95, 1.0]:
            flagged = set(apply_threshold(scored, threshold).flagged["provider_id"].to_list())
            if previous is not None:
                assert flagged <= previous
            previous = flagged

    def test_flagged_payments(self, scored):
        part = apply_threshold(scored, 0.0)
        assert part.total_flagged == 12
        assert part.total_flagged_payments == pytest.approx(sum(1000.0 * (i + 1) for i in range(12)))

    def test_nothing_flagged(self, scored):
        part = apply_threshold(scored, 1.0)
        assert part.total_flagged == 0
        assert part.total_flagged_payments == 0.0


class TestBuildArtifacts:
    """Tests for the artifact builders."""

    def test_flagged_entry(self, scored):
        row = scored.row(0, named=True)
        entry = build_flagged_entry(row, 0.5)
        assert entry["npi"] == "1000000011"
        assert entry["risk_rank"] == 1
        assert entry["risk_tier"] in ("critical", "high")
        assert entry["total_payments"] == 12000.0
        assert entry["services_per_bene"] == pytest.approx(5.0)
        assert entry["markup_ratio"] == pytest.approx(20000.0 / 12000.0)
        assert entry["top_risk_factors"] == ["Z-Score (Payment)"]

    def test_confirmed_fraud_marker(self, scored):
        marked = mark_confirmed_fraud(scored, ["1000000011"])
        entries = [build_flagged_entry(r, 0.0) for r in marked.iter_rows(named=True)]
        assert [e["npi"] for e in entries if e["confirmed_fraud"]] == ["1000000011"]
        assert build_flagged_entry(scored.row(0, named=True), 0.0)["confirmed_fraud"] is False

    def test_watchlist_artifact(self, scored):
        part = apply_threshold(scored, 0.5)
        artifact = build_watchlist_artifact(part, "column_logistic-v2-test")
        assert artifact["model_version"] == "column_logistic-v2-test"
        assert artifact["threshold"] == 0.5
        assert artifact["total_flagged"] == len(artifact["still_out_there"]) == part.total_flagged
        ranks = [e["risk_rank"] for e in artifact["still_out_there"]]
        assert ranks == sorted(ranks)
        assert sum(s["count"] for s in artifact["top_specialties"]) == part.total_flagged
        assert sum(s["count"] for s in artifact["top_states"]) == part.total_flagged

    def test_diagnostics_artifact(self, scored):
        model = make_model(["z_payment"], {"z_payment": 0.75, "total_payments": 0.25})
        part = apply_threshold(scored, 0.5)
        artifact = build_diagnostics_artifact(
            model, part, total_scored=len(scored),
            label_coverage={"positives": 2}, ingest={"rejected_rows": 0}, peer_groups={"specialties": 2},
        )
        assert artifact["feature_schema_version"] == FEATURE_SCHEMA_VERSION
        assert artifact["cv"] == {"n_folds": 2, "fold_aucs": [0.9, 0.8], "mean_auc": 0.85, "std_auc": 0.05}
        assert artifact["total_providers_scored"] == 12
        assert artifact["feature_importance"] == [
            {"name": "z_payment", "label": "Z-Score (Payment)", "weight": 0.75},
            {"name": "total_payments", "label": "Total Payments", "weight": 0.25},
        ]
        assert artifact["leakage_risk_features"] == ["years_active"]
        assert artifact["label_coverage"] == {"positives": 2}


class TestWriters:
    """Tests for artifact and table writers."""

    def test_write_artifact_is_byte_identical(self, scored, tmp_path):
        artifact = build_watchlist_artifact(apply_threshold(scored, 0.5), "v")
        a, b = tmp_path / "a.json", tmp_path / "b.json"
        write_artifact(artifact, str(a))
        write_artifact(json.loads(json.dumps(artifact)), str(b))
        assert a.read_bytes() == b.read_bytes()
        text = a.read_text()
        assert "generated_at" not in text
        assert json.loads(text) == json.loads(json.dumps(artifact))

    def test_watchlist_csv(self, scored, tmp_path):
        part = apply_threshold(scored, 0.5)
        path = tmp_path / "out" / "watchlist.csv"
        write_watchlist_csv(part.flagged, str(path))
        df = pl.read_csv(path, infer_schema_length=0)
        assert df.columns == [
            "npi", "specialty", "state", "total_payments", "fraud_probability", "risk_rank", "top_risk_factors",
        ]
        assert len(df) == part.total_flagged
        assert df["top_risk_factors"][0] == "Z-Score (Payment)"

    def test_scores_round_trip(self, scored, tmp_path):
        path = str(tmp_path / "scores.parquet")
        write_scores(scored, path)
        assert read_scores(path).equals(scored)


class TestJsonSerializer:
    """Tests for _json_serializer()."""

    def test_serializes_date(self):
        assert _json_serializer(date(2024, 1, 15)) == "2024-01-15"

    def test_serializes_numpy_scalar(self):
        import numpy as np
        assert _json_serializer(np.float64(0.5)) == 0.5

    def test_raises_on_unknown(self):
        with pytest.raises(TypeError):
            _json_serializer(object())
