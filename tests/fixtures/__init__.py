"""Synthetic test data generators for billing extracts, fraud lists and models."""
import random
from datetime import date

import numpy as np
import polars as pl

from provider_risk.config import PipelineConfig
from provider_risk.ingest import BILLING_COLUMNS
from provider_risk.model import ClassifierStrategy, TrainedModel


def make_billing_df(rows: list[dict]) -> pl.DataFrame:
    """Create a canonical billing DataFrame (see ingest.BILLING_COLUMNS).

    Each row may override: provider_id, year, procedure_code, service_count,
    beneficiary_count, submitted_charge_total, allowed_amount_total,
    paid_amount_total, specialty, state, entity_type.
    """
    defaults = {
        "provider_id": "1234567890",
        "year": 2022,
        "procedure_code": "99213",
        "service_count": 100.0,
        "beneficiary_count": 20.0,
        "submitted_charge_total": 20000.0,
        "allowed_amount_total": 10000.0,
        "paid_amount_total": 8000.0,
        "specialty": "Internal Medicine",
        "state": "CA",
        "entity_type": "I",
    }
    full_rows = []
    for r in rows:
        row = dict(defaults)
        row.update(r)
        full_rows.append(row)

    schema = {
        "provider_id": pl.Utf8,
        "year": pl.Int32,
        "procedure_code": pl.Utf8,
        "service_count": pl.Float64,
        "beneficiary_count": pl.Float64,
        "submitted_charge_total": pl.Float64,
        "allowed_amount_total": pl.Float64,
        "paid_amount_total": pl.Float64,
        "specialty": pl.Utf8,
        "state": pl.Utf8,
        "entity_type": pl.Utf8,
    }
    return pl.DataFrame(full_rows, schema=schema).select(BILLING_COLUMNS)


def make_cms_billing_df(rows: list[dict]) -> pl.DataFrame:
    """Create a raw CMS Physician & Other Practitioners style extract.

    Monetary columns are per-service averages, as published by CMS.
    """
    full_rows = []
    for r in rows:
        full_rows.append({
            "Rndrng_NPI": str(r.get("npi", "1234567890")),
            "Rndrng_Prvdr_Type": r.get("specialty", "Internal Medicine"),
            "Rndrng_Prvdr_State_Abrvtn": r.get("state", "CA"),
            "Rndrng_Prvdr_Ent_Cd": r.get("entity_type", "I"),
            "HCPCS_Cd": r.get("hcpcs", "99213"),
            "Tot_Benes": str(r.get("benes", "20")),
            "Tot_Srvcs": str(r.get("services", "100")),
            "Avg_Sbmtd_Chrg": str(r.get("avg_charge", "200")),
            "Avg_Mdcr_Alowd_Amt": str(r.get("avg_allowed", "100")),
            "Avg_Mdcr_Pymt_Amt": str(r.get("avg_payment", "80")),
        })
    return pl.DataFrame(full_rows)


def make_leie_df(rows: list[dict]) -> pl.DataFrame:
    """Create a synthetic LEIE exclusion file frame (raw layout, all text)."""
    full_rows = []
    for r in rows:
        row = {
            "LASTNAME": r.get("lastname", "DOE"),
            "FIRSTNAME": r.get("firstname", "JOHN"),
            "NPI": str(r.get("npi", "")),
            "EXCLDATE": r.get("excldate", "20200101"),
            "EXCLTYPE": r.get("excltype", "1128(a)(1)"),
            "REINDATE": r.get("reindate", ""),
        }
        full_rows.append(row)
    return pl.DataFrame(full_rows)


def make_exclusions_df(identifiers: list) -> pl.DataFrame:
    """Create a loaded exclusion registry (identifier, exclusion_date, reason_code)."""
    return pl.DataFrame(
        {
            "identifier": [None if i is None else str(i) for i in identifiers],
            "exclusion_date": [date(2021, 1, 1)] * len(identifiers),
            "reason_code": ["1128(a)(1)"] * len(identifiers),
        },
        schema={"identifier": pl.Utf8, "exclusion_date": pl.Date, "reason_code": pl.Utf8},
    )


def make_prosecutions_df(identifiers: list) -> pl.DataFrame:
    """Create a loaded prosecution list (identifier, case_reference)."""
    return pl.DataFrame(
        {
            "identifier": [str(i) for i in identifiers],
            "case_reference": [f"DOJ-{n:04d}" for n in range(len(identifiers))],
        },
        schema={"identifier": pl.Utf8, "case_reference": pl.Utf8},
    )


def make_config(**overrides) -> PipelineConfig:
    """A small, fast config for tests."""
    settings = {
        "seed": 42,
        "threshold": 0.5,
        "min_peer_count": 5,
        "min_label_services": 50,
        "min_label_years": 1,
        "n_folds": 3,
        "n_estimators": 25,
        "top_risk_factors": 3,
    }
    settings.update(overrides)
    return PipelineConfig(**settings)


def _normal_provider(rng: random.Random, npi: str, specialty: str, state: str) -> list[dict]:
    rows = []
    for year in (2021, 2022):
        for code, low, high, rate in [("99213", 150, 250, 75), ("99214", 40, 80, 110), ("36415", 20, 60, 3)]:
            services = rng.randint(low, high)
            allowed = services * rate
            rows.append({
                "provider_id": npi,
                "year": year,
                "procedure_code": code,
                "service_count": float(services),
                "beneficiary_count": float(rng.randint(40, 80)),
                "submitted_charge_total": float(allowed * 2),
                "allowed_amount_total": float(allowed),
                "paid_amount_total": float(allowed * 0.8),
                "specialty": specialty,
                "state": state,
            })
    return rows


def _fraud_like_provider(rng: random.Random, npi: str, specialty: str, state: str) -> list[dict]:
    rows = []
    for year in (2021, 2022):
        for code, low, high, rate in [("99215", 300, 500, 150), ("99213", 10, 30, 75), ("J1885", 200, 400, 20)]:
            services = rng.randint(low, high)
            allowed = services * rate
            rows.append({
                "provider_id": npi,
                "year": year,
                "procedure_code": code,
                "service_count": float(services),
                "beneficiary_count": float(rng.randint(10, 20)),
                "submitted_charge_total": float(allowed * 6),
                "allowed_amount_total": float(allowed),
                "paid_amount_total": float(allowed * 0.8),
                "specialty": specialty,
                "state": state,
            })
    return rows


def make_population(
    n_normal: int = 60,
    n_fraud: int = 12,
    n_hidden: int = 0,
    seed: int = 7,
) -> tuple[pl.DataFrame, list[str], list[str]]:
    """Synthetic billing population with separable fraud-like providers.

    Returns:
        (billing frame, labeled fraud ids, unlabeled fraud-like ids). Fraud-like
        providers upcode to 99215, bill Part B drugs and mark charges up 6x.
    """
    rng = random.Random(seed)
    specialties = ["Internal Medicine", "Family Practice"]
    states = ["CA", "TX", "FL"]
    rows: list[dict] = []
    fraud_ids: list[str] = []
    hidden_ids: list[str] = []

    for i in range(n_normal):
        npi = f"1{i:09d}"
        rows.extend(_normal_provider(rng, npi, specialties[i % 2], states[i % 3]))
    for i in range(n_fraud):
        npi = f"9{i:09d}"
        fraud_ids.append(npi)
        rows.extend(_fraud_like_provider(rng, npi, specialties[i % 2], states[i % 3]))
    for i in range(n_hidden):
        npi = f"8{i:09d}"
        hidden_ids.append(npi)
        rows.extend(_fraud_like_provider(rng, npi, specialties[i % 2], states[i % 3]))

    return make_billing_df(rows), fraud_ids, hidden_ids


class ColumnLogisticStrategy(ClassifierStrategy):
    """Deterministic scorer for ranking tests: sigmoid of the first feature column."""

    name = "column_logistic"

    def build(self, seed):
        return None

    def fit(self, estimator, X, y):
        return None

    def predict_proba(self, estimator, X):
        return 1.0 / (1.0 + np.exp(-X[:, 0]))

    def importances(self, estimator, feature_columns):
        return {c: (1.0 if i == 0 else 0.0) for i, c in enumerate(feature_columns)}


def make_model(feature_columns: list[str], importance: dict = None) -> TrainedModel:
    """TrainedModel whose probability is sigmoid(feature_columns[0])."""
    weights = importance or {feature_columns[0]: 1.0}
    return TrainedModel(
        estimator=None,
        strategy=ColumnLogisticStrategy(),
        feature_columns=tuple(feature_columns),
        schema_version=2,
        model_version="column_logistic-v2-test",
        seed=42,
        fold_aucs=(0.9, 0.8),
        mean_auc=0.85,
        std_auc=0.05,
        feature_importance=tuple(sorted(weights.items(), key=lambda kv: (-kv[1], kv[0]))),
        training_examples=10,
        positive_examples=2,
    )
