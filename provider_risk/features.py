"""Feature vector builder.

Turns provider aggregates plus peer baselines into one fixed-schema row per
provider. Pure and deterministic: no I/O, output sorted by provider_id, every
feature finite. Ratios with a zero denominator are 0 and set the matching
``*_undefined`` flag.
"""
from __future__ import annotations

import polars as pl

from provider_risk.aggregate import ProviderAggregates
from provider_risk.config import PipelineConfig
from provider_risk.peers import PeerTable, Z_COLUMNS, apply_peer_zscores, safe_ratio


FEATURE_SCHEMA_VERSION = 2

IDENTITY_COLUMNS = ["provider_id", "specialty", "state", "entity_type", "peer_baseline"]

FLAG_COLUMNS = [
    "markup_undefined",
    "per_bene_undefined",
    "per_service_undefined",
    "upcoding_undefined",
]

FEATURE_COLUMNS = [
    # direct
    "total_payments",
    "total_services",
    "total_beneficiaries",
    "markup_ratio",
    # derived ratios
    "services_per_beneficiary",
    "payment_per_service",
    "payment_per_beneficiary",
    # peer-relative
    *Z_COLUMNS,
    # procedure mix
    "hhi_concentration",
    "upcoding_ratio",
    "wound_share",
    "covid_share",
    "drug_share",
    # temporal
    "services_per_day",
    "beneficiaries_per_day",
    "years_active",
    *FLAG_COLUMNS,
]

FEATURE_LABELS: dict[str, str] = {
    "total_payments": "Total Payments",
    "total_services": "Total Services",
    "total_beneficiaries": "Total Beneficiaries",
    "markup_ratio": "Markup Ratio",
    "services_per_beneficiary": "Services / Beneficiary",
    "payment_per_service": "Payment / Service",
    "payment_per_beneficiary": "Payment / Beneficiary",
    "z_payment": "Z-Score (Payment)",
    "z_services": "Z-Score (Services)",
    "z_markup": "Z-Score (Markup)",
    "z_services_per_bene": "Z-Score (Services / Beneficiary)",
    "hhi_concentration": "Code Concentration (HHI)",
    "upcoding_ratio": "Upcoding Ratio",
    "wound_share": "Wound Care Share",
    "covid_share": "COVID Testing Share",
    "drug_share": "Part B Drug Share",
    "services_per_day": "Services / Day",
    "beneficiaries_per_day": "Beneficiaries / Day",
    "years_active": "Years Active",
    "markup_undefined": "Markup Undefined",
    "per_bene_undefined": "Per-Beneficiary Ratios Undefined",
    "per_service_undefined": "Per-Service Ratios Undefined",
    "upcoding_undefined": "No E&M Visits",
}

# Providers who were excluded stop billing, so tenure partly encodes the label.
LEAKY_FEATURES = ("years_active",)

# E&M visit families: low-intensity codes vs high-intensity codes
EM_FAMILIES: dict[str, tuple[frozenset, frozenset]] = {
    "established_office": (frozenset({"99212", "99213"}), frozenset({"99214", "99215"})),
    "new_patient_office": (frozenset({"99202", "99203"}), frozenset({"99204", "99205"})),
}
EM_LOW_CODES = frozenset().union(*(low for low, _ in EM_FAMILIES.values()))
EM_HIGH_CODES = frozenset().union(*(high for _, high in EM_FAMILIES.values()))

# Wound care: skin substitutes plus debridement and skin-graft application
WOUND_CODES = set()
for prefix, start, end in [
    ("Q", 4100, 4999),
    ("", 11042, 11047),
    ("", 15271, 15278),
    ("", 97597, 97598),
]:
    for n in range(start, end + 1):
        WOUND_CODES.add(f"{prefix}{n}")

COVID_CODES = {
    "K1034",
    "U0001", "U0002", "U0003", "U0004", "U0005",
    "87635", "87426",
    "0202U", "0223U", "0225U", "0240U", "0241U",
}


def procedure_features(code_distribution: pl.DataFrame) -> pl.DataFrame:
    """HHI, upcoding and category shares per provider from the per-code table.

    Args:
        code_distribution: (provider_id, procedure_code, services, payments).

    Returns:
        Frame keyed by provider_id with hhi_concentration, upcoding_ratio,
        upcoding_undefined, wound_share, covid_share and drug_share.
    """
    code = pl.col("procedure_code")
    services = pl.col("services")
    payments = pl.col("payments")

    per_provider = (
        code_distribution
        .with_columns(
            safe_ratio(services, services.sum().over("provider_id")).alias("_share")
        )
        .group_by("provider_id")
        .agg([
            (pl.col("_share") ** 2).sum().alias("hhi_concentration"),
            services.filter(code.is_in(list(EM_HIGH_CODES))).sum().alias("_em_high"),
            services.filter(code.is_in(list(EM_LOW_CODES | EM_HIGH_CODES))).sum().alias("_em_all"),
            payments.filter(code.is_in(list(WOUND_CODES))).sum().alias("_wound"),
            payments.filter(code.is_in(list(COVID_CODES))).sum().alias("_covid"),
            payments.filter(code.str.starts_with("J")).sum().alias("_drug"),
            payments.sum().alias("_payments"),
        ])
    )

    return per_provider.select([
        "provider_id",
        pl.col("hhi_concentration").clip(0.0, 1.0),
        safe_ratio(pl.col("_em_high"), pl.col("_em_all")).alias("upcoding_ratio"),
        (pl.col("_em_all") <= 0).cast(pl.Float64).alias("upcoding_undefined"),
        safe_ratio(pl.col("_wound"), pl.col("_payments")).alias("wound_share"),
        safe_ratio(pl.col("_covid"), pl.col("_payments")).alias("covid_share"),
        safe_ratio(pl.col("_drug"), pl.col("_payments")).alias("drug_share"),
    ])


def build_feature_vectors(
    aggregates: ProviderAggregates,
    peers: PeerTable,
    config: PipelineConfig,
) -> pl.DataFrame:
    """Build the feature frame: IDENTITY_COLUMNS followed by FEATURE_COLUMNS.

    Args:
        aggregates: Output of aggregate_billing().
        peers: Output of compute_peer_stats() over the same providers.
        config: Supplies z_epsilon and working_days_per_year.

    Returns:
        One row per provider, sorted by provider_id.
    """
    providers = apply_peer_zscores(aggregates.providers, peers, config)
    procedures = procedure_features(aggregates.code_distribution)

    days = float(config.working_days_per_year)
    payments = pl.col("total_payments")
    services = pl.col("total_services")
    benes = pl.col("total_beneficiaries")
    # per-day rates use the extract window, not the provider's own active years
    years = pl.lit(float(max(aggregates.data_years, 1)))

    frame = (
        providers
        .join(procedures, on="provider_id", how="left")
        .with_columns([
            pl.col("hhi_concentration").fill_null(0.0),
            pl.col("upcoding_ratio").fill_null(0.0),
            pl.col("upcoding_undefined").fill_null(1.0),
            pl.col("wound_share").fill_null(0.0),
            pl.col("covid_share").fill_null(0.0),
            pl.col("drug_share").fill_null(0.0),
        ])
        .with_columns([
            safe_ratio(payments, services).alias("payment_per_service"),
            safe_ratio(payments, benes).alias("payment_per_beneficiary"),
            (safe_ratio(services, years) / days).alias("services_per_day"),
            (safe_ratio(benes, years) / days).alias("beneficiaries_per_day"),
            (payments <= 0).cast(pl.Float64).alias("markup_undefined"),
            (benes <= 0).cast(pl.Float64).alias("per_bene_undefined"),
            (services <= 0).cast(pl.Float64).alias("per_service_undefined"),
        ])
    )

    feature_exprs = []
    for name in FEATURE_COLUMNS:
        col = pl.col(name).cast(pl.Float64)
        # any non-finite value left over from the inputs becomes 0
        feature_exprs.append(
            pl.when(col.is_finite()).then(col).otherwise(0.0).alias(name)
        )

    return frame.select(IDENTITY_COLUMNS + feature_exprs).sort("provider_id")


def model_feature_columns(config: PipelineConfig) -> list[str]:
    """Columns the classifier trains and scores on."""
    if config.exclude_leaky_features:
        return [c for c in FEATURE_COLUMNS if c not in LEAKY_FEATURES]
    return list(FEATURE_COLUMNS)
