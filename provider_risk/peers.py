"""Peer group normalizer - specialty baselines and z-scores.

Each specialty with enough providers is compared against its own median and
population standard deviation. Smaller specialties fall back to the global
baseline over all providers; the fallback is explicit in the returned variant
and logged, never silent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

import polars as pl

from provider_risk.config import PipelineConfig


log = logging.getLogger(__name__)

# metric name -> (source column, z-score column)
PEER_METRICS: dict[str, tuple[str, str]] = {
    "payments": ("total_payments", "z_payment"),
    "services": ("total_services", "z_services"),
    "markup_ratio": ("markup_ratio", "z_markup"),
    "services_per_beneficiary": ("services_per_beneficiary", "z_services_per_bene"),
}

Z_COLUMNS = [z for _, z in PEER_METRICS.values()]


def safe_ratio(numerator: pl.Expr, denominator: pl.Expr) -> pl.Expr:
    """numerator / denominator, or 0.0 when the denominator is not positive."""
    return pl.when(denominator > 0).then(numerator / denominator).otherwise(0.0)


def with_base_ratios(providers: pl.DataFrame) -> pl.DataFrame:
    """Add the ratio columns the peer baselines are computed over.

    markup_ratio is submitted charges over the amount actually paid.
    """
    return providers.with_columns([
        safe_ratio(pl.col("total_charges"), pl.col("total_payments")).alias("markup_ratio"),
        safe_ratio(pl.col("total_services"), pl.col("total_beneficiaries")).alias("services_per_beneficiary"),
    ])


@dataclass(frozen=True)
class PeerGroupStats:
    group: str
    peer_count: int
    medians: dict[str, float] = field(default_factory=dict)
    stds: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SufficientPeers:
    """Specialty large enough to serve as its own baseline."""

    stats: PeerGroupStats

    baseline = "specialty"

    @property
    def peer_count(self) -> int:
        return self.stats.peer_count


@dataclass(frozen=True)
class InsufficientPeers:
    """Specialty below ``min_peer_count``; ``stats`` is the global baseline."""

    stats: PeerGroupStats
    peer_count: int

    baseline = "global"


PeerVariant = Union[SufficientPeers, InsufficientPeers]


@dataclass(frozen=True)
class PeerTable:
    groups: dict[str, PeerVariant]
    global_stats: PeerGroupStats
    min_peer_count: int

    def lookup(self, specialty: str) -> PeerVariant:
        variant = self.groups.get(specialty)
        if variant is None:
            return InsufficientPeers(self.global_stats, 0)
        return variant

    def baseline_frame(self, specialties) -> pl.DataFrame:
        """Median and std each specialty is scored against, one row per specialty."""
        rows = []
        for specialty in sorted(set(specialties)):
            variant = self.lookup(specialty)
            if isinstance(variant, SufficientPeers):
                stats = variant.stats
            else:
                stats = self.global_stats
            row = {"specialty": specialty, "peer_baseline": variant.baseline}
            for metric in PEER_METRICS:
                row[f"_median_{metric}"] = stats.medians[metric]
                row[f"_std_{metric}"] = stats.stds[metric]
            rows.append(row)

        schema = {"specialty": pl.Utf8, "peer_baseline": pl.Utf8}
        for metric in PEER_METRICS:
            schema[f"_median_{metric}"] = pl.Float64
            schema[f"_std_{metric}"] = pl.Float64
        return pl.DataFrame(rows, schema=schema)

    def summary(self) -> dict:
        fallback = {
            name: v.peer_count
            for name, v in sorted(self.groups.items())
            if isinstance(v, InsufficientPeers)
        }
        return {
            "min_peer_count": self.min_peer_count,
            "specialties": len(self.groups),
            "specialty_baselines": len(self.groups) - len(fallback),
            "global_fallbacks": len(fallback),
            "fallback_specialties": fallback,
        }


def _stats_exprs() -> list[pl.Expr]:
    exprs = [pl.len().alias("peer_count")]
    for metric, (source, _) in PEER_METRICS.items():
        exprs.append(pl.col(source).median().alias(f"median_{metric}"))
        exprs.append(pl.col(source).std(ddof=0).alias(f"std_{metric}"))
    return exprs


def _to_stats(group: str, row: dict) -> PeerGroupStats:
    return PeerGroupStats(
        group=group,
        peer_count=int(row["peer_count"]),
        medians={m: float(row[f"median_{m}"] or 0.0) for m in PEER_METRICS},
        stds={m: float(row[f"std_{m}"] or 0.0) for m in PEER_METRICS},
    )


def compute_peer_stats(providers: pl.DataFrame, config: PipelineConfig) -> PeerTable:
    """Compute per-specialty baselines, falling back to global for small groups.

    Args:
        providers: ProviderAggregates.providers.
        config: Supplies min_peer_count.

    Returns:
        PeerTable with one SufficientPeers or InsufficientPeers per specialty.
    """
    frame = with_base_ratios(providers)
    global_row = frame.select(_stats_exprs()).row(0, named=True)
    global_stats = _to_stats("*", global_row)

    per_specialty = frame.group_by("specialty").agg(_stats_exprs()).sort("specialty")

    groups: dict[str, PeerVariant] = {}
    for row in per_specialty.iter_rows(named=True):
        specialty = row["specialty"]
        count = int(row["peer_count"])
        if count >= config.min_peer_count:
            groups[specialty] = SufficientPeers(_to_stats(specialty, row))
        else:
            log.warning(
                "Specialty %r has %d providers (< %d); using global baseline",
                specialty, count, config.min_peer_count,
            )
            groups[specialty] = InsufficientPeers(global_stats, count)

    table = PeerTable(groups, global_stats, config.min_peer_count)
    summary = table.summary()
    log.info(
        "Peer groups: %d specialties, %d with own baseline, %d on global fallback",
        summary["specialties"], summary["specialty_baselines"], summary["global_fallbacks"],
    )
    return table


def apply_peer_zscores(providers: pl.DataFrame, table: PeerTable, config: PipelineConfig) -> pl.DataFrame:
    """Add z_* columns and peer_baseline to provider rows.

    z = (value - median) / max(std, z_epsilon)
    """
    frame = with_base_ratios(providers)
    baselines = table.baseline_frame(frame["specialty"].unique().to_list())
    frame = frame.join(baselines, on="specialty", how="left")

    eps = pl.lit(config.z_epsilon)
    frame = frame.with_columns([
        (
            (pl.col(source) - pl.col(f"_median_{metric}"))
            / pl.max_horizontal(pl.col(f"_std_{metric}"), eps)
        ).alias(z_col)
        for metric, (source, z_col) in PEER_METRICS.items()
    ])

    helper = [c for c in frame.columns if c.startswith("_median_") or c.startswith("_std_")]
    return frame.drop(helper)
