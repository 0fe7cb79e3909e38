"""Label resolver - maps confirmed-fraud identifiers onto billing providers.

Positives are confirmed-fraud providers with enough billing history to be
useful training examples. Every other provider in the eligible population is
unlabeled and trained on as a negative.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import polars as pl

from provider_risk.aggregate import ProviderAggregates
from provider_risk.config import PipelineConfig
from provider_risk.errors import LabelConflictError


log = logging.getLogger(__name__)


def canonical_identifier(expr: pl.Expr) -> pl.Expr:
    """Trimmed digit string zero-padded to 10 characters; null if unusable."""
    text = expr.cast(pl.Utf8).str.strip_chars()
    padded = text.str.zfill(10)
    return (
        pl.when(text.str.contains(r"^\d+$") & (padded != "0000000000"))
        .then(padded)
        .otherwise(pl.lit(None, dtype=pl.Utf8))
    )


@dataclass(frozen=True)
class FraudIdentifiers:
    """Union of the exclusion registry and the prosecution list."""

    identifiers: pl.DataFrame
    dropped: int = 0

    def __len__(self) -> int:
        return len(self.identifiers)


def canonical_fraud_identifiers(
    exclusions: pl.DataFrame,
    prosecutions: Optional[pl.DataFrame] = None,
) -> FraudIdentifiers:
    """Union both sources on canonical identifier.

    Empty, non-digit and all-zero identifiers are dropped and counted.

    Returns:
        FraudIdentifiers whose frame has identifier, in_exclusions and
        in_prosecutions columns, sorted by identifier.
    """
    sources = [exclusions.select(pl.col("identifier"), pl.lit("exclusion").alias("source"))]
    if prosecutions is not None and not prosecutions.is_empty():
        sources.append(prosecutions.select(pl.col("identifier"), pl.lit("prosecution").alias("source")))

    raw = pl.concat([s.with_columns(pl.col("identifier").cast(pl.Utf8)) for s in sources])
    canon = raw.with_columns(canonical_identifier(pl.col("identifier")).alias("identifier"))
    valid = canon.filter(pl.col("identifier").is_not_null())
    dropped = len(canon) - len(valid)
    if dropped:
        log.info("Dropped %d unusable fraud identifiers (empty, non-digit or all zeros)", dropped)

    ids = (
        valid
        .group_by("identifier")
        .agg([
            (pl.col("source") == "exclusion").any().alias("in_exclusions"),
            (pl.col("source") == "prosecution").any().alias("in_prosecutions"),
        ])
        .sort("identifier")
    )
    return FraudIdentifiers(ids, dropped)


def validate_crosswalk(crosswalk: pl.DataFrame) -> pl.DataFrame:
    """Canonicalize a crosswalk and require it to be one-to-one.

    Raises:
        LabelConflictError: On duplicated pairs, an identifier mapped to more
            than one provider, or a provider mapped from more than one identifier.
    """
    cw = crosswalk.select([
        canonical_identifier(pl.col("identifier")).alias("identifier"),
        canonical_identifier(pl.col("provider_id")).alias("provider_id"),
    ])
    unusable = cw.filter(pl.col("identifier").is_null() | pl.col("provider_id").is_null())
    if not unusable.is_empty():
        log.warning("Ignoring %d crosswalk rows with unusable identifiers", len(unusable))
        cw = cw.drop_nulls()

    duplicated = cw.filter(cw.is_duplicated())
    if not duplicated.is_empty():
        raise LabelConflictError(
            "crosswalk contains duplicated mappings",
            invariant="each identifier maps to exactly one provider_id",
            detail=sorted(duplicated["identifier"].unique().to_list()),
        )

    for key, other in (("identifier", "provider_id"), ("provider_id", "identifier")):
        conflicts = (
            cw.group_by(key)
            .agg(pl.col(other).n_unique().alias("n"))
            .filter(pl.col("n") > 1)
            .sort(key)
        )
        if not conflicts.is_empty():
            raise LabelConflictError(
                f"crosswalk maps a {key} to several {other} values",
                invariant="identifier <-> provider_id mapping is one-to-one",
                detail=conflicts[key].to_list(),
            )
    return cw


def _check_single_source(mapped: pl.DataFrame) -> None:
    """Fail when the self-fallback lets two identifiers land on one provider."""
    collisions = (
        mapped
        .group_by("provider_id")
        .agg(pl.col("identifier").sort().alias("identifiers"))
        .filter(pl.col("identifiers").list.len() > 1)
        .sort("provider_id")
    )
    if not collisions.is_empty():
        raise LabelConflictError(
            "several fraud identifiers resolve to the same provider",
            invariant="identifier <-> provider_id mapping is one-to-one",
            detail={row["provider_id"]: row["identifiers"] for row in collisions.iter_rows(named=True)},
        )


@dataclass(frozen=True)
class LabelCoverage:
    fraud_identifiers: int = 0
    dropped_identifiers: int = 0
    matched_providers: int = 0
    unmatched_identifiers: int = 0
    insufficient_history: int = 0
    positives: int = 0
    eligible_population: int = 0

    def to_dict(self) -> dict:
        return {
            "fraud_identifiers": self.fraud_identifiers,
            "dropped_identifiers": self.dropped_identifiers,
            "matched_providers": self.matched_providers,
            "unmatched_identifiers": self.unmatched_identifiers,
            "insufficient_history": self.insufficient_history,
            "positives": self.positives,
            "eligible_population": self.eligible_population,
        }


@dataclass(frozen=True)
class LabelSet:
    """Positive labels plus the population they are drawn from.

    ``positives`` and ``eligible`` are sorted provider_id tuples;
    ``excluded_from_training`` holds confirmed-fraud providers that lack history.
    """

    positives: tuple[str, ...]
    eligible: tuple[str, ...]
    excluded_from_training: tuple[str, ...] = ()
    coverage: LabelCoverage = field(default_factory=LabelCoverage)

    @property
    def confirmed(self) -> tuple[str, ...]:
        """Every billing provider matched to a fraud identifier, eligible or not."""
        return tuple(sorted(set(self.positives) | set(self.excluded_from_training)))

    def to_frame(self) -> pl.DataFrame:
        """(provider_id, is_fraud) for every eligible provider."""
        positives = set(self.positives)
        return pl.DataFrame(
            {
                "provider_id": list(self.eligible),
                "is_fraud": [pid in positives for pid in self.eligible],
            },
            schema={"provider_id": pl.Utf8, "is_fraud": pl.Boolean},
        )


def resolve_labels(
    fraud_ids: FraudIdentifiers,
    aggregates: ProviderAggregates,
    config: PipelineConfig,
    crosswalk: Optional[pl.DataFrame] = None,
) -> LabelSet:
    """Match fraud identifiers to providers and apply the history minimum.

    Without a crosswalk the identifier is the provider_id. With one,
    identifiers absent from it still fall back to matching on themselves.

    Args:
        fraud_ids: From canonical_fraud_identifiers().
        aggregates: Provider aggregates for the whole population.
        config: Supplies min_label_services and min_label_years.
        crosswalk: Optional (identifier, provider_id) mapping.

    Raises:
        LabelConflictError: If the crosswalk is not one-to-one, or if a
            crosswalk target is also reached by an identifier matching itself.
    """
    ids = fraud_ids.identifiers.select("identifier")
    if crosswalk is not None:
        cw = validate_crosswalk(crosswalk)
        mapped = (
            ids.join(cw, on="identifier", how="left")
            .with_columns(pl.coalesce([pl.col("provider_id"), pl.col("identifier")]).alias("provider_id"))
        )
        _check_single_source(mapped)
    else:
        mapped = ids.with_columns(pl.col("identifier").alias("provider_id"))

    providers = aggregates.providers.select(["provider_id", "total_services", "years_active"])
    eligible_mask = (
        (pl.col("total_services") >= config.min_label_services)
        & (pl.col("years_active") >= config.min_label_years)
    )
    eligible = providers.filter(eligible_mask)["provider_id"].sort().to_list()

    matched = mapped.join(providers, on="provider_id", how="inner")
    unmatched = len(mapped) - len(matched)
    matched_ids = set(matched["provider_id"].to_list())
    eligible_set = set(eligible)

    positives = tuple(sorted(matched_ids & eligible_set))
    short_history = tuple(sorted(matched_ids - eligible_set))

    coverage = LabelCoverage(
        fraud_identifiers=len(fraud_ids),
        dropped_identifiers=fraud_ids.dropped,
        matched_providers=len(matched_ids),
        unmatched_identifiers=unmatched,
        insufficient_history=len(short_history),
        positives=len(positives),
        eligible_population=len(eligible),
    )
    if short_history:
        log.info(
            "%d confirmed-fraud providers excluded from training for short history "
            "(< %d services or < %d active years)",
            len(short_history), config.min_label_services, config.min_label_years,
        )
    log.info(
        "Label coverage: %d identifiers, %d matched, %d unmatched, %d positives in %d eligible",
        coverage.fraud_identifiers, coverage.matched_providers, coverage.unmatched_identifiers,
        coverage.positives, coverage.eligible_population,
    )
    return LabelSet(positives, tuple(eligible), short_history, coverage)
