"""Record aggregator - folds billing lines into one profile per provider.

The fold is split into ``aggregate_partition`` (one shard), ``merge_partials``
(associative, commutative merge) and ``finalize``. Any partitioning of the
input rows, in any order, produces identical provider totals.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Optional

import polars as pl

from provider_risk.config import PipelineConfig
from provider_risk.errors import MalformedRecordError, RejectionRateError
from provider_risk.ingest import BILLING_COLUMNS, MONETARY_COLUMNS


log = logging.getLogger(__name__)

BILLING_SCHEMA: dict[str, Any] = {
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

COUNT_COLUMNS = ["service_count", "beneficiary_count"]

REJECT_REASONS = (
    "invalid_provider_id",
    "invalid_year",
    "missing_procedure_code",
    "non_numeric_count",
    "negative_count",
    "non_numeric_amount",
    "negative_amount",
)

_ATTRIBUTES = ("specialty", "state", "entity_type")
_UNKNOWN = {"specialty": "Unknown", "state": "UNKNOWN", "entity_type": "I"}


def _parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace("$", "").replace(",", "")
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class BillingLineRecord:
    """One provider x procedure code x year billing line. Never mutated."""

    provider_id: str
    year: int
    procedure_code: str
    service_count: float
    beneficiary_count: float
    submitted_charge_total: float
    allowed_amount_total: float
    paid_amount_total: float
    specialty: str
    state: str
    entity_type: str = "I"

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "BillingLineRecord":
        """Validate and build a record from a mapping of canonical column names.

        Raises:
            MalformedRecordError: On an unusable provider id, year or
                procedure code, or on non-numeric or negative measures.
        """
        raw_id = row.get("provider_id")
        provider_id = str(raw_id).strip().zfill(10) if raw_id is not None else ""
        if not provider_id.isdigit() or provider_id == "0000000000":
            raise MalformedRecordError("unusable provider id", "invalid_provider_id", dict(row))

        year = _parse_number(row.get("year"))
        if year is None or year != int(year):
            raise MalformedRecordError("year is not an integer", "invalid_year", dict(row))

        code = str(row.get("procedure_code") or "").strip().upper()
        if not code:
            raise MalformedRecordError("procedure code is missing", "missing_procedure_code", dict(row))

        values: dict[str, float] = {}
        for name in COUNT_COLUMNS:
            number = _parse_number(row.get(name))
            if number is None:
                raise MalformedRecordError(f"{name} is not numeric", "non_numeric_count", dict(row))
            if number < 0:
                raise MalformedRecordError(f"{name} is negative", "negative_count", dict(row))
            values[name] = number
        for name in MONETARY_COLUMNS:
            number = _parse_number(row.get(name))
            if number is None:
                raise MalformedRecordError(f"{name} is not numeric", "non_numeric_amount", dict(row))
            if number < 0:
                raise MalformedRecordError(f"{name} is negative", "negative_amount", dict(row))
            values[name] = number

        attrs = {}
        for name in _ATTRIBUTES:
            value = row.get(name)
            text = str(value).strip() if value is not None else ""
            attrs[name] = text or _UNKNOWN[name]

        return cls(
            provider_id=provider_id,
            year=int(year),
            procedure_code=code,
            specialty=attrs["specialty"],
            state=attrs["state"].upper(),
            entity_type=attrs["entity_type"].upper(),
            **values,
        )


@dataclass(frozen=True)
class RejectionTally:
    """Count of input rows and of rejected rows by reason."""

    total_rows: int = 0
    rejected: dict[str, int] = field(default_factory=dict)

    @property
    def rejected_count(self) -> int:
        return sum(self.rejected.values())

    @property
    def rejection_rate(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.rejected_count / self.total_rows

    def merge(self, other: "RejectionTally") -> "RejectionTally":
        counts = Counter(self.rejected)
        counts.update(other.rejected)
        return RejectionTally(self.total_rows + other.total_rows, dict(sorted(counts.items())))

    def to_dict(self) -> dict:
        return {
            "total_rows": self.total_rows,
            "rejected_rows": self.rejected_count,
            "rejection_rate": round(self.rejection_rate, 6),
            "rejected_by_reason": dict(sorted(self.rejected.items())),
        }


def records_to_frame(records: Iterable[Mapping[str, Any]]) -> tuple[pl.DataFrame, RejectionTally]:
    """Validate mappings one at a time, dropping and tallying malformed ones."""
    valid = []
    total = 0
    reasons: Counter = Counter()
    for row in records:
        total += 1
        try:
            valid.append(asdict(BillingLineRecord.from_mapping(row)))
        except MalformedRecordError as e:
            reasons[e.reason] += 1
    df = pl.DataFrame(valid, schema=BILLING_SCHEMA)
    return df, RejectionTally(total, dict(sorted(reasons.items())))


def _any(exprs: list[pl.Expr]) -> pl.Expr:
    return pl.any_horizontal(exprs).fill_null(False)


def validate_billing(df: pl.DataFrame) -> tuple[pl.DataFrame, RejectionTally]:
    """Drop malformed billing rows from a canonical frame and tally them by reason."""
    frame = df.with_columns(
        [pl.col(c).cast(pl.Float64, strict=False) for c in COUNT_COLUMNS + MONETARY_COLUMNS]
        + [pl.col("year").cast(pl.Float64, strict=False)]
        + [pl.col(c).cast(pl.Utf8).fill_null(_UNKNOWN[c]) for c in _ATTRIBUTES]
    )

    pid = pl.col("provider_id")
    bad_number = lambda c: pl.col(c).is_null() | ~pl.col(c).is_finite()  # noqa: E731
    reason = (
        pl.when(pid.is_null() | (pid == "") | (pid == "0000000000") | ~pid.str.contains(r"^\d+$"))
        .then(pl.lit("invalid_provider_id"))
        .when(pl.col("year").is_null() | ~pl.col("year").is_finite() | (pl.col("year") != pl.col("year").floor()))
        .then(pl.lit("invalid_year"))
        .when(pl.col("procedure_code").is_null() | (pl.col("procedure_code") == ""))
        .then(pl.lit("missing_procedure_code"))
        .when(_any([bad_number(c) for c in COUNT_COLUMNS]))
        .then(pl.lit("non_numeric_count"))
        .when(_any([pl.col(c) < 0 for c in COUNT_COLUMNS]))
        .then(pl.lit("negative_count"))
        .when(_any([bad_number(c) for c in MONETARY_COLUMNS]))
        .then(pl.lit("non_numeric_amount"))
        .when(_any([pl.col(c) < 0 for c in MONETARY_COLUMNS]))
        .then(pl.lit("negative_amount"))
        .otherwise(pl.lit(None, dtype=pl.Utf8))
        .alias("_reject_reason")
    )
    frame = frame.with_columns(reason)

    counts = (
        frame
        .filter(pl.col("_reject_reason").is_not_null())
        .group_by("_reject_reason")
        .agg(pl.len().alias("n"))
        .sort("_reject_reason")
    )
    rejected = {row["_reject_reason"]: int(row["n"]) for row in counts.iter_rows(named=True)}
    valid = (
        frame
        .filter(pl.col("_reject_reason").is_null())
        .with_columns(pl.col("year").cast(pl.Int32))
        .select(BILLING_COLUMNS)
    )
    return valid, RejectionTally(len(df), rejected)


def check_rejection_rate(tally: RejectionTally, max_rate: float) -> None:
    """Log rejections and fail when the rejection rate exceeds the ceiling."""
    if tally.rejected_count:
        log.warning(
            "Rejected %d of %d billing rows (%.2f%%): %s",
            tally.rejected_count, tally.total_rows, 100 * tally.rejection_rate, tally.rejected,
        )
    if tally.rejection_rate > max_rate:
        raise RejectionRateError(
            "billing rejection rate exceeds the sanity ceiling",
            invariant=f"rejected rows <= {max_rate:.2%} of input",
            detail=tally.to_dict(),
        )


@dataclass(frozen=True)
class PartialAggregate:
    """Folded state for one shard of billing lines.

    Amounts are held as integer cents so totals do not depend on summation order.
    """

    codes: pl.DataFrame
    years: pl.DataFrame
    attributes: pl.DataFrame


_CODE_SCHEMA = {
    "provider_id": pl.Utf8,
    "procedure_code": pl.Utf8,
    "services": pl.Float64,
    "payments_cents": pl.Int64,
    "charges_cents": pl.Int64,
    "allowed_cents": pl.Int64,
}
_YEAR_SCHEMA = {
    "provider_id": pl.Utf8,
    "year": pl.Int32,
    "services": pl.Float64,
    "max_benes": pl.Float64,
}
_ATTR_SCHEMA = {
    "provider_id": pl.Utf8,
    "attribute": pl.Utf8,
    "value": pl.Utf8,
    "services": pl.Float64,
}


def _cents(col: str) -> pl.Expr:
    return (pl.col(col) * 100).round(0).cast(pl.Int64)


def empty_partial() -> PartialAggregate:
    return PartialAggregate(
        codes=pl.DataFrame(schema=_CODE_SCHEMA),
        years=pl.DataFrame(schema=_YEAR_SCHEMA),
        attributes=pl.DataFrame(schema=_ATTR_SCHEMA),
    )


def aggregate_partition(df: pl.DataFrame) -> PartialAggregate:
    """Fold one shard of validated billing lines."""
    if df.is_empty():
        return empty_partial()

    codes = (
        df
        .with_columns([
            _cents("paid_amount_total").alias("payments_cents"),
            _cents("submitted_charge_total").alias("charges_cents"),
            _cents("allowed_amount_total").alias("allowed_cents"),
        ])
        .group_by(["provider_id", "procedure_code"])
        .agg([
            pl.col("service_count").sum().alias("services"),
            pl.col("payments_cents").sum(),
            pl.col("charges_cents").sum(),
            pl.col("allowed_cents").sum(),
        ])
    )

    years = (
        df
        .group_by(["provider_id", "year"])
        .agg([
            pl.col("service_count").sum().alias("services"),
            pl.col("beneficiary_count").max().alias("max_benes"),
        ])
    )

    attributes = pl.concat([
        df
        .group_by(["provider_id", name])
        .agg(pl.col("service_count").sum().alias("services"))
        .select([
            "provider_id",
            pl.lit(name).alias("attribute"),
            pl.col(name).alias("value"),
            "services",
        ])
        for name in _ATTRIBUTES
    ])

    return PartialAggregate(
        codes=codes.cast(_CODE_SCHEMA),
        years=years.cast(_YEAR_SCHEMA),
        attributes=attributes.cast(_ATTR_SCHEMA),
    )


def merge_partials(partials: Iterable[PartialAggregate]) -> PartialAggregate:
    """Merge shard folds. Associative and commutative."""
    partials = list(partials)
    if not partials:
        return empty_partial()

    codes = (
        pl.concat([p.codes for p in partials])
        .group_by(["provider_id", "procedure_code"])
        .agg([
            pl.col("services").sum(),
            pl.col("payments_cents").sum(),
            pl.col("charges_cents").sum(),
            pl.col("allowed_cents").sum(),
        ])
    )
    years = (
        pl.concat([p.years for p in partials])
        .group_by(["provider_id", "year"])
        .agg([pl.col("services").sum(), pl.col("max_benes").max()])
    )
    attributes = (
        pl.concat([p.attributes for p in partials])
        .group_by(["provider_id", "attribute", "value"])
        .agg(pl.col("services").sum())
    )
    return PartialAggregate(
        codes=codes.cast(_CODE_SCHEMA),
        years=years.cast(_YEAR_SCHEMA),
        attributes=attributes.cast(_ATTR_SCHEMA),
    )


@dataclass(frozen=True)
class ProviderAggregates:
    """One row per provider plus the retained per-code service distribution.

    ``data_years`` is the number of distinct years in the extract.
    """

    providers: pl.DataFrame
    code_distribution: pl.DataFrame
    tally: RejectionTally = field(default_factory=RejectionTally)
    data_years: int = 0

    def __len__(self) -> int:
        return len(self.providers)


def _primary(attributes: pl.DataFrame, name: str) -> pl.DataFrame:
    """Value carrying the most services; ties go to the lexically smallest value."""
    return (
        attributes
        .filter(pl.col("attribute") == name)
        .sort(["provider_id", "services", "value"], descending=[False, True, False])
        .group_by("provider_id", maintain_order=True)
        .agg(pl.col("value").first().alias(name))
    )


def finalize(partial: PartialAggregate, tally: Optional[RejectionTally] = None) -> ProviderAggregates:
    """Turn merged partial state into provider profiles."""
    totals = (
        partial.codes
        .group_by("provider_id")
        .agg([
            (pl.col("payments_cents").sum() / 100).alias("total_payments"),
            pl.col("services").sum().alias("total_services"),
            (pl.col("charges_cents").sum() / 100).alias("total_charges"),
            (pl.col("allowed_cents").sum() / 100).alias("total_allowed"),
        ])
    )
    activity = (
        partial.years
        .group_by("provider_id")
        .agg([
            (pl.col("services") > 0).sum().cast(pl.Int64).alias("years_active"),
            pl.col("max_benes").sum().alias("total_beneficiaries"),
        ])
    )

    providers = totals.join(activity, on="provider_id", how="left")
    for name in _ATTRIBUTES:
        providers = providers.join(_primary(partial.attributes, name), on="provider_id", how="left")

    providers = (
        providers
        .with_columns([
            pl.col("years_active").fill_null(0),
            pl.col("total_beneficiaries").fill_null(0.0),
        ] + [pl.col(n).fill_null(_UNKNOWN[n]) for n in _ATTRIBUTES])
        .select([
            "provider_id",
            "specialty",
            "state",
            "entity_type",
            "total_payments",
            "total_services",
            "total_beneficiaries",
            "total_charges",
            "total_allowed",
            "years_active",
        ])
        .sort("provider_id")
    )

    code_distribution = (
        partial.codes
        .select([
            "provider_id",
            "procedure_code",
            "services",
            (pl.col("payments_cents") / 100).alias("payments"),
        ])
        .sort(["provider_id", "procedure_code"])
    )
    data_years = partial.years["year"].n_unique()
    return ProviderAggregates(providers, code_distribution, tally or RejectionTally(), data_years)


def shard_frame(df: pl.DataFrame, n_shards: int) -> list[pl.DataFrame]:
    """Split rows into shards by a hash of provider_id."""
    if n_shards <= 1:
        return [df]
    keyed = df.with_columns((pl.col("provider_id").hash(seed=0) % n_shards).alias("_shard"))
    return [keyed.filter(pl.col("_shard") == i).drop("_shard") for i in range(n_shards)]


def aggregate_billing(df: pl.DataFrame, config: PipelineConfig) -> ProviderAggregates:
    """Validate, shard, fold in parallel, merge and finalize billing lines.

    Args:
        df: Canonical billing frame (see ingest.BILLING_COLUMNS).
        config: Supplies the rejection ceiling and sharding settings.

    Returns:
        ProviderAggregates for every provider with at least one valid line.

    Raises:
        RejectionRateError: If more than ``max_rejection_rate`` of rows are malformed.
    """
    valid, tally = validate_billing(df)
    check_rejection_rate(tally, config.max_rejection_rate)

    shards = shard_frame(valid, config.aggregation_shards)
    if len(shards) == 1:
        partials = [aggregate_partition(shards[0])]
    else:
        with ThreadPoolExecutor(max_workers=config.aggregation_workers) as pool:
            partials = list(pool.map(aggregate_partition, shards))

    result = finalize(merge_partials(partials), tally)
    log.info(
        "Aggregated %d valid billing rows into %d providers (%d shards)",
        len(valid), len(result), len(shards),
    )
    return result
