"""Data ingestion module - loads the billing extract and the confirmed-fraud lists."""
import glob
import logging
import os
import re
from typing import Optional

import polars as pl

from provider_risk.config import DATA_DIR


log = logging.getLogger(__name__)

# Canonical billing columns, in output order
BILLING_COLUMNS = [
    "provider_id",
    "year",
    "procedure_code",
    "service_count",
    "beneficiary_count",
    "submitted_charge_total",
    "allowed_amount_total",
    "paid_amount_total",
    "specialty",
    "state",
    "entity_type",
]

MEASURE_COLUMNS = [
    "service_count",
    "beneficiary_count",
    "submitted_charge_total",
    "allowed_amount_total",
    "paid_amount_total",
]

MONETARY_COLUMNS = [
    "submitted_charge_total",
    "allowed_amount_total",
    "paid_amount_total",
]

# Known column name patterns for auto-detection
_PATTERNS: dict[str, list[str]] = {
    "provider_id": ["provider_id", "npi", "rndrng_npi", "rendering_npi", "provider_npi"],
    "year": ["year", "data_year", "srvc_yr", "service_year"],
    "procedure_code": ["procedure_code", "hcpcs_cd", "hcpcs", "hcpcs_code", "proc_cd"],
    "service_count": ["service_count", "tot_srvcs", "line_srvc_cnt", "services", "srvc_cnt"],
    "beneficiary_count": ["beneficiary_count", "tot_benes", "bene_unique_cnt", "bene_cnt", "tot_bene_cnt"],
    "submitted_charge_total": ["submitted_charge_total", "tot_sbmtd_chrg", "submitted_charges",
                               "avg_sbmtd_chrg", "average_submitted_chrg_amt"],
    "allowed_amount_total": ["allowed_amount_total", "tot_mdcr_alowd_amt", "allowed_amount",
                             "avg_mdcr_alowd_amt", "average_medicare_allowed_amt"],
    "paid_amount_total": ["paid_amount_total", "tot_mdcr_pymt_amt", "payment_amount",
                          "avg_mdcr_pymt_amt", "average_medicare_payment_amt"],
    "specialty": ["specialty", "rndrng_prvdr_type", "provider_type", "provider_specialty"],
    "state": ["state", "rndrng_prvdr_state_abrvtn", "nppes_provider_state", "provider_state"],
    "entity_type": ["entity_type", "rndrng_prvdr_ent_cd", "nppes_entity_code", "entity_code"],
}

# Monetary columns published as per-service averages; converted to totals
_PER_SERVICE_PATTERNS = {
    "avg_sbmtd_chrg",
    "average_submitted_chrg_amt",
    "avg_mdcr_alowd_amt",
    "average_medicare_allowed_amt",
    "avg_mdcr_pymt_amt",
    "average_medicare_payment_amt",
}

_REQUIRED = set(BILLING_COLUMNS) - {"year", "entity_type"}

_YEAR_IN_NAME = re.compile(r"(19|20)\d{2}")


def _match_column(columns_lower: dict[str, str], patterns: list[str]) -> Optional[str]:
    """Find the first matching column name from a list of patterns."""
    for p in patterns:
        if p in columns_lower:
            return columns_lower[p]
    return None


def detect_billing_columns(columns: list[str]) -> dict[str, str]:
    """Auto-detect billing extract column names and map to canonical aliases.

    Returns a dict mapping canonical names (see BILLING_COLUMNS) to the actual
    column names in the file. ``year`` and ``entity_type`` are optional.

    Raises:
        ValueError: If a required column cannot be detected.
    """
    cols_lower = {c.lower(): c for c in columns}
    mapping = {}
    for alias, patterns in _PATTERNS.items():
        match = _match_column(cols_lower, patterns)
        if match:
            mapping[alias] = match

    missing = _REQUIRED - set(mapping)
    if missing:
        raise ValueError(
            f"Could not detect billing columns for: {sorted(missing)}. "
            f"Available columns: {columns}"
        )
    return mapping


def is_per_service_column(name: str) -> bool:
    """True if a monetary column holds a per-service average rather than a total."""
    return name.lower() in _PER_SERVICE_PATTERNS


def normalize_npi(expr: pl.Expr) -> pl.Expr:
    """Normalize NPI column to 10-digit zero-padded string."""
    return expr.cast(pl.Utf8).str.strip_chars().str.zfill(10)


def _to_number(expr: pl.Expr) -> pl.Expr:
    """Cast to Float64, tolerating "$" and thousands separators; unparseable -> null."""
    return (
        expr.cast(pl.Utf8)
        .str.strip_chars()
        .str.replace_all(r"[$,]", "")
        .cast(pl.Float64, strict=False)
    )


def year_from_filename(path: str) -> Optional[int]:
    """Return the first 4-digit year in a file name, if any."""
    m = _YEAR_IN_NAME.search(os.path.basename(path))
    return int(m.group(0)) if m else None


def standardize_billing(df: pl.DataFrame, col_map: dict[str, str], year: Optional[int] = None) -> pl.DataFrame:
    """Rename a raw billing frame to the canonical schema.

    Measures and the year are cast to Float64; values that do not parse become null and are
    rejected later by the aggregator. Per-service average amounts are
    multiplied by the service count.

    Args:
        df: Raw billing frame as read from disk.
        col_map: Mapping from detect_billing_columns().
        year: Partition year to use when the frame has no year column.
    """
    services = _to_number(pl.col(col_map["service_count"]))
    exprs = [
        normalize_npi(pl.col(col_map["provider_id"])).alias("provider_id"),
        pl.col(col_map["procedure_code"]).cast(pl.Utf8).str.strip_chars().str.to_uppercase().alias("procedure_code"),
        services.alias("service_count"),
        _to_number(pl.col(col_map["beneficiary_count"])).alias("beneficiary_count"),
        pl.col(col_map["specialty"]).cast(pl.Utf8).str.strip_chars().alias("specialty"),
        pl.col(col_map["state"]).cast(pl.Utf8).str.strip_chars().str.to_uppercase().alias("state"),
    ]
    for alias in MONETARY_COLUMNS:
        source = col_map[alias]
        amount = _to_number(pl.col(source))
        if is_per_service_column(source):
            amount = amount * services
        exprs.append(amount.alias(alias))

    if "year" in col_map:
        exprs.append(_to_number(pl.col(col_map["year"])).alias("year"))
    else:
        exprs.append(pl.lit(year, dtype=pl.Float64).alias("year"))

    if "entity_type" in col_map:
        exprs.append(pl.col(col_map["entity_type"]).cast(pl.Utf8).str.strip_chars().str.to_uppercase().alias("entity_type"))
    else:
        exprs.append(pl.lit("I").alias("entity_type"))

    return df.select(exprs).select(BILLING_COLUMNS)


def _read_table(path: str) -> pl.DataFrame:
    if path.endswith(".parquet"):
        return pl.read_parquet(path)
    # Read every CSV column as text; numeric parsing is done in standardize_billing
    return pl.read_csv(path, infer_schema_length=0)


def load_billing(data_dir: Optional[str] = None) -> pl.DataFrame:
    """Load every year partition under ``<data_dir>/billing`` as one canonical frame."""
    ddir = data_dir or DATA_DIR
    bdir = os.path.join(ddir, "billing")
    files = sorted(
        glob.glob(os.path.join(bdir, "*.parquet")) + glob.glob(os.path.join(bdir, "*.csv"))
    )
    if not files:
        raise FileNotFoundError(f"No billing extract found in {bdir}.")

    frames = []
    for path in files:
        raw = _read_table(path)
        col_map = detect_billing_columns(raw.columns)
        year = year_from_filename(path)
        if "year" not in col_map and year is None:
            raise ValueError(f"Billing file {path} has no year column and no year in its name")
        frames.append(standardize_billing(raw, col_map, year))
        log.info("Billing partition %s: %d rows, mapping: %s", os.path.basename(path), len(raw), col_map)

    billing = pl.concat(frames, how="vertical")
    log.info("Billing extract: %d rows from %d partitions", len(billing), len(files))
    return billing


def load_exclusions(data_dir: Optional[str] = None) -> pl.DataFrame:
    """Load the exclusion registry (OIG LEIE layout).

    Key columns: NPI, EXCLDATE (YYYYMMDD), EXCLTYPE.

    Returns:
        Frame with identifier, exclusion_date and reason_code columns.
    """
    ddir = data_dir or DATA_DIR
    path = os.path.join(ddir, "UPDATED.csv")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Exclusion registry not found at {path}.")

    df = pl.read_csv(path, infer_schema_length=0)
    cols_lower = {c.lower(): c for c in df.columns}
    npi_col = _match_column(cols_lower, ["npi", "identifier"])
    if npi_col is None:
        raise ValueError(f"Exclusion registry {path} has no NPI column: {df.columns}")
    date_col = _match_column(cols_lower, ["excldate", "exclusion_date"])
    reason_col = _match_column(cols_lower, ["excltype", "reason_code"])

    out = df.select([
        pl.col(npi_col).cast(pl.Utf8).alias("identifier"),
        (
            pl.col(date_col).cast(pl.Utf8).str.strptime(pl.Date, "%Y%m%d", strict=False)
            if date_col else pl.lit(None, dtype=pl.Date)
        ).alias("exclusion_date"),
        (pl.col(reason_col).cast(pl.Utf8) if reason_col else pl.lit(None, dtype=pl.Utf8)).alias("reason_code"),
    ])
    log.info("Exclusion registry: %d entries", len(out))
    return out


def load_prosecutions(data_dir: Optional[str] = None) -> pl.DataFrame:
    """Load the curated prosecution list (identifier, case_reference).

    The list is optional; a missing file yields an empty frame.
    """
    ddir = data_dir or DATA_DIR
    path = os.path.join(ddir, "prosecutions.csv")
    if not os.path.exists(path):
        log.info("No prosecution list at %s; using exclusion registry only", path)
        return pl.DataFrame(schema={"identifier": pl.Utf8, "case_reference": pl.Utf8})

    df = pl.read_csv(path, infer_schema_length=0)
    cols_lower = {c.lower(): c for c in df.columns}
    npi_col = _match_column(cols_lower, ["identifier", "npi"])
    case_col = _match_column(cols_lower, ["case_reference", "case", "reference"])
    if npi_col is None:
        raise ValueError(f"Prosecution list {path} has no identifier column: {df.columns}")
    out = df.select([
        pl.col(npi_col).cast(pl.Utf8).alias("identifier"),
        (pl.col(case_col).cast(pl.Utf8) if case_col else pl.lit(None, dtype=pl.Utf8)).alias("case_reference"),
    ])
    log.info("Prosecution list: %d entries", len(out))
    return out


def load_crosswalk(data_dir: Optional[str] = None) -> Optional[pl.DataFrame]:
    """Load the optional identifier -> provider_id crosswalk."""
    ddir = data_dir or DATA_DIR
    path = os.path.join(ddir, "crosswalk.csv")
    if not os.path.exists(path):
        return None
    df = pl.read_csv(path, infer_schema_length=0)
    missing = {"identifier", "provider_id"} - set(df.columns)
    if missing:
        raise ValueError(f"Crosswalk {path} is missing columns: {sorted(missing)}")
    out = df.select([
        pl.col("identifier").cast(pl.Utf8),
        normalize_npi(pl.col("provider_id")).alias("provider_id"),
    ])
    log.info("Identifier crosswalk: %d mappings", len(out))
    return out
