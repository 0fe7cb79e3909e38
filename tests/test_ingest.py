"""Tests for the ingest module: column detection, NPI normalization, file loading."""
from datetime import date

import polars as pl
import pytest

from provider_risk.aggregate import validate_billing
from provider_risk.ingest import (
    BILLING_COLUMNS,
    detect_billing_columns,
    is_per_service_column,
    load_billing,
    load_crosswalk,
    load_exclusions,
    load_prosecutions,
    normalize_npi,
    standardize_billing,
    year_from_filename,
)
from tests.fixtures import make_cms_billing_df, make_leie_df


class TestDetectBillingColumns:
    """Tests for detect_billing_columns()."""

    def test_detects_cms_column_names(self):
        """CMS Physician & Other Practitioners names should be detected."""
        columns = make_cms_billing_df([{}]).columns
        mapping = detect_billing_columns(columns)
        assert mapping["provider_id"] == "Rndrng_NPI"
        assert mapping["procedure_code"] == "HCPCS_Cd"
        assert mapping["service_count"] == "Tot_Srvcs"
        assert mapping["beneficiary_count"] == "Tot_Benes"
        assert mapping["paid_amount_total"] == "Avg_Mdcr_Pymt_Amt"
        assert mapping["specialty"] == "Rndrng_Prvdr_Type"
        assert mapping["state"] == "Rndrng_Prvdr_State_Abrvtn"
        assert mapping["entity_type"] == "Rndrng_Prvdr_Ent_Cd"
        assert "year" not in mapping

    def test_detects_canonical_names(self):
        """Already-canonical extracts map onto themselves."""
        mapping = detect_billing_columns(BILLING_COLUMNS)
        assert mapping == {c: c for c in BILLING_COLUMNS}

    def test_detection_is_case_insensitive(self):
        columns = [c.upper() for c in make_cms_billing_df([{}]).columns]
        mapping = detect_billing_columns(columns)
        assert mapping["provider_id"] == "RNDRNG_NPI"
        assert mapping["procedure_code"] == "HCPCS_CD"

    def test_missing_required_column_raises(self):
        with pytest.raises(ValueError, match="paid_amount_total"):
            detect_billing_columns(["Rndrng_NPI", "HCPCS_Cd", "Tot_Srvcs", "Tot_Benes",
                                    "Avg_Sbmtd_Chrg", "Avg_Mdcr_Alowd_Amt",
                                    "Rndrng_Prvdr_Type", "Rndrng_Prvdr_State_Abrvtn"])

    def test_per_service_columns(self):
        assert is_per_service_column("Avg_Mdcr_Pymt_Amt")
        assert not is_per_service_column("paid_amount_total")


class TestNormalizeNpi:
    """Tests for normalize_npi()."""

    def test_normalizes_string_npi(self):
        """String NPI should be padded to 10 digits."""
        df = pl.DataFrame({"npi": ["1234567890"]})
        result = df.select(normalize_npi(pl.col("npi")).alias("npi"))
        assert result["npi"][0] == "1234567890"

    def test_pads_short_npi(self):
        df = pl.DataFrame({"npi": ["12345"]})
        result = df.select(normalize_npi(pl.col("npi")).alias("npi"))
        assert result["npi"][0] == "0000012345"

    def test_handles_integer_npi(self):
        df = pl.DataFrame({"npi": [1234567890]})
        result = df.select(normalize_npi(pl.col("npi")).alias("npi"))
        assert result["npi"][0] == "1234567890"

    def test_strips_whitespace(self):
        df = pl.DataFrame({"npi": ["  1234567890  "]})
        result = df.select(normalize_npi(pl.col("npi")).alias("npi"))
        assert result["npi"][0] == "1234567890"


class TestStandardizeBilling:
    """Tests for standardize_billing()."""

    def test_per_service_amounts_become_totals(self):
        raw = make_cms_billing_df([{"services": "10", "avg_payment": "80", "avg_allowed": "100", "avg_charge": "250"}])
        df = standardize_billing(raw, detect_billing_columns(raw.columns), year=2022)
        assert df.columns == BILLING_COLUMNS
        row = df.row(0, named=True)
        assert row["paid_amount_total"] == pytest.approx(800.0)
        assert row["allowed_amount_total"] == pytest.approx(1000.0)
        assert row["submitted_charge_total"] == pytest.approx(2500.0)
        assert row["year"] == 2022

    def test_unparseable_numbers_become_null(self):
        raw = make_cms_billing_df([{"services": "n/a"}])
        df = standardize_billing(raw, detect_billing_columns(raw.columns), year=2022)
        assert df["service_count"][0] is None

    def test_currency_formatting_is_tolerated(self):
        raw = make_cms_billing_df([{"services": "1,000", "avg_payment": "$1.50"}])
        df = standardize_billing(raw, detect_billing_columns(raw.columns), year=2022)
        assert df["service_count"][0] == pytest.approx(1000.0)
        assert df["paid_amount_total"][0] == pytest.approx(1500.0)

    def test_codes_and_states_uppercased(self):
        raw = make_cms_billing_df([{"hcpcs": "j1885", "state": "ca"}])
        df = standardize_billing(raw, detect_billing_columns(raw.columns), year=2022)
        assert df["procedure_code"][0] == "J1885"
        assert df["state"][0] == "CA"

    def test_year_column_kept_unrounded_for_validation(self):
        raw = make_cms_billing_df([{}, {}]).with_columns(pl.Series("Year", ["2023", "2023.5"]))
        df = standardize_billing(raw, detect_billing_columns(raw.columns))
        assert df["year"].to_list() == [2023.0, 2023.5]
        _, tally = validate_billing(df)
        assert tally.rejected == {"invalid_year": 1}


class TestYearFromFilename:

    def test_extracts_year(self):
        assert year_from_filename("data/billing/MUP_PHY_R24_P05_V10_D22_Prov_Svc_2022.csv") == 2022

    def test_no_year(self):
        assert year_from_filename("billing.csv") is None


class TestLoaders:
    """Tests for the file loaders."""

    def test_load_billing_reads_year_partitions(self, tmp_path):
        bdir = tmp_path / "billing"
        bdir.mkdir()
        make_cms_billing_df([{"npi": "1"}]).write_csv(bdir / "physician_2021.csv")
        make_cms_billing_df([{"npi": "2"}, {"npi": "3"}]).write_csv(bdir / "physician_2022.csv")

        df = load_billing(str(tmp_path))
        assert len(df) == 3
        assert sorted(df["year"].unique().to_list()) == [2021, 2022]
        assert df.filter(pl.col("year") == 2021)["provider_id"].to_list() == ["0000000001"]

    def test_load_billing_requires_files(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_billing(str(tmp_path))

    def test_load_billing_requires_a_year(self, tmp_path):
        bdir = tmp_path / "billing"
        bdir.mkdir()
        make_cms_billing_df([{}]).write_csv(bdir / "physician.csv")
        with pytest.raises(ValueError, match="no year"):
            load_billing(str(tmp_path))

    def test_load_exclusions_parses_dates(self, tmp_path):
        make_leie_df([{"npi": "1234567890", "excldate": "20190315"}, {"npi": ""}]).write_csv(
            tmp_path / "UPDATED.csv"
        )
        df = load_exclusions(str(tmp_path))
        assert df.columns == ["identifier", "exclusion_date", "reason_code"]
        assert df["exclusion_date"][0] == date(2019, 3, 15)
        assert df["reason_code"][0] == "1128(a)(1)"

    def test_load_exclusions_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="UPDATED.csv"):
            load_exclusions(str(tmp_path))

    def test_prosecutions_optional(self, tmp_path):
        df = load_prosecutions(str(tmp_path))
        assert df.is_empty()
        assert df.columns == ["identifier", "case_reference"]

    def test_load_prosecutions(self, tmp_path):
        pl.DataFrame({"npi": ["1234567890"], "case": ["US v. Doe"]}).write_csv(tmp_path / "prosecutions.csv")
        df = load_prosecutions(str(tmp_path))
        assert df.row(0) == ("1234567890", "US v. Doe")

    def test_crosswalk_optional(self, tmp_path):
        assert load_crosswalk(str(tmp_path)) is None

    def test_load_crosswalk_normalizes_provider_id(self, tmp_path):
        pl.DataFrame({"identifier": ["555"], "provider_id": ["12345"]}).write_csv(tmp_path / "crosswalk.csv")
        df = load_crosswalk(str(tmp_path))
        assert df.row(0) == ("555", "0000012345")
