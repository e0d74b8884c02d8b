"""
Unit tests for the row normalizer
"""

import pytest
from datetime import date
from decimal import Decimal
from reconciliation.normalizer import (
    RowNormalizer,
    display_label,
    find_detail_header,
    find_summary_header,
    strip_header,
)


class TestCellParsers:
    """Test the per-cell parse helpers"""

    def test_parse_decimal_money(self):
        """Thousands separators are removed"""
        assert RowNormalizer.parse_decimal("5,000,000") == Decimal("5000000")
        assert RowNormalizer.parse_decimal(" 1250.50 ") == Decimal("1250.50")
        assert RowNormalizer.parse_decimal(42) == Decimal("42")

    @pytest.mark.parametrize("value", [None, "", "-", "abc", "NaN", float("nan"), True])
    def test_parse_decimal_unparseable(self, value):
        """Unparseable cells become None, never an exception"""
        assert RowNormalizer.parse_decimal(value) is None

    def test_parse_int_from_float_text(self):
        assert RowNormalizer.parse_int("10.0") == 10
        assert RowNormalizer.parse_int("-") is None

    def test_parse_percent(self):
        """Percent cells are stored as a fraction of 1"""
        assert RowNormalizer.parse_percent("85%") == Decimal("0.85")
        assert RowNormalizer.parse_percent("85") == Decimal("0.85")
        assert RowNormalizer.parse_percent("0.85") == Decimal("0.85")
        assert RowNormalizer.parse_percent("") is None

    def test_parse_date_formats(self):
        assert RowNormalizer.parse_date("1/15/2024") == date(2024, 1, 15)
        assert RowNormalizer.parse_date("3/7/24") == date(2024, 3, 7)
        assert RowNormalizer.parse_date("2024-02-29") == date(2024, 2, 29)

    @pytest.mark.parametrize("value", ["13/45/2024", "1/2", "5/5/1999", "not a date", "-", None])
    def test_parse_date_rejects_invalid(self, value):
        """Invalid and out-of-range dates become None"""
        assert RowNormalizer.parse_date(value) is None

    def test_parse_text(self):
        assert RowNormalizer.parse_text("  Jl. Pemuda  ") == "Jl. Pemuda"
        assert RowNormalizer.parse_text("-") is None
        assert RowNormalizer.parse_text("   ") is None


class TestIdentityCleanup:
    """Test identity and sequence number cleanup"""

    def test_clean_identity_strips_apostrophe(self):
        assert RowNormalizer.clean_identity("'1002237835") == "1002237835"

    def test_clean_identity_float_rendered(self):
        assert RowNormalizer.clean_identity("1002237835.0") == "1002237835"
        assert RowNormalizer.clean_identity(1002237835.0) == "1002237835"

    def test_clean_identity_blank(self):
        assert RowNormalizer.clean_identity(None) == ""
        assert RowNormalizer.clean_identity(" - ") == ""

    def test_sequence_no_padding(self):
        assert RowNormalizer.normalize_sequence_no("1", 5) == "0001"
        assert RowNormalizer.normalize_sequence_no("No. 12", 5) == "0012"
        assert RowNormalizer.normalize_sequence_no(7.0, 5) == "0007"

    def test_sequence_no_falls_back_to_row_number(self):
        assert RowNormalizer.normalize_sequence_no("", 17) == "0017"
        assert RowNormalizer.normalize_sequence_no(None, 3) == "0003"

    def test_is_numeric_identity(self):
        assert RowNormalizer.is_numeric_identity("1002249961")
        assert not RowNormalizer.is_numeric_identity("SC-9981")
        assert not RowNormalizer.is_numeric_identity("")


class TestEnumTokens:
    """Test enum canonicalization"""

    @pytest.mark.parametrize("raw,expected", [
        ("2. Go Live!", "GO_LIVE"),
        ("go live", "GO_LIVE"),
        ("Waiting  Budget", "WAITING_BUDGET"),
        ("PT2", "PT2"),
        ("-", None),
        ("", None),
        (None, None),
    ])
    def test_normalize_enum(self, raw, expected):
        assert RowNormalizer.normalize_enum(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("GOLIVE", "GO_LIVE"),
        ("Go-Live", "GO_LIVE"),
        ("3. Done Instalasi", "DONE_INSTALASI"),
        ("waiting   cb", "WAITING_CB"),
        ("Something New", "SOMETHING_NEW"),
    ])
    def test_installation_status_synonyms(self, raw, expected):
        assert RowNormalizer.normalize_installation_status(raw) == expected

    def test_display_label(self):
        assert display_label("GO_LIVE") == "Go Live"
        assert display_label("PT2") == "Pt2"


class TestHeaderDetection:
    """Test header row detection"""

    def test_find_summary_header(self, summary_header):
        rows = [["REKAP SURVEY"], summary_header, ["1", "Review"]]
        assert find_summary_header(rows) == 1

    def test_find_detail_header(self, detail_header):
        rows = [["DETAIL"], [], detail_header, ["1"]]
        assert find_detail_header(rows) == 2

    def test_detail_header_needs_three_labels(self):
        assert find_detail_header([["ID KENDALA", "STO"]]) == -1

    def test_strip_header_returns_first_row_number(self, summary_header):
        rows = [["title"], summary_header, ["a"], ["b"]]
        data, first = strip_header(rows, find_summary_header(rows))
        assert data == [["a"], ["b"]]
        assert first == 3

    def test_strip_header_without_header(self):
        """Without a detected header the first two rows are dropped"""
        data, first = strip_header([["x"], ["y"], ["z"]], -1)
        assert data == [["z"]]
        assert first == 3


class TestRowNormalization:
    """Test whole-row normalization"""

    def test_normalize_master(self, detail_row):
        normalizer = RowNormalizer()
        row = normalizer.normalize_master(
            detail_row("'1002237835", alternate_code="SC-9981", installation_status="Go Live"),
            row_number=4
        )

        assert row.row_number == 4
        assert row.case_id == "1002237835"
        assert row.alternate_service_code == "SC-9981"
        assert row.input_date == date(2024, 1, 15)
        assert row.budget_amount == Decimal("5000000")
        assert row.installation_status == "GO_LIVE"
        assert row.thematic_plan == "PT2"
        assert row.remark_category is None

    def test_normalize_master_skips_blank_case_id(self, detail_row):
        normalizer = RowNormalizer()
        assert normalizer.normalize_master(detail_row("-"), 2) is None
        assert normalizer.normalize_master([], 2) is None

    def test_normalize_summary(self, summary_row):
        normalizer = RowNormalizer()
        row = normalizer.normalize_summary(
            summary_row("3", "1002237835.0", job_status="Go Live", thematic_plan="PT 2"),
            row_number=5
        )

        assert row.sequence_no == "0003"
        assert row.raw_identity == "1002237835"
        assert row.job_status == "GO_LIVE"
        assert row.cost_ratio == Decimal("0.45")
        assert row.contract_value == Decimal("5000000")
        assert row.design_ref == 12
        assert row.thematic_plan == "PT_2"
        assert row.thematic_plan_label == "PT 2"

    def test_short_rows_are_padded(self):
        """Rows shorter than the sheet width behave like blank trailing cells"""
        row = RowNormalizer().normalize_summary(["1", "Review", "", "1002237835"], 2)
        assert row.raw_identity == "1002237835"
        assert row.remark is None

    def test_normalize_rows_counts_skipped(self, summary_row):
        rows = [summary_row("1", "1002237835"), summary_row("2", "-"), [], summary_row("", "X-1")]
        normalized, skipped = RowNormalizer().normalize_summary_rows(rows, first_row_number=3)

        assert skipped == 2
        assert [r.row_number for r in normalized] == [3, 6]
        # Missing NO falls back to the sheet row number
        assert normalized[1].sequence_no == "0006"
