"""Tests for statement date normalization."""

from datetime import date

import pytest

from statement_ingest.parsers.dates import (
    excel_serial_to_date,
    find_date_token,
    infer_statement_year,
    normalize_date,
)


class TestNormalizeDate:
    """Test date token normalization."""

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("2025-03-15", date(2025, 3, 15)),
            ("15/03/2025", date(2025, 3, 15)),
            ("15-03-2025", date(2025, 3, 15)),
            ("15.03.2025", date(2025, 3, 15)),
            ("15 Mar 2025", date(2025, 3, 15)),
            ("15-Mar-2025", date(2025, 3, 15)),
            ("15 March 2025", date(2025, 3, 15)),
            ("15/03/25", date(2025, 3, 15)),
            ("Mar 15, 2025", date(2025, 3, 15)),
        ],
    )
    def test_formats_with_year(self, token, expected):
        """Should parse common statement formats."""
        result = normalize_date(token)
        assert result.value == expected
        assert result.is_fallback is False

    def test_ambiguous_dates_are_day_first(self):
        """04/05/2025 is 4 May, not April 5."""
        assert normalize_date("04/05/2025").value == date(2025, 5, 4)

    def test_strips_time_suffix(self):
        """Should ignore a trailing time of day."""
        assert normalize_date("07/01/2026 00:22:59").value == date(2026, 1, 7)

    def test_yearless_uses_context_year(self):
        """Yearless tokens take the statement year."""
        assert normalize_date("15-Mar", context_year=2024).value == date(2024, 3, 15)
        assert normalize_date("15/03", context_year=2023).value == date(2023, 3, 15)

    def test_yearless_without_context_uses_current_year(self):
        result = normalize_date("15 Mar")
        assert result.value == date(date.today().year, 3, 15)
        assert result.is_fallback is False

    def test_leap_day_with_context_year(self):
        """29 Feb is valid when the statement year is a leap year."""
        assert normalize_date("29/02", context_year=2024).value == date(2024, 2, 29)

    def test_garbage_falls_back_to_today(self):
        """Unparseable tokens degrade to today's date and never raise."""
        result = normalize_date("not a date")
        assert result.value == date.today()
        assert result.is_fallback is True

    def test_empty_token_falls_back(self):
        assert normalize_date("").is_fallback is True
        assert normalize_date(None).is_fallback is True

    def test_out_of_range_year_falls_back(self):
        """Years outside 1991-2099 are rejected."""
        assert normalize_date("01/01/1980").is_fallback is True

    def test_timestamp_is_midnight_iso(self):
        assert normalize_date("2025-03-15").timestamp == "2025-03-15T00:00:00"


class TestFindDateToken:
    """Test locating dates inside rows."""

    def test_finds_date_at_row_start(self):
        match = find_date_token("15/03/2025 POS Purchase 12,500.00")
        assert match.group(0) == "15/03/2025"

    def test_finds_month_name_dates(self):
        assert find_date_token("15-Mar-2025 Transfer").group(0) == "15-Mar-2025"
        assert find_date_token("15 Mar Salary").group(0) == "15 Mar"

    def test_amounts_are_not_dates(self):
        """Thousand-separated amounts must not look like dates."""
        assert find_date_token("Transfer 12,500.00") is None
        assert find_date_token("Balance 1.50") is None

    def test_no_date(self):
        assert find_date_token("Opening Balance") is None


class TestInferStatementYear:
    """Test contextual year detection."""

    def test_finds_year_in_header(self):
        lines = ["GTBank Statement", "Period: 01 Jan 2024 to 31 Mar 2024", "15-Mar POS 100.00"]
        assert infer_statement_year(lines) == 2024

    def test_only_scans_first_lines(self):
        lines = ["no year here"] * 60 + ["Statement 2023"]
        assert infer_statement_year(lines) is None

    def test_ignores_amounts(self):
        """'2,025.00' is an amount, not a year."""
        assert infer_statement_year(["Charge 2,025.00"]) is None


class TestExcelSerialToDate:
    """Test spreadsheet serial conversion."""

    def test_converts_serial(self):
        assert excel_serial_to_date(45658) == date(2025, 1, 1)

    def test_ignores_time_fraction(self):
        assert excel_serial_to_date(45658.75) == date(2025, 1, 1)

    def test_rejects_serial_out_of_range(self):
        """Numbers past 9999-12-31 are not dates."""
        with pytest.raises(ValueError):
            excel_serial_to_date(20250301)
        with pytest.raises(ValueError):
            excel_serial_to_date(0)
