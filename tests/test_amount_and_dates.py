import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ofx_statement_parser import Amount, StructuralParseError, parse_ofx_date, parse_ofx_datetime


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1234.56", "1234.56"),
        ("-42.5", "-42.50"),
        ("7", "7.00"),
        ("+5.25", "5.25"),
        ("  12.00\n", "12.00"),
        (".5", "0.50"),
        ("-0.001", "0.00"),
    ],
)
def test_amount_formats_with_two_decimals(raw, expected):
    assert str(Amount.parse(raw)) == expected


def test_amount_float_path_truncates():
    # 0.29 * 100 == 28.999999999999996 in binary floating point
    assert Amount.parse("0.29").cents == 28
    assert Amount.parse("0.29", exact=True).cents == 29


def test_exact_amount_truncates_extra_digits():
    assert Amount.parse("12.349", exact=True).cents == 1234
    assert Amount.parse("-12.349", exact=True).cents == -1234


@pytest.mark.parametrize("raw", ["1,234.56", "abc", "nan", "inf", "12.3.4", "1_000"])
def test_malformed_amount_is_zero(raw, caplog):
    with caplog.at_level(logging.WARNING, logger="ofx_statement_parser"):
        assert Amount.parse(raw) == Amount(0)
    assert caplog.records


def test_empty_amount_is_zero_without_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="ofx_statement_parser"):
        assert Amount.parse("  ") == Amount(0)
    assert not caplog.records


def test_overflowing_amount_is_zero():
    assert Amount.parse("1e400") == Amount(0)


@pytest.mark.parametrize("raw", ["1e1000000", "-1e1000000", "1e5000", "1e300"])
def test_huge_exact_amount_is_zero(raw, caplog):
    with caplog.at_level(logging.WARNING, logger="ofx_statement_parser"):
        assert Amount.parse(raw, exact=True) == Amount(0)
    assert "out of range" in caplog.text


def test_large_exact_amount_below_limit_is_kept():
    assert str(Amount.parse("1e20", exact=True)) == "100000000000000000000.00"


def test_amount_to_decimal():
    assert Amount(-4250).to_decimal() == Decimal("-42.50")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("20240105", date(2024, 1, 5)),
        ("20240105120000", date(2024, 1, 5)),
        ("20240105120000.000[-5:EST]", date(2024, 1, 5)),
        ("19991231junk", date(1999, 12, 31)),
    ],
)
def test_date_uses_eight_digit_prefix(raw, expected):
    assert parse_ofx_date(raw) == expected


@pytest.mark.parametrize("raw", ["", "2024", "2024010"])
def test_short_date_is_structural_error(raw):
    with pytest.raises(StructuralParseError, match="Invalid"):
        parse_ofx_date(raw, "posted_date")


@pytest.mark.parametrize("raw", ["2024AB01", "20240230", "20241301"])
def test_invalid_date_is_structural_error(raw):
    with pytest.raises(StructuralParseError):
        parse_ofx_date(raw)


def test_datetime_with_offset():
    got = parse_ofx_datetime("20240131120000.250[-5:EST]")
    assert got == datetime(2024, 1, 31, 12, 0, 0, 250000, tzinfo=timezone(timedelta(hours=-5)))


def test_datetime_without_offset_is_naive():
    got = parse_ofx_datetime("202401311230")
    assert got == datetime(2024, 1, 31, 12, 30)
    assert got.tzinfo is None


def test_datetime_date_only():
    assert parse_ofx_datetime("20240131") == datetime(2024, 1, 31)


@pytest.mark.parametrize("raw", ["2024", "20241340", "20240131[+99:XYZ]"])
def test_invalid_datetime(raw):
    with pytest.raises(StructuralParseError):
        parse_ofx_datetime(raw)
