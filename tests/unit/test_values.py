"""Unit tests for extracted value classification and normalization."""

from __future__ import annotations

import math

import pytest

from codified.extraction.values import (
    NumericValue,
    RawValue,
    TextValue,
    classify_value,
    normalize_value,
    parse_number,
)


class TestParseNumber:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("£1,250.50", 1250.5),
            ("1250", 1250.0),
            ("-42.5", -42.5),
            ("€ 3.000", 3.0),
            ("12 units", 12.0),
            (".75", 0.75),
        ],
    )
    def test_recovers_leading_number(self, text, expected):
        assert parse_number(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", ["N/A", "", "TBC", "-", "."])
    def test_returns_none_without_digits(self, text):
        assert parse_number(text) is None


class TestClassifyValue:
    def test_integer_stays_numeric(self):
        value = classify_value(1500)

        assert isinstance(value, NumericValue)
        assert value.raw == 1500
        assert value.normalized == 1500.0

    def test_currency_string_is_parsed_text(self):
        value = classify_value("£1,250.50")

        assert isinstance(value, TextValue)
        assert value.parsed
        assert value.normalized == pytest.approx(1250.5)

    def test_unparseable_text_is_visible(self):
        value = classify_value("N/A")

        assert isinstance(value, TextValue)
        assert not value.parsed
        assert value.number is None
        assert value.normalized == 0.0

    @pytest.mark.parametrize("raw", [None, True, False, [1, 2], {"a": 1}, math.nan, math.inf])
    def test_other_values_are_raw(self, raw):
        value = classify_value(raw)

        assert isinstance(value, RawValue)
        assert value.normalized == 0.0


def test_normalize_value_defaults_to_zero():
    assert normalize_value("N/A") == 0.0
    assert normalize_value(None) == 0.0
    assert normalize_value("£1,250.50") == pytest.approx(1250.5)
    assert normalize_value(99.5) == 99.5
