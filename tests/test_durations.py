"""Tests for duration and age parsing."""

import pytest

from k6runner.durations import format_seconds, parse_age, parse_duration
from k6runner.errors import InputError


class TestParseDuration:
    @pytest.mark.parametrize("value,expected", [
        ("30s", 30),
        ("2m", 120),
        ("1h", 3600),
        ("1m30s", 90),
        ("1h30m", 5400),
        ("45", 45),
        ("1500ms", 2),
    ])
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "2x", "m5", "1m 30s"])
    def test_invalid(self, value):
        with pytest.raises(InputError):
            parse_duration(value)


class TestParseAge:
    def test_hours(self):
        assert parse_age("2h") == 7200

    def test_days(self):
        assert parse_age("1d") == 86400

    def test_minutes(self):
        assert parse_age("30m") == 1800

    def test_unknown_unit(self):
        with pytest.raises(InputError, match="invalid time format"):
            parse_age("5x")

    def test_seconds_not_allowed(self):
        with pytest.raises(InputError):
            parse_age("90s")

    def test_missing_unit(self):
        with pytest.raises(InputError):
            parse_age("10")


class TestFormatSeconds:
    def test_compound(self):
        assert format_seconds(90) == "1m30s"
        assert format_seconds(3660) == "1h1m"

    def test_zero(self):
        assert format_seconds(0) == "0s"
