"""
Tests for phone normalization and time helpers.

Tests cover:
- Normalization rules (separators, "00" prefix, trunk "0")
- Idempotence
- Variant generation for thread lookups
- Parsing of stored times
"""

from datetime import datetime, timezone

import pytest

from inbox_service.utils import normalize_phone, parse_utc, phone_variants, utc_now_iso


class TestNormalizePhone:
    """Test the join key derived from raw phone numbers."""

    @pytest.mark.parametrize("raw", [
        "+966 50 123 4567",
        "966-50-123-4567",
        "00966501234567",
        "0501234567",
        "966501234567",
    ])
    def test_spellings_share_one_key(self, raw):
        """Test that every common spelling of one number normalizes alike."""
        assert normalize_phone(raw) == "966501234567"

    def test_explicit_country_code(self):
        """Test that the trunk prefix uses the given country code."""
        assert normalize_phone("07911123456", country_code="44") == "447911123456"

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "0", "+"])
    def test_unusable_input_gives_empty_key(self, raw):
        """Test that input without a usable number normalizes to empty."""
        assert normalize_phone(raw) == ""

    @pytest.mark.parametrize("raw", ["+966 50 123 4567", "0501234567", "12345", "0044 20 7946 0958"])
    def test_idempotent(self, raw):
        """Test that normalizing twice equals normalizing once."""
        once = normalize_phone(raw)
        assert normalize_phone(once) == once


class TestPhoneVariants:
    """Test the raw spellings matched by thread queries."""

    def test_includes_stored_spellings(self):
        """Test variants for a local number."""
        variants = phone_variants("0501234567")
        assert "0501234567" in variants
        assert "966501234567" in variants
        assert "+966501234567" in variants
        assert "501234567" in variants

    def test_no_duplicates_or_blanks(self):
        """Test that variants are unique and never empty."""
        variants = phone_variants("966501234567")
        assert len(variants) == len(set(variants))
        assert "" not in variants

    def test_foreign_number_has_no_national_forms(self):
        """Test that numbers outside the default country are not shortened."""
        assert phone_variants("+14155550100") == ["+14155550100", "14155550100"]

    def test_empty_input(self):
        """Test that unusable input yields no variants."""
        assert phone_variants("") == []


class TestTimes:
    """Test stored time parsing."""

    def test_epoch_seconds(self):
        assert parse_utc(1736935200) == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert parse_utc("1736935200") == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_iso_with_z(self):
        assert parse_utc("2025-01-15T10:00:00Z") == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_utc(datetime(2025, 1, 15, 10, 0)).tzinfo == timezone.utc

    def test_empty(self):
        assert parse_utc(None) is None
        assert parse_utc("") is None

    def test_now_round_trips(self):
        """Test that utc_now_iso output parses back to an aware datetime."""
        assert parse_utc(utc_now_iso()).tzinfo == timezone.utc
