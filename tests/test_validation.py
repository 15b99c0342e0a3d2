"""Tests for utils/validation.py: password, email and note rules."""
import pytest

from utils.validation import (
    clean_note,
    is_valid_email,
    normalize_email,
    validate_new_password,
    validate_password,
)


class TestPasswordRules:
    def test_valid(self):
        assert validate_password("Password1") is None

    def test_too_short(self):
        assert "at least 8" in validate_password("Pa1")

    def test_needs_uppercase(self):
        assert "uppercase" in validate_password("password1")

    def test_needs_digit(self):
        assert "number" in validate_password("Passwordx")

    def test_confirmation_mismatch(self):
        assert validate_new_password("Password1", "Password2") == "Passwords do not match."

    def test_confirmation_match_applies_rules(self):
        assert validate_new_password("weak", "weak") is not None
        assert validate_new_password("Password1", "Password1") is None


class TestEmail:
    def test_normalize(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize("email", ["a@b.co", "first.last@uni.ca"])
    def test_valid(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", "plain", "a@b", "a b@c.d", "@x.com"])
    def test_invalid(self, email):
        assert not is_valid_email(email)


class TestCleanNote:
    def test_trimmed(self):
        assert clean_note("  follow up in May  ") == "follow up in May"

    def test_blank_becomes_none(self):
        assert clean_note("   ") is None
        assert clean_note(None) is None

    def test_too_long(self):
        with pytest.raises(ValueError):
            clean_note("x" * 2001)

    def test_limit_is_inclusive(self):
        assert len(clean_note("x" * 2000)) == 2000
