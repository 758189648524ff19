"""
Unit tests for profile normalization helpers.

Tests cover:
- Email / phone match keys
- Company suffix removal and canonical keys
- Display name fallback chain
- has_value() emptiness rules
"""

from app.cdp.modules.profiles.utils import (
    canonical_company_key,
    generate_display_name,
    has_value,
    name_key,
    normalize_company_name,
    normalize_email,
    normalize_phone,
    normalize_tax_id,
)


class TestContactKeys:
    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_email("  Ann@Example.COM ") == "ann@example.com"

    def test_blank_email_is_none(self):
        assert normalize_email("   ") is None
        assert normalize_email(None) is None

    def test_phone_keeps_only_digits(self):
        assert normalize_phone("(02) 555 0100") == "025550100"

    def test_phone_keeps_leading_plus(self):
        assert normalize_phone("+66 81-234 5678") == "+66812345678"

    def test_phone_without_digits_is_none(self):
        assert normalize_phone("n/a") is None

    def test_tax_id_drops_separators(self):
        assert normalize_tax_id("0-1055-12345-67-8") == "0105512345678"
        assert normalize_tax_id("") is None


class TestCompanyKey:
    def test_suffix_removal(self):
        assert normalize_company_name("Acme Inc.") == "Acme"
        assert normalize_company_name("Acme Corporation") == "Acme"

    def test_stacked_suffixes_collapse(self):
        assert normalize_company_name("Acme Co., Ltd.") == "Acme"

    def test_canonical_key_ignores_case_and_punctuation(self):
        assert canonical_company_key("Acme Co., Ltd.") == "ACME"
        assert canonical_company_key("acme") == "ACME"
        assert canonical_company_key("St. Joseph's Trading") == "STJOSEPHSTRADING"

    def test_canonical_key_empty(self):
        assert canonical_company_key(None) == ""
        assert canonical_company_key("   ") == ""


class TestNames:
    def test_name_key_collapses_punctuation(self):
        assert name_key("Ann-Marie  O'Neil") == "ann marie o neil"

    def test_display_name_prefers_company(self):
        assert generate_display_name(company_name="Acme", first_name="Ann", last_name="Lee") == "Acme"

    def test_display_name_full_name(self):
        assert generate_display_name(first_name="Ann", last_name="Lee") == "Ann Lee"

    def test_display_name_first_name_only(self):
        assert generate_display_name(first_name="Ann") == "Ann"

    def test_display_name_falls_back_to_email_local_part(self):
        assert generate_display_name(email="bob@x.com") == "bob"

    def test_display_name_unknown(self):
        assert generate_display_name() == "Unknown"


class TestHasValue:
    def test_scalars(self):
        assert has_value("x")
        assert not has_value("  ")
        assert not has_value(None)
        assert has_value(0)

    def test_containers(self):
        assert not has_value([])
        assert has_value(["a"])
        assert not has_value({"street": "", "city": None})
        assert has_value({"city": "Bangkok"})
