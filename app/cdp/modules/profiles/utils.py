from __future__ import annotations

import re
from typing import Any

PERSONAL_EMAIL_DOMAINS = frozenset(
    {"gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com", "icloud.com", "live.com"}
)


def clean_text(value: Any) -> str | None:
    """Stripped string, or None for None/blank."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def normalize_email(email: str | None) -> str | None:
    s = clean_text(email)
    return s.lower() if s else None


def normalize_phone(phone: str | None) -> str | None:
    """
    Digits-only phone key, keeping a leading "+" for international numbers.

    "+66 81-234 5678" -> "+66812345678", "(02) 555 0100" -> "025550100".
    No country-code inference is done; "+6681..." and "081..." stay distinct.
    """
    s = clean_text(phone)
    if not s:
        return None
    digits = re.sub(r"\D+", "", s)
    if not digits:
        return None
    return f"+{digits}" if s.startswith("+") else digits


def extract_email_domain(email: str | None) -> str | None:
    """Extract domain from email address."""
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].lower().strip()
    return domain or None


def email_local_part(email: str | None) -> str | None:
    s = clean_text(email)
    if not s:
        return None
    return clean_text(s.split("@", 1)[0])


def normalize_company_name(name: str | None) -> str:
    """
    Remove common business suffixes before canonicalization.
    This helps match "Acme" with "Acme Co., Ltd."
    """
    s = (name or "").strip()
    suffixes = [
        r"\s*,?\s+inc\.?$",
        r"\s*,?\s+llc\.?$",
        r"\s*,?\s+corp\.?$",
        r"\s*,?\s+corporation$",
        r"\s*,?\s+ltd\.?$",
        r"\s*,?\s+limited$",
        r"\s*,?\s+co\.?$",
        r"\s*,?\s+company$",
        r"\s*,?\s+pcl\.?$",    # Public Company Limited
        r"\s*,?\s+plc\.?$",
        r"\s*,?\s+gmbh$",
        r"\s*,?\s+lp\.?$",
        r"\s*,?\s+llp\.?$",
    ]
    # Repeat so stacked suffixes ("Co., Ltd.") collapse fully.
    previous = None
    while previous != s:
        previous = s
        for pattern in suffixes:
            s = re.sub(pattern, "", s, flags=re.IGNORECASE).strip()
    return s


def canonical_company_key(name: str | None) -> str:
    """
    Stable canonical key for company-name matching.

    1. Remove business suffixes (Inc., Co., Ltd., ...) via normalize_company_name()
    2. Uppercase
    3. Drop everything that is not a letter or digit (Unicode-aware, so Thai names survive)

    Examples:
        >>> canonical_company_key("Acme Co., Ltd.")
        'ACME'
        >>> canonical_company_key("St. Joseph's Trading")
        'STJOSEPHSTRADING'
    """
    normalized = normalize_company_name(name).upper()
    return "".join(ch for ch in normalized if ch.isalnum())


def normalize_tax_id(tax_id: str | None) -> str | None:
    s = clean_text(tax_id)
    if not s:
        return None
    key = re.sub(r"[^A-Z0-9]+", "", s.upper())
    return key or None


def person_name(first_name: str | None, last_name: str | None) -> str | None:
    return clean_text(f"{first_name or ''} {last_name or ''}")


def name_key(name: str | None) -> str:
    """Lowercased, whitespace-collapsed name used for fuzzy comparison."""
    s = (name or "").strip().lower()
    s = re.sub(r"[^\w\s]+", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def generate_display_name(
    *,
    display_name: str | None = None,
    company_name: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
) -> str:
    """
    displayName > companyName > "first last" > first > last > email local part > "Unknown".
    """
    for candidate in (
        clean_text(display_name),
        clean_text(company_name),
        person_name(first_name, last_name) if clean_text(first_name) and clean_text(last_name) else None,
        clean_text(first_name),
        clean_text(last_name),
        email_local_part(email),
    ):
        if candidate:
            return candidate
    return "Unknown"


def has_value(value: Any) -> bool:
    """True for non-blank scalars and non-empty containers (dicts need a non-blank value)."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict):
        return any(has_value(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return len(value) > 0
    return True


_TRUE_WORDS = {"true", "t", "yes", "y", "1", "on"}
_FALSE_WORDS = {"false", "f", "no", "n", "0", "off", ""}


def parse_flag(value: Any) -> bool | None:
    """Boolean from JSON/CSV input ("false", "0" and blanks are False). None when unrecognized."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None
