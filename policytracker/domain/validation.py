from __future__ import annotations

import re


INSURANCE_TYPES = ("Vehicle Insurance", "Health Insurance", "Life Insurance", "Other")
DEFAULT_INSURANCE_TYPE = "Vehicle Insurance"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def required_text(value: str, *, label: str, max_length: int) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{label} is required")
    if len(cleaned) > max_length:
        raise ValueError(f"{label} must be at most {max_length} characters")
    return cleaned


def optional_text(value: str | None, *, label: str, max_length: int) -> str | None:
    # Blank optional strings are stored as NULL.
    if value is None or not value.strip():
        return None
    return required_text(value, label=label, max_length=max_length)


def policy_number(value: str) -> str:
    return required_text(value, label="Policy number", max_length=100).upper()


def insurance_type(value: str) -> str:
    if value not in INSURANCE_TYPES:
        raise ValueError(f"Insurance type must be one of: {', '.join(INSURANCE_TYPES)}")
    return value


def vehicle_number(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    if len(value.strip()) > 20:
        raise ValueError("Vehicle number must be at most 20 characters")
    # "mh 12-ab 1234" -> "MH12AB1234"
    return _NON_ALNUM.sub("", value.strip().upper()) or None


def ten_digit_number(value: str | None, *, label: str) -> str | None:
    if value is None or not value.strip():
        return None
    digits = _NON_DIGITS.sub("", value)
    if len(digits) != 10:
        raise ValueError(f"{label} must be exactly 10 digits")
    return digits


def email_address(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    cleaned = value.strip()
    if not _EMAIL_RE.match(cleaned):
        raise ValueError("Invalid email format")
    if len(cleaned) > 255:
        raise ValueError("Email must be at most 255 characters")
    return cleaned


def not_null(value, *, label: str):
    if value is None:
        raise ValueError(f"{label} cannot be null")
    return value
