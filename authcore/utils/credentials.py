"""
Credential Formatter / Validator.

Pure functions that turn user-typed phone numbers into the canonical
digits-only form the backend compares against, and shape-check
passwords and one-time codes before anything reaches the network.
Every component that handles a phone number calls ``normalize_phone``;
none re-implements it.
"""

from __future__ import annotations

import re
from typing import Optional

from authcore.models.auth_models import ValidationResult

_NON_DIGIT_RE: re.Pattern[str] = re.compile(r"[^0-9]")
_INTERNATIONAL_PREFIX: str = "00"
_TRUNK_PREFIX: str = "0"

DEFAULT_COUNTRY_CODE: str = "84"
DEFAULT_MIN_NATIONAL_DIGITS: int = 9
DEFAULT_MAX_NATIONAL_DIGITS: int = 10
DEFAULT_MIN_PASSWORD_LENGTH: int = 6
DEFAULT_OTP_LENGTH: int = 6


# ---------------------------------------------------------------------------
# Phone numbers
# ---------------------------------------------------------------------------

def normalize_phone(
    raw: Optional[str],
    country_code: str = DEFAULT_COUNTRY_CODE,
    max_national_digits: int = DEFAULT_MAX_NATIONAL_DIGITS,
) -> str:
    """Return the canonical form of *raw*: digits only, one country code.

    ``"0987654321"``, ``"987654321"``, ``"84987654321"`` and
    ``"+84 987 654 321"`` all yield ``"84987654321"``.  A national
    number that merely begins with the country-code digits (for example
    ``"845123456"``) is still prefixed, because it is no longer than a
    national number can be.

    Parameters
    ----------
    raw:
        Phone number as typed.  ``None`` and blank input return ``""``.
    country_code:
        Digits of the calling code, without ``+``.
    max_national_digits:
        Longest national significant number; anything starting with the
        country code and longer than this is taken as already canonical.
    """
    if not raw:
        return ""
    digits = _NON_DIGIT_RE.sub("", raw)
    if not digits:
        return ""

    if digits.startswith(_INTERNATIONAL_PREFIX + country_code):
        digits = digits[len(_INTERNATIONAL_PREFIX):]

    if digits.startswith(_TRUNK_PREFIX):
        return country_code + digits.lstrip(_TRUNK_PREFIX)
    if digits.startswith(country_code) and len(digits) > max_national_digits:
        return digits
    return country_code + digits


def national_part(canonical: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Strip the country code from a canonical phone."""
    if canonical.startswith(country_code):
        return canonical[len(country_code):]
    return canonical


def validate_phone(
    raw: Optional[str],
    country_code: str = DEFAULT_COUNTRY_CODE,
    min_national_digits: int = DEFAULT_MIN_NATIONAL_DIGITS,
    max_national_digits: int = DEFAULT_MAX_NATIONAL_DIGITS,
) -> ValidationResult:
    """Check that *raw* normalizes to a plausible mobile number."""
    if not raw or not raw.strip():
        return ValidationResult(
            is_valid=False,
            error_message="Phone number is required.",
        )
    canonical = normalize_phone(raw, country_code, max_national_digits)
    national = national_part(canonical, country_code)
    if not min_national_digits <= len(national) <= max_national_digits:
        return ValidationResult(
            is_valid=False,
            error_message="Please enter a valid phone number.",
        )
    return ValidationResult(is_valid=True)


def format_display_phone(
    canonical: str,
    country_code: str = DEFAULT_COUNTRY_CODE,
) -> str:
    """Render a canonical phone in national form, e.g. ``0987654321``."""
    if not canonical:
        return ""
    return _TRUNK_PREFIX + national_part(canonical, country_code)


def mask_phone(canonical: str, visible: int = 3) -> str:
    """Mask all but the last *visible* digits, for logs."""
    if len(canonical) <= visible:
        return "*" * len(canonical)
    return "*" * (len(canonical) - visible) + canonical[-visible:]


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

def validate_password(
    password: Optional[str],
    min_length: int = DEFAULT_MIN_PASSWORD_LENGTH,
) -> ValidationResult:
    """Enforce the minimum password length.

    Returns
    -------
    ValidationResult
    """
    if not password:
        return ValidationResult(
            is_valid=False,
            error_message="Password is required.",
        )
    if len(password) < min_length:
        return ValidationResult(
            is_valid=False,
            error_message=f"Password must be at least {min_length} characters.",
        )
    return ValidationResult(is_valid=True)


def validate_password_confirmation(password: str, confirmation: str) -> ValidationResult:
    if password != confirmation:
        return ValidationResult(
            is_valid=False,
            error_message="Passwords do not match.",
        )
    return ValidationResult(is_valid=True)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------

def validate_otp(code: Optional[str], length: int = DEFAULT_OTP_LENGTH) -> ValidationResult:
    """Accept exactly *length* ASCII digits."""
    if not code:
        return ValidationResult(
            is_valid=False,
            error_message="Please enter the verification code.",
        )
    if len(code) != length or not (code.isascii() and code.isdigit()):
        return ValidationResult(
            is_valid=False,
            error_message=f"The verification code must be {length} digits.",
        )
    return ValidationResult(is_valid=True)


def digits_only(value: str, limit: Optional[int] = None) -> str:
    """Keep ASCII digits of *value*, truncated to *limit*."""
    cleaned = "".join(ch for ch in value if ch.isascii() and ch.isdigit())
    return cleaned[:limit] if limit is not None else cleaned
