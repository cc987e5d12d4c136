"""Shared utility functions for the authcore session layer.

Convenience re-exports so consumers can write
``from authcore.utils import normalize_phone`` while the full module
paths remain supported.
"""

from authcore.utils.audit import AuthEvent, log_auth_event
from authcore.utils.credentials import (
    format_display_phone,
    mask_phone,
    normalize_phone,
    validate_otp,
    validate_password,
    validate_password_confirmation,
    validate_phone,
)
from authcore.utils.string_helpers import contains_any, normalize_keys, to_snake_case

__all__ = [
    "AuthEvent",
    "contains_any",
    "format_display_phone",
    "log_auth_event",
    "mask_phone",
    "normalize_keys",
    "normalize_phone",
    "to_snake_case",
    "validate_otp",
    "validate_password",
    "validate_password_confirmation",
    "validate_phone",
]
