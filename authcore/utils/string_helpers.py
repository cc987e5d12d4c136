"""
String Helpers - Response Key Normalisation.

The backend mixes camelCase and snake_case keys between endpoints
(``accessToken`` vs ``access_token``, ``isNewDevice`` vs
``is_new_device``).  Every parsed body flows through ``normalize_keys``
so that downstream code reads a single spelling.
"""

from __future__ import annotations

import re
from typing import Union, overload

from pydantic import JsonValue

__all__ = [
    "to_snake_case",
    "normalize_keys",
    "contains_any",
]

# "HTTPStatus" -> "HTTP_Status"
_RE_UPPER_RUN = re.compile(r"([A-Z]+)([A-Z][a-z])")

# "accessToken" -> "access_Token"
_RE_CAMEL_BOUNDARY = re.compile(r"([a-z\d])([A-Z])")

_RE_MULTI_UNDERSCORE = re.compile(r"_+")


def to_snake_case(name: str) -> str:
    """Convert a camelCase, PascalCase, or mixed-case string to snake_case.

    ::

        accessToken   -> access_token
        isNewDevice   -> is_new_device
        refresh_token -> refresh_token
        userID        -> user_id
    """
    s1 = _RE_UPPER_RUN.sub(r"\1_\2", name)
    s2 = _RE_CAMEL_BOUNDARY.sub(r"\1_\2", s1)
    s3 = _RE_MULTI_UNDERSCORE.sub("_", s2)
    return s3.lower()


@overload
def normalize_keys(data: dict[str, JsonValue]) -> dict[str, JsonValue]: ...


@overload
def normalize_keys(data: list[JsonValue]) -> list[JsonValue]: ...


@overload
def normalize_keys(data: JsonValue) -> JsonValue: ...


def normalize_keys(
    data: Union[dict[str, JsonValue], list[JsonValue], JsonValue],
) -> Union[dict[str, JsonValue], list[JsonValue], JsonValue]:
    """Recursively convert all dictionary keys to snake_case."""
    if isinstance(data, dict):
        return {to_snake_case(k): normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [normalize_keys(item) for item in data]
    return data


def contains_any(text: str, phrases: tuple[str, ...]) -> bool:
    """``True`` when lower-cased *text* contains any of *phrases*."""
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)
