"""
User Model.

Identity record returned by the login and ``my-data`` endpoints.
Only the fields the session layer reads are declared; anything else
the backend sends is ignored.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, field_validator


class User(BaseModel):
    """Represents the signed-in account.

    ``id`` arrives as an integer from some endpoints and as a string from
    others; it is always stored as a string so cache keys stay stable.
    """

    id: str
    phone_number: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None
    user_type: Optional[str] = None
    is_verified: Optional[bool] = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value
