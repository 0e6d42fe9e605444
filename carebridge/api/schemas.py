from __future__ import annotations

import ipaddress
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from carebridge.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"invalid error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"


class CSRFTokenResponse(BaseModel):
    token: str
    expires_in: int
    header_name: str
    body_field: str


class ListEntryRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=255)

    @field_validator("address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("address must not be blank")
        try:
            return str(ipaddress.ip_address(value))
        except ValueError:
            # Non-IP keys (subject ids, composite keys) are stored verbatim
            return value


class ListSnapshot(BaseModel):
    whitelist: List[str] = Field(default_factory=list)
    blacklist: List[str] = Field(default_factory=list)
