from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "email_exists_password",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_text(value: str) -> str:
    # NFKC: compatibility forms fold to one canonical spelling
    return unicodedata.normalize("NFKC", value.strip())


class DevicePayload(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=255)
    fingerprint: str = Field(default="", max_length=512)
    platform: str = Field(default="other", max_length=16)
    model: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    username: str = Field(..., max_length=32)
    first_name: str = Field(default="", max_length=64)
    last_name: str = Field(default="", max_length=64)

    @field_validator("email", "username", "first_name", "last_name")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class RegisterResponse(BaseModel):
    account_id: str
    user_id: str
    email: str
    username: str
    email_verified: bool


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)
    device: DevicePayload

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_text(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class AccountSummaryResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    phone_verified: bool


class SessionRef(BaseModel):
    id: str
    device_id: str


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    account: AccountSummaryResponse
    session: SessionRef
    created: bool = False


class MessageResponse(BaseModel):
    message: str


class EmailRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirmRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=1024)


class EmailVerifyConfirmRequest(BaseModel):
    token: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class IdentitySignInRequest(BaseModel):
    proof_token: str = Field(..., min_length=1, max_length=8192)
    device: DevicePayload


class IdentityLinkRequest(BaseModel):
    proof_token: str = Field(..., min_length=1, max_length=8192)
    password: Optional[str] = Field(default=None, max_length=1024)


class ProviderLinkResponse(BaseModel):
    provider: str
    provider_email: Optional[str] = None
    linked_at: datetime
    last_login_at: Optional[datetime] = None


class LinkedProvidersResponse(BaseModel):
    account_id: str
    has_password: bool
    providers: List[ProviderLinkResponse]


class SessionResponse(BaseModel):
    id: str
    device_id: str
    current: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_login_at: datetime
    expires_at: datetime
    created_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
