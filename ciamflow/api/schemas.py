from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "mfa_locked",
    "transaction_not_found",
    "transaction_expired",
    "transaction_consumed",
    "invalid_mfa_code",
    "push_rejected",
    "esign_declined",
    "invalid_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class FlowStepRequest(BaseModel):
    context_id: str = Field(..., max_length=128)
    transaction_id: str = Field(..., max_length=128)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=1024)
    device_fingerprint: Optional[str] = Field(default=None, max_length=512)
    app_id: str = Field(default="default", max_length=64)
    app_version: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip()).lower()
        if not normalized:
            raise ValueError("username is required")
        return normalized


class MFAInitiateRequest(FlowStepRequest):
    method: Literal["sms", "voice", "push"]
    mfa_option_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("method", mode="before")
    @classmethod
    def _lower_method(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class OTPVerifyRequest(FlowStepRequest):
    code: str = Field(..., min_length=1, max_length=10)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must be numeric")
        return value


class PushVerifyRequest(FlowStepRequest):
    pass


class PushApproveRequest(BaseModel):
    transaction_id: str = Field(..., max_length=128)
    selected_number: int = Field(..., ge=0, le=99)


class ESignAcceptRequest(FlowStepRequest):
    document_id: Optional[str] = Field(default=None, max_length=128)


class ESignDeclineRequest(ESignAcceptRequest):
    reason: Optional[str] = Field(default=None, max_length=512)


class DeviceBindRequest(FlowStepRequest):
    bind_device: bool
    device_name: Optional[str] = Field(default=None, max_length=128)
    device_type: Optional[str] = Field(default=None, max_length=32)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class OTPMethod(BaseModel):
    value: str
    mfa_option_id: int


class FlowResponse(BaseModel):
    """Body of every step that returns a next step or finishes the flow."""

    response_type_code: str
    context_id: Optional[str] = None
    transaction_id: Optional[str] = None
    otp_methods: Optional[List[OTPMethod]] = None
    mobile_approve_status: Optional[str] = None
    device_trust: Optional[str] = None
    method: Optional[str] = None
    mfa_option_id: Optional[int] = None
    display_number: Optional[int] = None
    numbers: Optional[List[int]] = None
    retry_after_ms: Optional[int] = None
    expires_at: Optional[datetime] = None
    esign_document_id: Optional[str] = None
    is_mandatory: Optional[bool] = None
    document: Optional["DocumentResponse"] = None
    device_bound: Optional[bool] = None
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    session_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    id_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: str


class PushApproveResponse(BaseModel):
    transaction_id: str
    status: str


class DocumentResponse(BaseModel):
    document_id: str
    title: str
    version: str
    mandatory: bool = True


class DeviceResponse(BaseModel):
    device_id: str
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    app_id: Optional[str] = None
    status: str
    trusted_at: datetime
    last_used_at: datetime
    expires_at: datetime


class DeviceListResponse(BaseModel):
    items: List[DeviceResponse]


class SessionResponse(BaseModel):
    session_id: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionVerifyResponse(BaseModel):
    valid: bool = True
    sub: str
    session_id: str
    roles: List[str] = Field(default_factory=list)


FlowResponse.model_rebuild()
