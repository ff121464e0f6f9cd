from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from adminauth.logging import get_request_id

_EMAIL_PATTERN = re.compile(r"^[^@\s]{1,64}@[A-Za-z0-9](?:[A-Za-z0-9.-]{0,253})\.[A-Za-z]{2,}$")


def _validate_email(value: str) -> str:
    value = value.strip()
    if not _EMAIL_PATTERN.match(value):
        raise ValueError("invalid email address")
    return value.lower()


class ErrorBody(BaseModel):
    """Error details with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """Response wrapper shared by every endpoint."""

    success: bool
    message: str = ""
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_request_id() or str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    totp_token: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool
    totp_enabled: bool
    permissions: List[str] = Field(default_factory=list)
    last_login_at: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class LoginResponse(TokenResponse):
    principal: PrincipalResponse
    used_backup_code: bool = False


class SessionResponse(BaseModel):
    correlation_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class TOTPSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    issuer: str


class TOTPCodeRequest(BaseModel):
    token: str = Field(..., min_length=6, max_length=10)


class TOTPReverifyRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    totp_token: str = Field(..., min_length=6, max_length=10)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class TOTPStatusResponse(BaseModel):
    totp_enabled: bool
    backup_codes_remaining: int
    setup_pending: bool


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class PasswordChangeResponse(BaseModel):
    sessions_revoked: int


class DeactivateResponse(BaseModel):
    principal_id: str
    sessions_removed: int


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenPasswordRequest(BaseModel):
    """Body for setting a password with a reset or invitation token."""

    token: str = Field(..., min_length=1, max_length=4096)
    new_password: str = Field(..., min_length=1, max_length=1024)
    confirm_password: str = Field(..., min_length=1, max_length=1024)

    @model_validator(mode="after")
    def _passwords_match(self) -> "TokenPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class InviteRequest(BaseModel):
    email: str = Field(..., max_length=254)
    role: Literal["admin", "moderator", "analyst"] = "admin"
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class InvitationResponse(BaseModel):
    principal: PrincipalResponse
    invitation_expires_at: datetime
