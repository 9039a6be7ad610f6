from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from learnity.service.errors import RejectionKind
from learnity.storage.models import Role

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
    }
    | {kind.value for kind in RejectionKind}
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

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


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class StudentRegistrationRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)
    grade_level: Optional[str] = Field(default=None, max_length=32)
    subjects: List[str] = Field(default_factory=list, max_length=20)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    def profile(self) -> Dict[str, Any]:
        profile: Dict[str, Any] = {}
        if self.grade_level:
            profile["grade_level"] = self.grade_level
        if self.subjects:
            profile["subjects"] = self.subjects
        return profile


class TeacherRegistrationRequest(BaseModel):
    email: str
    password: str
    display_name: str = Field(..., min_length=1, max_length=128)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)
    subjects: List[str] = Field(..., min_length=1, max_length=20)
    experience_years: int = Field(default=0, ge=0, le=80)
    bio: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    def profile(self) -> Dict[str, Any]:
        profile: Dict[str, Any] = {
            "subjects": self.subjects,
            "experience_years": self.experience_years,
        }
        if self.bio:
            profile["bio"] = self.bio
        return profile


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    all_devices: bool = False


class AuthResponse(BaseModel):
    subject_id: str
    session_id: str
    role: Role
    identity_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class AuthContextResponse(BaseModel):
    subject_id: str
    role: Role
    permissions: List[str]
    session_id: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool
    expires_at: datetime


class RouteAccessResponse(BaseModel):
    route: str
    allowed: bool


class SessionResponse(BaseModel):
    id: str
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    current: bool = False


class RoleChangeRequest(BaseModel):
    role: Role


class TeacherRejectionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class RevokeTokensRequest(BaseModel):
    reason: str = Field(default="admin_revocation", min_length=1, max_length=200)


class RoleAssignmentResponse(BaseModel):
    subject_id: str
    role: Role
    permissions: List[str]
    profile_complete: bool
    email_verified: bool
    updated_at: datetime


class AuditRecordResponse(BaseModel):
    id: str
    timestamp: datetime
    type: str
    action: str
    success: bool
    actor_id: Optional[str] = None
    target_resource: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class AuditLogPageResponse(BaseModel):
    records: List[AuditRecordResponse]
    total: int
    page: int
    page_size: int
    has_more: bool
