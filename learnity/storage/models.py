from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    PENDING_TEACHER = "pending_teacher"
    REJECTED_TEACHER = "rejected_teacher"
    ADMIN = "admin"


class Permission(str, Enum):
    # Student
    VIEW_STUDENT_DASHBOARD = "view:student_dashboard"
    JOIN_STUDY_GROUPS = "join:study_groups"
    BOOK_TUTORING = "book:tutoring"
    ENHANCE_PROFILE = "enhance:profile"
    # Teacher
    VIEW_TEACHER_DASHBOARD = "view:teacher_dashboard"
    MANAGE_SESSIONS = "manage:sessions"
    UPLOAD_CONTENT = "upload:content"
    VIEW_STUDENT_PROGRESS = "view:student_progress"
    # Teacher applicants
    VIEW_APPLICATION_STATUS = "view:application_status"
    UPDATE_APPLICATION = "update:application"
    # Admin
    VIEW_ADMIN_PANEL = "view:admin_panel"
    MANAGE_USERS = "manage:users"
    APPROVE_TEACHERS = "approve:teachers"
    VIEW_AUDIT_LOGS = "view:audit_logs"
    MANAGE_PLATFORM = "manage:platform"


class TokenKind(str, Enum):
    IDENTITY = "identity"
    REFRESH = "refresh"


class AuditEventType(str, Enum):
    AUTH_EVENT = "auth_event"
    ADMIN_ACTION = "admin_action"


@dataclass
class Session:
    id: str
    subject_id: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    generation: int = 0
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject_id: str,
        device_fingerprint: str | None = None,
        *,
        generation: int = 0,
        ttl_minutes: int = 7 * 24 * 60,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            # 256 bits; session IDs are handled like credentials
            id=secrets.token_hex(32),
            subject_id=subject_id,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            generation=generation,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @property
    def terminated(self) -> bool:
        return self.terminated_at is not None


@dataclass
class BlacklistEntry:
    token_hash: str
    token_kind: TokenKind
    reason: str
    blacklisted_at: datetime
    expires_at: datetime
    subject_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class SubjectRevocation:
    """Every token for ``subject_id`` issued at or before ``revoked_after`` is dead."""

    subject_id: str
    revoked_after: datetime
    reason: str


@dataclass
class RoleAssignment:
    subject_id: str
    role: Role
    permissions: FrozenSet[Permission] = frozenset()
    profile_complete: bool = False
    email_verified: bool = False
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditRecord:
    id: str
    timestamp: datetime
    type: AuditEventType
    action: str
    success: bool
    actor_id: Optional[str] = None
    target_resource: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    old_values: Dict | None = None
    new_values: Dict | None = None
    error_message: Optional[str] = None

    @classmethod
    def new(
        cls,
        type: AuditEventType,
        action: str,
        *,
        success: bool,
        timestamp: datetime | None = None,
        **fields,
    ) -> "AuditRecord":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=timestamp or utcnow(),
            type=type,
            action=action,
            success=success,
            **fields,
        )


@dataclass
class IdentityAccount:
    """Credential record kept by the self-hosted identity provider."""

    subject_id: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    email_verified: bool = False
    disabled: bool = False
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
