"""Storage contract and helpers shared by the memory and postgres backends."""

from __future__ import annotations

from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Iterable, List, Optional, Protocol

from learnity.storage.models import (
    AuditEventType,
    AuditRecord,
    BlacklistEntry,
    IdentityAccount,
    Permission,
    RoleAssignment,
    Session,
    SubjectRevocation,
)


class AuthStore(Protocol):
    # sessions
    def create_session(
        self,
        subject_id: str,
        device_fingerprint: str | None = None,
        *,
        ttl_minutes: int = 7 * 24 * 60,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def terminate_session(
        self, session_id: str, reason: str, terminated_at: datetime
    ) -> bool: ...

    def terminate_subject_sessions(
        self, subject_id: str, reason: str, terminated_at: datetime
    ) -> List[str]: ...

    def get_subject_generation(self, subject_id: str) -> int: ...

    def bump_subject_generation(self, subject_id: str) -> int: ...

    def touch_session(self, session_id: str, seen_at: datetime) -> None: ...

    def list_sessions(
        self, subject_id: Optional[str] = None, *, active_only: bool = True
    ) -> List[Session]: ...

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool: ...

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]: ...

    def set_subject_revocation(
        self, subject_id: str, revoked_after: datetime, reason: str
    ) -> SubjectRevocation: ...

    def get_subject_revocation(self, subject_id: str) -> Optional[SubjectRevocation]: ...

    def prune_blacklist(self, now: datetime, revocation_cutoff: datetime) -> int: ...

    # roles
    def get_role_assignment(self, subject_id: str) -> Optional[RoleAssignment]: ...

    def upsert_role_assignment(self, assignment: RoleAssignment) -> RoleAssignment: ...

    # audit
    def append_audit_record(self, record: AuditRecord) -> None: ...

    def list_audit_records(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        type: Optional[AuditEventType] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        ip_address: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]: ...

    def count_audit_records(self, **filters: Any) -> int: ...

    # identity accounts (self-hosted provider)
    def create_account(self, account: IdentityAccount) -> IdentityAccount: ...

    def get_account(self, subject_id: str) -> Optional[IdentityAccount]: ...

    def get_account_by_email(self, email: str) -> Optional[IdentityAccount]: ...

    def update_account(self, subject_id: str, **fields: Any) -> Optional[IdentityAccount]: ...


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def normalize_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(ip_address(value))
    except ValueError:
        # Proxies occasionally hand us hostnames; keep them verbatim
        return value


def coerce_permissions(values: Iterable[Any] | None) -> frozenset[Permission]:
    """Drop unknown capability tags; grants are whitelist-only."""
    result = set()
    for value in values or ():
        try:
            result.add(Permission(value))
        except ValueError:
            continue
    return frozenset(result)


def session_is_live(session: Session, now: datetime) -> bool:
    return session.terminated_at is None and ensure_utc(session.expires_at) > now


def audit_record_matches(
    record: AuditRecord,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    actor_id: Optional[str] = None,
    type: Optional[AuditEventType] = None,
    action: Optional[str] = None,
    success: Optional[bool] = None,
    ip_address: Optional[str] = None,
) -> bool:
    """Range is half-open: ``start <= timestamp < end``."""
    if start is not None and record.timestamp < start:
        return False
    if end is not None and record.timestamp >= end:
        return False
    if actor_id is not None and record.actor_id != actor_id:
        return False
    if type is not None and record.type != type:
        return False
    if action is not None and record.action != action:
        return False
    if success is not None and record.success != success:
        return False
    if ip_address is not None and record.ip_address != ip_address:
        return False
    return True
