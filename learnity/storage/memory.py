from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from learnity.logging import get_logger
from learnity.storage.common import (
    audit_record_matches,
    coerce_permissions,
    ensure_utc,
    normalize_ip,
    parse_timestamp,
    session_is_live,
)
from learnity.storage.errors import ConstraintViolation
from learnity.storage.models import (
    AuditEventType,
    AuditRecord,
    BlacklistEntry,
    IdentityAccount,
    Role,
    RoleAssignment,
    Session,
    SubjectRevocation,
    TokenKind,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    When ``fs_root`` is given, state is written to ``<fs_root>/state/memory_store.json``
    after each mutation and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.generations: Dict[str, int] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.revocations: Dict[str, SubjectRevocation] = {}
        self.roles: Dict[str, RoleAssignment] = {}
        self.audit_records: List[AuditRecord] = []
        self.accounts: Dict[str, IdentityAccount] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # sessions
    def create_session(
        self,
        subject_id: str,
        device_fingerprint: str | None = None,
        *,
        ttl_minutes: int = 7 * 24 * 60,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            # Generation is read under the same lock that publishes the session
            sess = Session.new(
                subject_id,
                device_fingerprint,
                generation=self.generations.get(subject_id, 0),
                ttl_minutes=ttl_minutes,
                ip_address=normalize_ip(ip_address),
                user_agent=user_agent,
            )
            if sess.id in self.sessions:
                raise ConstraintViolation("session id collision", {"session_id": sess.id})
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def terminate_session(self, session_id: str, reason: str, terminated_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.terminated_at is not None:
                return False
            sess.terminated_at = terminated_at
            sess.termination_reason = reason
            self._persist_state()
            return True

    def terminate_subject_sessions(
        self, subject_id: str, reason: str, terminated_at: datetime
    ) -> List[str]:
        with self._data_lock:
            stamped = []
            for sess in self.sessions.values():
                if sess.subject_id == subject_id and sess.terminated_at is None:
                    sess.terminated_at = terminated_at
                    sess.termination_reason = reason
                    stamped.append(sess.id)
            if stamped:
                self._persist_state()
            return stamped

    def get_subject_generation(self, subject_id: str) -> int:
        with self._data_lock:
            return self.generations.get(subject_id, 0)

    def bump_subject_generation(self, subject_id: str) -> int:
        with self._data_lock:
            generation = self.generations.get(subject_id, 0) + 1
            self.generations[subject_id] = generation
            self._persist_state()
            return generation

    def touch_session(self, session_id: str, seen_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.terminated_at is not None:
                return
            if seen_at > sess.last_seen_at:
                sess.last_seen_at = seen_at

    def list_sessions(
        self, subject_id: Optional[str] = None, *, active_only: bool = True
    ) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            result = [
                replace(sess)
                for sess in self.sessions.values()
                if (subject_id is None or sess.subject_id == subject_id)
                and (not active_only or session_is_live(sess, now))
            ]
        result.sort(key=lambda s: s.created_at)
        return result

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        with self._data_lock:
            if entry.token_hash in self.blacklist:
                return False
            self.blacklist[entry.token_hash] = entry
            self._persist_state()
            return True

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.blacklist.get(token_hash)

    def set_subject_revocation(
        self, subject_id: str, revoked_after: datetime, reason: str
    ) -> SubjectRevocation:
        with self._data_lock:
            current = self.revocations.get(subject_id)
            if current and current.revoked_after >= revoked_after:
                return current
            revocation = SubjectRevocation(subject_id, revoked_after, reason)
            self.revocations[subject_id] = revocation
            self._persist_state()
            return revocation

    def get_subject_revocation(self, subject_id: str) -> Optional[SubjectRevocation]:
        with self._data_lock:
            return self.revocations.get(subject_id)

    def prune_blacklist(self, now: datetime, revocation_cutoff: datetime) -> int:
        with self._data_lock:
            expired = [h for h, entry in self.blacklist.items() if entry.expires_at <= now]
            for token_hash in expired:
                del self.blacklist[token_hash]
            stale = [
                sid
                for sid, rev in self.revocations.items()
                if rev.revoked_after <= revocation_cutoff
            ]
            for subject_id in stale:
                del self.revocations[subject_id]
            removed = len(expired) + len(stale)
            if removed:
                self._persist_state()
            return removed

    # roles
    def get_role_assignment(self, subject_id: str) -> Optional[RoleAssignment]:
        with self._data_lock:
            assignment = self.roles.get(subject_id)
            return replace(assignment) if assignment else None

    def upsert_role_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        with self._data_lock:
            stored = replace(assignment, updated_at=utcnow())
            self.roles[assignment.subject_id] = stored
            self._persist_state()
            return replace(stored)

    # audit
    def append_audit_record(self, record: AuditRecord) -> None:
        with self._data_lock:
            self.audit_records.append(record)
            self._persist_state()

    def list_audit_records(
        self,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> List[AuditRecord]:
        with self._data_lock:
            matched = [r for r in self.audit_records if audit_record_matches(r, **filters)]
        matched.sort(key=lambda r: r.timestamp, reverse=True)
        if limit is None:
            return matched[offset:]
        return matched[offset : offset + limit]

    def count_audit_records(self, **filters: Any) -> int:
        with self._data_lock:
            return sum(1 for r in self.audit_records if audit_record_matches(r, **filters))

    # identity accounts
    def create_account(self, account: IdentityAccount) -> IdentityAccount:
        email = account.email.lower()
        with self._data_lock:
            if any(a.email == email for a in self.accounts.values()):
                raise ConstraintViolation("email already registered", {"email": email})
            if account.subject_id in self.accounts:
                raise ConstraintViolation(
                    "subject already exists", {"subject_id": account.subject_id}
                )
            stored = replace(account, email=email)
            self.accounts[stored.subject_id] = stored
            self._persist_state()
            return replace(stored)

    def get_account(self, subject_id: str) -> Optional[IdentityAccount]:
        with self._data_lock:
            account = self.accounts.get(subject_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[IdentityAccount]:
        email = email.lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email:
                    return replace(account)
        return None

    def update_account(self, subject_id: str, **fields: Any) -> Optional[IdentityAccount]:
        with self._data_lock:
            account = self.accounts.get(subject_id)
            if not account:
                return None
            updated = replace(account, **fields)
            self.accounts[subject_id] = updated
            self._persist_state()
            return replace(updated)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [_dump(s) for s in self.sessions.values()],
            "generations": self.generations,
            "blacklist": [_dump(e) for e in self.blacklist.values()],
            "revocations": [_dump(r) for r in self.revocations.values()],
            "roles": [_dump(r) for r in self.roles.values()],
            "audit_records": [_dump(r) for r in self.audit_records],
            "accounts": [_dump(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.sessions = {s["id"]: _load_session(s) for s in data.get("sessions", [])}
        self.generations = {k: int(v) for k, v in data.get("generations", {}).items()}
        self.blacklist = {
            e["token_hash"]: _load_blacklist_entry(e) for e in data.get("blacklist", [])
        }
        self.revocations = {
            r["subject_id"]: SubjectRevocation(
                r["subject_id"], parse_timestamp(r["revoked_after"]), r["reason"]
            )
            for r in data.get("revocations", [])
        }
        self.roles = {r["subject_id"]: _load_role(r) for r in data.get("roles", [])}
        self.audit_records = [_load_audit(r) for r in data.get("audit_records", [])]
        self.accounts = {a["subject_id"]: _load_account(a) for a in data.get("accounts", [])}
        self.logger.info("memory_store_state_loaded", path=str(path), sessions=len(self.sessions))
        return True


def _dump(obj: Any) -> Dict[str, Any]:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
        elif isinstance(value, (set, frozenset)):
            data[key] = sorted(v.value if hasattr(v, "value") else v for v in value)
        elif hasattr(value, "value"):
            data[key] = value.value
    return data


def _load_session(data: Dict[str, Any]) -> Session:
    return Session(
        id=data["id"],
        subject_id=data["subject_id"],
        created_at=parse_timestamp(data["created_at"]),
        last_seen_at=parse_timestamp(data["last_seen_at"]),
        expires_at=parse_timestamp(data["expires_at"]),
        generation=int(data.get("generation", 0)),
        device_fingerprint=data.get("device_fingerprint"),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        terminated_at=parse_timestamp(data.get("terminated_at")),
        termination_reason=data.get("termination_reason"),
    )


def _load_blacklist_entry(data: Dict[str, Any]) -> BlacklistEntry:
    return BlacklistEntry(
        token_hash=data["token_hash"],
        token_kind=TokenKind(data["token_kind"]),
        reason=data["reason"],
        blacklisted_at=parse_timestamp(data["blacklisted_at"]),
        expires_at=parse_timestamp(data["expires_at"]),
        subject_id=data.get("subject_id"),
        session_id=data.get("session_id"),
    )


def _load_role(data: Dict[str, Any]) -> RoleAssignment:
    return RoleAssignment(
        subject_id=data["subject_id"],
        role=Role(data["role"]),
        permissions=coerce_permissions(data.get("permissions")),
        profile_complete=bool(data.get("profile_complete")),
        email_verified=bool(data.get("email_verified")),
        updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
    )


def _load_audit(data: Dict[str, Any]) -> AuditRecord:
    return AuditRecord(
        id=data["id"],
        timestamp=ensure_utc(parse_timestamp(data["timestamp"])),
        type=AuditEventType(data["type"]),
        action=data["action"],
        success=bool(data["success"]),
        actor_id=data.get("actor_id"),
        target_resource=data.get("target_resource"),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        device_fingerprint=data.get("device_fingerprint"),
        old_values=data.get("old_values"),
        new_values=data.get("new_values"),
        error_message=data.get("error_message"),
    )


def _load_account(data: Dict[str, Any]) -> IdentityAccount:
    return IdentityAccount(
        subject_id=data["subject_id"],
        email=data["email"],
        password_hash=data["password_hash"],
        password_algo=data.get("password_algo", "argon2id"),
        email_verified=bool(data.get("email_verified")),
        disabled=bool(data.get("disabled")),
        display_name=data.get("display_name"),
        created_at=parse_timestamp(data.get("created_at")) or utcnow(),
    )
