from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from learnity.logging import get_logger
from learnity.storage.common import (
    coerce_permissions,
    ensure_utc,
    normalize_ip,
    parse_timestamp,
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_subject_state (
        subject_id TEXT PRIMARY KEY,
        generation BIGINT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        device_fingerprint TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        generation BIGINT NOT NULL DEFAULT 0,
        ip_address TEXT,
        user_agent TEXT,
        terminated_at TIMESTAMPTZ,
        termination_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_subject_idx ON auth_session (subject_id)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_hash TEXT PRIMARY KEY,
        token_kind TEXT NOT NULL,
        reason TEXT NOT NULL,
        blacklisted_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        subject_id TEXT,
        session_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expires_idx ON token_blacklist (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS subject_revocation (
        subject_id TEXT PRIMARY KEY,
        revoked_after TIMESTAMPTZ NOT NULL,
        reason TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignment (
        subject_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        profile_complete BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_record (
        id TEXT PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        type TEXT NOT NULL,
        actor_id TEXT,
        action TEXT NOT NULL,
        target_resource TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_fingerprint TEXT,
        success BOOLEAN NOT NULL,
        old_values JSONB,
        new_values JSONB,
        error_message TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_record_ts_idx ON audit_record (ts)",
    "CREATE INDEX IF NOT EXISTS audit_record_actor_ts_idx ON audit_record (actor_id, ts)",
    """
    CREATE TABLE IF NOT EXISTS identity_account (
        subject_id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        disabled BOOLEAN NOT NULL DEFAULT FALSE,
        display_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = (
    "auth_subject_state",
    "auth_session",
    "token_blacklist",
    "subject_revocation",
    "role_assignment",
    "audit_record",
    "identity_account",
)

_ACCOUNT_COLUMNS = {"email_verified", "disabled", "display_name", "password_hash", "password_algo"}


class PostgresStore:
    """Postgres-backed store; every mutation is a single-statement transaction."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        sess = Session.new(
            subject_id,
            device_fingerprint,
            ttl_minutes=ttl_minutes,
            ip_address=normalize_ip(ip_address),
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn:
                # Generation is read inside the INSERT so a concurrent bump cannot
                # be missed between the read and the write
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, subject_id, device_fingerprint, created_at, last_seen_at,
                                              expires_at, generation, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s,
                            COALESCE((SELECT generation FROM auth_subject_state WHERE subject_id = %s), 0),
                            %s, %s)
                    RETURNING generation
                    """,
                    (
                        sess.id,
                        subject_id,
                        device_fingerprint,
                        sess.created_at,
                        sess.last_seen_at,
                        sess.expires_at,
                        subject_id,
                        sess.ip_address,
                        user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"session_id": sess.id})
        sess.generation = int(row["generation"]) if row else 0
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def terminate_session(self, session_id: str, reason: str, terminated_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET terminated_at = %s, termination_reason = %s
                WHERE id = %s AND terminated_at IS NULL
                """,
                (terminated_at, reason, session_id),
            )
            return cur.rowcount > 0

    def terminate_subject_sessions(
        self, subject_id: str, reason: str, terminated_at: datetime
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET terminated_at = %s, termination_reason = %s
                WHERE subject_id = %s AND terminated_at IS NULL
                RETURNING id
                """,
                (terminated_at, reason, subject_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def get_subject_generation(self, subject_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT generation FROM auth_subject_state WHERE subject_id = %s",
                (subject_id,),
            ).fetchone()
        return int(row["generation"]) if row else 0

    def bump_subject_generation(self, subject_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_subject_state (subject_id, generation) VALUES (%s, 1)
                ON CONFLICT (subject_id)
                DO UPDATE SET generation = auth_subject_state.generation + 1
                RETURNING generation
                """,
                (subject_id,),
            ).fetchone()
        return int(row["generation"])

    def touch_session(self, session_id: str, seen_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_session SET last_seen_at = GREATEST(last_seen_at, %s)
                WHERE id = %s AND terminated_at IS NULL
                """,
                (seen_at, session_id),
            )

    def list_sessions(
        self, subject_id: Optional[str] = None, *, active_only: bool = True
    ) -> List[Session]:
        clauses: List[str] = []
        params: List[Any] = []
        if subject_id is not None:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if active_only:
            clauses.append("terminated_at IS NULL AND expires_at > %s")
            params.append(utcnow())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_session {where} ORDER BY created_at", params
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO token_blacklist (token_hash, token_kind, reason, blacklisted_at, expires_at,
                                             subject_id, session_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (
                    entry.token_hash,
                    entry.token_kind.value,
                    entry.reason,
                    entry.blacklisted_at,
                    entry.expires_at,
                    entry.subject_id,
                    entry.session_id,
                ),
            )
            return cur.rowcount > 0

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_blacklist WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return BlacklistEntry(
            token_hash=row["token_hash"],
            token_kind=TokenKind(row["token_kind"]),
            reason=row["reason"],
            blacklisted_at=ensure_utc(row["blacklisted_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            subject_id=row.get("subject_id"),
            session_id=row.get("session_id"),
        )

    def set_subject_revocation(
        self, subject_id: str, revoked_after: datetime, reason: str
    ) -> SubjectRevocation:
        with self._connect() as conn:
            # The marker only ever moves forward
            row = conn.execute(
                """
                INSERT INTO subject_revocation (subject_id, revoked_after, reason)
                VALUES (%s, %s, %s)
                ON CONFLICT (subject_id) DO UPDATE
                SET revoked_after = EXCLUDED.revoked_after, reason = EXCLUDED.reason
                WHERE subject_revocation.revoked_after < EXCLUDED.revoked_after
                RETURNING *
                """,
                (subject_id, revoked_after, reason),
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM subject_revocation WHERE subject_id = %s", (subject_id,)
                ).fetchone()
        return SubjectRevocation(
            row["subject_id"], ensure_utc(row["revoked_after"]), row["reason"]
        )

    def get_subject_revocation(self, subject_id: str) -> Optional[SubjectRevocation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subject_revocation WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        if not row:
            return None
        return SubjectRevocation(
            row["subject_id"], ensure_utc(row["revoked_after"]), row["reason"]
        )

    def prune_blacklist(self, now: datetime, revocation_cutoff: datetime) -> int:
        with self._connect() as conn:
            entries = conn.execute(
                "DELETE FROM token_blacklist WHERE expires_at <= %s", (now,)
            ).rowcount
            markers = conn.execute(
                "DELETE FROM subject_revocation WHERE revoked_after <= %s",
                (revocation_cutoff,),
            ).rowcount
        return max(entries, 0) + max(markers, 0)

    # roles
    def get_role_assignment(self, subject_id: str) -> Optional[RoleAssignment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role_assignment WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        return self._role_from_row(row) if row else None

    def upsert_role_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role_assignment (subject_id, role, permissions, profile_complete,
                                             email_verified, updated_at)
                VALUES (%s, %s, %s, %s, %s, now())
                ON CONFLICT (subject_id) DO UPDATE SET
                    role = EXCLUDED.role,
                    permissions = EXCLUDED.permissions,
                    profile_complete = EXCLUDED.profile_complete,
                    email_verified = EXCLUDED.email_verified,
                    updated_at = now()
                RETURNING *
                """,
                (
                    assignment.subject_id,
                    assignment.role.value,
                    sorted(p.value for p in assignment.permissions),
                    assignment.profile_complete,
                    assignment.email_verified,
                ),
            ).fetchone()
        return self._role_from_row(row)

    # audit
    def append_audit_record(self, record: AuditRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_record (id, ts, type, actor_id, action, target_resource, ip_address,
                                          user_agent, device_fingerprint, success, old_values,
                                          new_values, error_message)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.timestamp,
                    record.type.value,
                    record.actor_id,
                    record.action,
                    record.target_resource,
                    record.ip_address,
                    record.user_agent,
                    record.device_fingerprint,
                    record.success,
                    json.dumps(record.old_values) if record.old_values is not None else None,
                    json.dumps(record.new_values) if record.new_values is not None else None,
                    record.error_message,
                ),
            )

    @staticmethod
    def _audit_filters(
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        type: Optional[AuditEventType] = None,
        action: Optional[str] = None,
        success: Optional[bool] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if start is not None:
            clauses.append("ts >= %s")
            params.append(start)
        if end is not None:
            clauses.append("ts < %s")
            params.append(end)
        if actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if type is not None:
            clauses.append("type = %s")
            params.append(AuditEventType(type).value)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if success is not None:
            clauses.append("success = %s")
            params.append(success)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_audit_records(
        self,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> List[AuditRecord]:
        where, params = self._audit_filters(**filters)
        query = f"SELECT * FROM audit_record {where} ORDER BY ts DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        if offset:
            query += " OFFSET %s"
            params.append(offset)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def count_audit_records(self, **filters: Any) -> int:
        where, params = self._audit_filters(**filters)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_record {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0

    # identity accounts
    def create_account(self, account: IdentityAccount) -> IdentityAccount:
        email = account.email.lower()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_account (subject_id, email, password_hash, password_algo,
                                                  email_verified, disabled, display_name, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.subject_id,
                        email,
                        account.password_hash,
                        account.password_algo,
                        account.email_verified,
                        account.disabled,
                        account.display_name,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already registered", {"email": email})
        account.email = email
        return account

    def get_account(self, subject_id: str) -> Optional[IdentityAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity_account WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[IdentityAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity_account WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, subject_id: str, **fields: Any) -> Optional[IdentityAccount]:
        unknown = set(fields) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(subject_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE identity_account SET {assignments} WHERE subject_id = %s RETURNING *",
                [*fields.values(), subject_id],
            ).fetchone()
        return self._account_from_row(row) if row else None

    # row mapping
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            subject_id=row["subject_id"],
            created_at=ensure_utc(row["created_at"]),
            last_seen_at=ensure_utc(row["last_seen_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            generation=int(row.get("generation") or 0),
            device_fingerprint=row.get("device_fingerprint"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            terminated_at=parse_timestamp(row.get("terminated_at")),
            termination_reason=row.get("termination_reason"),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> RoleAssignment:
        return RoleAssignment(
            subject_id=row["subject_id"],
            role=Role(row["role"]),
            permissions=coerce_permissions(row.get("permissions")),
            profile_complete=bool(row.get("profile_complete")),
            email_verified=bool(row.get("email_verified")),
            updated_at=parse_timestamp(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditRecord:
        def _json(value: Any) -> Optional[dict]:
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except json.JSONDecodeError:
                    return None
            return value

        return AuditRecord(
            id=row["id"],
            timestamp=ensure_utc(row["ts"]),
            type=AuditEventType(row["type"]),
            action=row["action"],
            success=bool(row["success"]),
            actor_id=row.get("actor_id"),
            target_resource=row.get("target_resource"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_fingerprint=row.get("device_fingerprint"),
            old_values=_json(row.get("old_values")),
            new_values=_json(row.get("new_values")),
            error_message=row.get("error_message"),
        )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> IdentityAccount:
        return IdentityAccount(
            subject_id=row["subject_id"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            email_verified=bool(row.get("email_verified")),
            disabled=bool(row.get("disabled")),
            display_name=row.get("display_name"),
            created_at=parse_timestamp(row.get("created_at")) or utcnow(),
        )
