from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from learnity.logging import get_logger
from learnity.storage.common import AuthStore, session_is_live
from learnity.storage.models import Session, utcnow

if TYPE_CHECKING:
    from learnity.service.audit import AuditLogger

logger = get_logger(__name__)

SESSION_LIMIT_REASON = "session_limit_exceeded"


class SessionManager:
    """Multi-device session lifecycle.

    ``terminate_all_sessions`` bumps the subject's generation before stamping
    rows, and ``is_active`` requires ``session.generation >= current``. A login
    racing a logout-all therefore either lands before the bump (and is killed
    by it) or after it (and survives), never half way.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl_minutes: int = 7 * 24 * 60,
        max_sessions_per_subject: int = 5,
        audit: Optional["AuditLogger"] = None,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.max_sessions_per_subject = max_sessions_per_subject
        self.audit = audit

    def create_session(
        self,
        subject_id: str,
        device_fingerprint: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        self._enforce_session_limit(subject_id)
        session = self.store.create_session(
            subject_id,
            device_fingerprint,
            ttl_minutes=self.ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "session_created",
            subject_id=subject_id,
            session_id=session.id,
            generation=session.generation,
        )
        return session

    def _enforce_session_limit(self, subject_id: str) -> None:
        if self.max_sessions_per_subject <= 0:
            return
        active = self.list_active_sessions(subject_id)
        overflow = len(active) - self.max_sessions_per_subject + 1
        if overflow <= 0:
            return
        active.sort(key=lambda s: s.last_seen_at)
        for session in active[:overflow]:
            self.terminate_session(session.id, SESSION_LIMIT_REASON)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def is_active(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if not session or not session_is_live(session, utcnow()):
            return False
        return session.generation >= self.store.get_subject_generation(session.subject_id)

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, utcnow())

    def terminate_session(self, session_id: str, reason: str) -> bool:
        session = self.store.get_session(session_id)
        terminated = self.store.terminate_session(session_id, reason, utcnow())
        if not terminated:
            return False
        subject_id = session.subject_id if session else None
        logger.info(
            "session_terminated", session_id=session_id, subject_id=subject_id, reason=reason
        )
        if self.audit is not None:
            self.audit.log_session_event(
                "session_terminated",
                subject_id=subject_id,
                session_id=session_id,
                reason=reason,
            )
        return True

    def terminate_all_sessions(self, subject_id: str, reason: str) -> int:
        generation = self.store.bump_subject_generation(subject_id)
        stamped = self.store.terminate_subject_sessions(subject_id, reason, utcnow())
        logger.info(
            "sessions_terminated_all",
            subject_id=subject_id,
            count=len(stamped),
            generation=generation,
            reason=reason,
        )
        if self.audit is not None:
            self.audit.log_session_event(
                "all_sessions_terminated",
                subject_id=subject_id,
                reason=reason,
                count=len(stamped),
            )
        return len(stamped)

    def list_active_sessions(self, subject_id: str) -> List[Session]:
        generation = self.store.get_subject_generation(subject_id)
        return [
            s
            for s in self.store.list_sessions(subject_id, active_only=True)
            if s.generation >= generation
        ]

    def get_session_stats(self) -> Dict[str, Any]:
        sessions = self.store.list_sessions(None, active_only=True)
        generations: Dict[str, int] = {}
        active = []
        for session in sessions:
            if session.subject_id not in generations:
                generations[session.subject_id] = self.store.get_subject_generation(
                    session.subject_id
                )
            if session.generation >= generations[session.subject_id]:
                active.append(session)
        devices = Counter(s.device_fingerprint or "unknown" for s in active)
        return {
            "active_sessions": len(active),
            "unique_subjects": len({s.subject_id for s in active}),
            "sessions_by_device": dict(devices.most_common()),
        }
