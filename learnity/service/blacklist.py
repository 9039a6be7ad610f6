from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Optional

from learnity.logging import get_logger
from learnity.storage.common import AuthStore, ensure_utc
from learnity.storage.models import BlacklistEntry, TokenKind, utcnow

logger = get_logger(__name__)


class TokenBlacklist:
    """Revoked tokens, by hash and by per-subject cutoff.

    ``revocation_retention`` should be at least the longest token lifetime;
    revocation markers older than that cannot match any live token and are
    dropped by ``prune``. ``clock_skew`` is the leeway the verifier grants past
    ``exp``; entries outlive their token by that much.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        revocation_retention: timedelta,
        clock_skew: timedelta = timedelta(0),
    ) -> None:
        self.store = store
        self.revocation_retention = revocation_retention
        self.clock_skew = clock_skew

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    def is_blacklisted(self, token_hash: str) -> bool:
        return self.store.get_blacklist_entry(token_hash) is not None

    def revoked_after(self, subject_id: str) -> Optional[datetime]:
        revocation = self.store.get_subject_revocation(subject_id)
        return revocation.revoked_after if revocation else None

    def is_revoked(self, token_hash: str, subject_id: str, issued_at: datetime) -> bool:
        if self.is_blacklisted(token_hash):
            return True
        cutoff = self.revoked_after(subject_id)
        return cutoff is not None and ensure_utc(issued_at) <= cutoff

    def blacklist(
        self,
        raw_token: str,
        reason: str,
        *,
        token_kind: TokenKind | str,
        expires_at: datetime,
        subject_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        now = utcnow()
        expires_at = ensure_utc(expires_at)
        if expires_at + self.clock_skew <= now:
            # Rejected by the verifier already; nothing to remember
            return False
        entry = BlacklistEntry(
            token_hash=self.hash_token(raw_token),
            token_kind=TokenKind(token_kind),
            reason=reason,
            blacklisted_at=now,
            expires_at=expires_at,
            subject_id=subject_id,
            session_id=session_id,
        )
        added = self.store.add_blacklist_entry(entry)
        if added:
            logger.info(
                "token_blacklisted",
                token_hash=entry.token_hash,
                token_kind=entry.token_kind.value,
                reason=reason,
                subject_id=subject_id,
            )
        return added

    def blacklist_all_for_subject(self, subject_id: str, reason: str) -> datetime:
        revocation = self.store.set_subject_revocation(subject_id, utcnow(), reason)
        logger.warning(
            "subject_tokens_revoked",
            subject_id=subject_id,
            revoked_after=revocation.revoked_after.isoformat(),
            reason=reason,
        )
        return revocation.revoked_after

    def prune(self) -> int:
        now = utcnow()
        # A token stays acceptable until exp + clock_skew
        horizon = now - self.clock_skew
        removed = self.store.prune_blacklist(horizon, horizon - self.revocation_retention)
        logger.info("blacklist_pruned", removed=removed)
        return removed
