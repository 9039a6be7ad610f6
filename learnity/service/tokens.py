from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from learnity.logging import get_logger
from learnity.service.errors import ExpiredToken, InvalidToken, ProviderUnreachable
from learnity.service.identity import (
    IdentityProvider,
    ProviderTokenExpired,
    ProviderTokenInvalid,
    ProviderUnavailable,
)
from learnity.storage.models import TokenKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifiedToken:
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    token_kind: TokenKind
    session_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        return self.claims.get("email")

    @property
    def email_verified(self) -> bool:
        return bool(self.claims.get("email_verified", False))


def _claim_timestamp(claims: Dict[str, Any], name: str) -> datetime:
    try:
        return datetime.fromtimestamp(float(claims[name]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError, OverflowError):
        raise InvalidToken(f"token is missing a valid '{name}' claim")


class TokenValidator:
    """Turns a raw bearer token into a ``VerifiedToken`` or a rejection.

    Cryptographic checks belong to the identity provider. A provider that does
    not answer within ``timeout_seconds`` is reported as ``ProviderUnreachable``
    so callers can tell an outage apart from a bad token.
    """

    def __init__(self, provider: IdentityProvider, *, timeout_seconds: float = 5.0) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def extract_bearer(header: Optional[str]) -> str:
        if not header:
            raise InvalidToken("missing authorization header")
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            raise InvalidToken("authorization scheme must be Bearer")
        token = token.strip()
        if not token:
            raise InvalidToken("empty bearer token")
        return token

    async def validate(
        self, raw_token: str, *, token_kind: TokenKind | str = TokenKind.IDENTITY
    ) -> VerifiedToken:
        kind = TokenKind(token_kind)
        if not raw_token:
            raise InvalidToken("empty token")
        try:
            claims = await asyncio.wait_for(
                self.provider.verify_token(raw_token, token_kind=kind),
                timeout=self.timeout_seconds,
            )
        except ProviderTokenExpired:
            raise ExpiredToken()
        except ProviderTokenInvalid as exc:
            logger.info("token_rejected", reason=str(exc), token_kind=kind.value)
            raise InvalidToken()
        except (asyncio.TimeoutError, ProviderUnavailable) as exc:
            logger.warning(
                "identity_provider_unreachable",
                error=str(exc) or exc.__class__.__name__,
                timeout_seconds=self.timeout_seconds,
            )
            raise ProviderUnreachable()

        subject_id = claims.get("sub")
        if not subject_id or not isinstance(subject_id, str):
            raise InvalidToken("token is missing a subject")
        session_id = claims.get("sid")
        return VerifiedToken(
            subject_id=subject_id,
            issued_at=_claim_timestamp(claims, "iat"),
            expires_at=_claim_timestamp(claims, "exp"),
            token_kind=kind,
            session_id=str(session_id) if session_id else None,
            claims=dict(claims),
        )
