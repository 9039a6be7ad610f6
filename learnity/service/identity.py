"""Identity provider clients.

The auth core never checks passwords or signatures itself; it asks an
identity provider. ``LocalIdentityProvider`` is a self-hosted HS256 provider
backed by the auth store, ``RemoteIdentityProvider`` talks to an external
provider over HTTP.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from learnity.config import Settings
from learnity.logging import get_logger
from learnity.storage.common import AuthStore
from learnity.storage.errors import ConstraintViolation
from learnity.storage.models import IdentityAccount, TokenKind

logger = get_logger(__name__)


class IdentityProviderError(Exception):
    """Base class for failures reported by an identity provider."""


class ProviderTokenInvalid(IdentityProviderError):
    pass


class ProviderTokenExpired(IdentityProviderError):
    pass


class ProviderUnavailable(IdentityProviderError):
    pass


class InvalidCredentials(IdentityProviderError):
    def __init__(self, message: str = "invalid credentials", *, subject_id: Optional[str] = None):
        super().__init__(message)
        self.subject_id = subject_id


class AccountExists(IdentityProviderError):
    pass


@dataclass(frozen=True)
class ProviderAccount:
    subject_id: str
    email: str
    email_verified: bool = False
    disabled: bool = False
    display_name: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    identity_token: str
    refresh_token: str
    issued_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime


class IdentityProvider(Protocol):
    async def verify_token(self, token: str, *, token_kind: TokenKind) -> Dict[str, Any]: ...

    async def authenticate(self, email: str, password: str) -> ProviderAccount: ...

    async def create_account(
        self, email: str, password: str, *, display_name: Optional[str] = None
    ) -> ProviderAccount: ...

    async def get_account(self, subject_id: str) -> Optional[ProviderAccount]: ...

    async def issue_tokens(
        self, account: ProviderAccount, *, session_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> TokenPair: ...

    async def revoke_refresh_tokens(self, subject_id: str) -> None: ...

    async def close(self) -> None: ...


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class LocalIdentityProvider:
    """Self-hosted provider: argon2id credentials in the store, HS256 tokens."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._leeway_seconds = float(settings.jwt_clock_skew_seconds)

    @staticmethod
    def _to_account(record: IdentityAccount) -> ProviderAccount:
        return ProviderAccount(
            subject_id=record.subject_id,
            email=record.email,
            email_verified=record.email_verified,
            disabled=record.disabled,
            display_name=record.display_name,
        )

    async def create_account(
        self, email: str, password: str, *, display_name: Optional[str] = None
    ) -> ProviderAccount:
        record = IdentityAccount(
            subject_id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=self._pwd_hasher.hash(password),
            email_verified=not self.settings.require_email_verification_on_signup,
            display_name=display_name,
        )
        try:
            stored = self.store.create_account(record)
        except ConstraintViolation as exc:
            raise AccountExists(exc.message) from exc
        logger.info("identity_account_created", subject_id=stored.subject_id)
        return self._to_account(stored)

    async def authenticate(self, email: str, password: str) -> ProviderAccount:
        record = self.store.get_account_by_email(email.strip().lower())
        if not record:
            raise InvalidCredentials()
        if record.disabled:
            raise InvalidCredentials("account disabled", subject_id=record.subject_id)
        if record.password_algo != "argon2id":
            logger.warning("password_algo_mismatch", subject_id=record.subject_id)
            raise InvalidCredentials(subject_id=record.subject_id)
        try:
            self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            raise InvalidCredentials(subject_id=record.subject_id)
        if self._pwd_hasher.check_needs_rehash(record.password_hash):
            self.store.update_account(
                record.subject_id, password_hash=self._pwd_hasher.hash(password)
            )
        return self._to_account(record)

    async def get_account(self, subject_id: str) -> Optional[ProviderAccount]:
        record = self.store.get_account(subject_id)
        return self._to_account(record) if record else None

    async def mark_email_verified(self, subject_id: str) -> Optional[ProviderAccount]:
        record = self.store.update_account(subject_id, email_verified=True)
        return self._to_account(record) if record else None

    async def issue_tokens(
        self, account: ProviderAccount, *, session_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> TokenPair:
        # Sub-second iat so a token minted right after a subject-wide revocation
        # is distinguishable from tokens minted before it
        issued = round(time.time(), 6)
        identity_exp = int(issued + self.settings.identity_token_ttl_minutes * 60)
        refresh_exp = int(issued + self.settings.refresh_token_ttl_minutes * 60)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.subject_id,
            "sid": session_id,
            "iat": issued,
            "email": account.email,
            "email_verified": account.email_verified,
            **(claims or {}),
        }
        identity_token = self._encode_jwt(
            {**base, "token_type": TokenKind.IDENTITY.value, "jti": str(uuid.uuid4()), "exp": identity_exp}
        )
        refresh_token = self._encode_jwt(
            {**base, "token_type": TokenKind.REFRESH.value, "jti": str(uuid.uuid4()), "exp": refresh_exp}
        )
        return TokenPair(
            identity_token=identity_token,
            refresh_token=refresh_token,
            issued_at=_from_timestamp(issued),
            expires_at=_from_timestamp(identity_exp),
            refresh_expires_at=_from_timestamp(refresh_exp),
        )

    async def verify_token(self, token: str, *, token_kind: TokenKind) -> Dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload.get("token_type") != token_kind.value:
            raise ProviderTokenInvalid("unexpected token type")
        return payload

    async def revoke_refresh_tokens(self, subject_id: str) -> None:
        # Refresh requires a live session, so terminating the subject's
        # sessions already kills every outstanding refresh token
        logger.info("local_refresh_tokens_revoked", subject_id=subject_id)

    async def close(self) -> None:
        return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise ProviderTokenInvalid("malformed token")

        # Pin the algorithm to block alg-confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise ProviderTokenInvalid("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise ProviderTokenInvalid("unsupported algorithm")

        # Headers arrive latin-1 decoded; compare bytes so non-ASCII input is a mismatch
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("utf-8")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            raise ProviderTokenInvalid("signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise ProviderTokenInvalid("malformed payload")
        if not isinstance(payload, dict):
            raise ProviderTokenInvalid("malformed payload")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise ProviderTokenInvalid("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise ProviderTokenInvalid("audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise ProviderTokenInvalid("missing expiry")
        if exp_ts <= time.time() - self._leeway_seconds:
            raise ProviderTokenExpired("token expired")
        return payload


class RemoteIdentityProvider:
    """HTTP client for an external identity provider.

    Expected endpoints, relative to ``IDENTITY_PROVIDER_URL``:

    - ``POST /v1/tokens:verify`` ``{token, token_type}`` -> ``{claims}``
    - ``POST /v1/tokens:issue`` ``{subject_id, claims}`` -> token pair
    - ``POST /v1/accounts:signIn`` ``{email, password}`` -> account
    - ``POST /v1/accounts`` ``{email, password, display_name}`` -> account
    - ``GET /v1/accounts/{subject_id}`` -> account
    - ``POST /v1/accounts/{subject_id}:revokeRefreshTokens``

    Timeouts, transport failures, 429, 5xx and any status an endpoint does not
    define surface as ``ProviderUnavailable``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not settings.identity_provider_url:
            raise ValueError("IDENTITY_PROVIDER_URL is required for the remote identity provider")
        headers = {"Accept": "application/json"}
        if settings.identity_provider_api_key:
            headers["Authorization"] = f"Bearer {settings.identity_provider_api_key}"
        self.settings = settings
        self.client = httpx.AsyncClient(
            base_url=settings.identity_provider_url.rstrip("/"),
            timeout=settings.identity_provider_timeout_seconds,
            headers=headers,
            follow_redirects=False,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("identity_provider_timeout", path=path, error=str(exc))
            raise ProviderUnavailable("identity provider timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("identity_provider_transport_error", path=path, error=str(exc))
            raise ProviderUnavailable("identity provider unreachable") from exc
        if response.status_code >= 500:
            logger.warning(
                "identity_provider_server_error", path=path, status_code=response.status_code
            )
            raise ProviderUnavailable(f"identity provider returned {response.status_code}")
        if response.status_code == 429:
            logger.warning("identity_provider_rate_limited", path=path)
            raise ProviderUnavailable("identity provider is rate limiting requests")
        return response

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        # Statuses the endpoint does not define carry no verdict about the caller
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "identity_provider_unexpected_status",
                path=response.request.url.path,
                status_code=response.status_code,
            )
            raise ProviderUnavailable(
                f"identity provider returned unexpected status {response.status_code}"
            ) from exc

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable("identity provider returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable("identity provider returned malformed JSON")
        return data

    @staticmethod
    def _error_code(data: Dict[str, Any]) -> Optional[str]:
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("code")
        return error if isinstance(error, str) else None

    @staticmethod
    def _to_account(data: Dict[str, Any]) -> ProviderAccount:
        return ProviderAccount(
            subject_id=str(data["subject_id"]),
            email=str(data.get("email", "")),
            email_verified=bool(data.get("email_verified", False)),
            disabled=bool(data.get("disabled", False)),
            display_name=data.get("display_name"),
        )

    async def verify_token(self, token: str, *, token_kind: TokenKind) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/v1/tokens:verify", json={"token": token, "token_type": token_kind.value}
        )
        if response.status_code in (400, 401, 403):
            code = self._error_code(self._json(response))
            if code == "token_expired":
                raise ProviderTokenExpired("token expired")
            raise ProviderTokenInvalid(code or "token rejected")
        self._check_status(response)
        claims = self._json(response).get("claims")
        if not isinstance(claims, dict):
            raise ProviderTokenInvalid("verification returned no claims")
        return claims

    async def authenticate(self, email: str, password: str) -> ProviderAccount:
        response = await self._request(
            "POST", "/v1/accounts:signIn", json={"email": email, "password": password}
        )
        if response.status_code in (400, 401, 403, 404):
            data = self._json(response)
            raise InvalidCredentials(subject_id=data.get("subject_id"))
        self._check_status(response)
        return self._to_account(self._json(response))

    async def create_account(
        self, email: str, password: str, *, display_name: Optional[str] = None
    ) -> ProviderAccount:
        response = await self._request(
            "POST",
            "/v1/accounts",
            json={"email": email, "password": password, "display_name": display_name},
        )
        if response.status_code == 409:
            raise AccountExists("email already registered")
        self._check_status(response)
        return self._to_account(self._json(response))

    async def get_account(self, subject_id: str) -> Optional[ProviderAccount]:
        response = await self._request("GET", f"/v1/accounts/{subject_id}")
        if response.status_code == 404:
            return None
        self._check_status(response)
        return self._to_account(self._json(response))

    async def issue_tokens(
        self, account: ProviderAccount, *, session_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> TokenPair:
        response = await self._request(
            "POST",
            "/v1/tokens:issue",
            json={"subject_id": account.subject_id, "claims": {"sid": session_id, **(claims or {})}},
        )
        self._check_status(response)
        data = self._json(response)
        try:
            return TokenPair(
                identity_token=data["identity_token"],
                refresh_token=data["refresh_token"],
                issued_at=datetime.fromisoformat(data["issued_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
                refresh_expires_at=datetime.fromisoformat(data["refresh_expires_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderUnavailable("identity provider returned an incomplete token pair") from exc

    async def revoke_refresh_tokens(self, subject_id: str) -> None:
        response = await self._request("POST", f"/v1/accounts/{subject_id}:revokeRefreshTokens")
        if response.status_code != 404:
            self._check_status(response)

    async def close(self) -> None:
        await self.client.aclose()
