"""Tests for bearer extraction and provider-backed token validation."""

import asyncio
import json
import time

import pytest

from learnity.config import get_settings
from learnity.service.errors import ExpiredToken, InvalidToken, ProviderUnreachable
from learnity.service.identity import (
    LocalIdentityProvider,
    ProviderAccount,
    ProviderUnavailable,
)
from learnity.service.tokens import TokenValidator
from learnity.storage.memory import MemoryStore
from learnity.storage.models import TokenKind


@pytest.fixture
def provider():
    return LocalIdentityProvider(MemoryStore(), get_settings())


@pytest.fixture
def account():
    return ProviderAccount(subject_id="subject-1", email="ada@example.com", email_verified=True)


def _claims(settings, **overrides):
    now = time.time()
    claims = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": "subject-1",
        "iat": now,
        "exp": now + 600,
        "token_type": "identity",
    }
    claims.update(overrides)
    return claims


class _StaticProvider:
    def __init__(self, claims=None, error=None, delay=0.0):
        self.claims = claims
        self.error = error
        self.delay = delay

    async def verify_token(self, token, *, token_kind):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.claims


class TestExtractBearer:
    def test_returns_token(self):
        assert TokenValidator.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert TokenValidator.extract_bearer("bearer  tok ") == "tok"

    @pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer", "Bearer   "])
    def test_rejects_missing_or_malformed(self, header):
        with pytest.raises(InvalidToken):
            TokenValidator.extract_bearer(header)


class TestValidate:
    async def test_valid_identity_token(self, provider, account):
        pair = await provider.issue_tokens(account, session_id="sess-1")
        verified = await TokenValidator(provider).validate(pair.identity_token)

        assert verified.subject_id == "subject-1"
        assert verified.session_id == "sess-1"
        assert verified.token_kind == TokenKind.IDENTITY
        assert verified.email == "ada@example.com"
        assert verified.email_verified is True
        assert verified.issued_at < verified.expires_at

    async def test_refresh_token_rejected_as_identity(self, provider, account):
        pair = await provider.issue_tokens(account, session_id="sess-1")
        with pytest.raises(InvalidToken):
            await TokenValidator(provider).validate(pair.refresh_token, token_kind=TokenKind.IDENTITY)

    async def test_refresh_token_accepted_as_refresh(self, provider, account):
        pair = await provider.issue_tokens(account, session_id="sess-1")
        verified = await TokenValidator(provider).validate(pair.refresh_token, token_kind="refresh")
        assert verified.token_kind == TokenKind.REFRESH

    async def test_expired_token(self, provider):
        settings = get_settings()
        token = provider._encode_jwt(_claims(settings, iat=time.time() - 7200, exp=time.time() - 3600))
        with pytest.raises(ExpiredToken) as excinfo:
            await TokenValidator(provider).validate(token)
        assert excinfo.value.kind.value == "token_expired"

    async def test_tampered_signature(self, provider, account):
        pair = await provider.issue_tokens(account, session_id="sess-1")
        header, payload, signature = pair.identity_token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"
        with pytest.raises(InvalidToken):
            await TokenValidator(provider).validate(forged)

    async def test_alg_none_rejected(self, provider):
        settings = get_settings()
        header = provider._encode_segment(b'{"alg":"none","typ":"JWT"}')
        payload = provider._encode_segment(json.dumps(_claims(settings)).encode())
        with pytest.raises(InvalidToken):
            await TokenValidator(provider).validate(f"{header}.{payload}.")

    async def test_wrong_audience(self, provider):
        settings = get_settings()
        token = provider._encode_jwt(_claims(settings, aud="someone-else"))
        with pytest.raises(InvalidToken):
            await TokenValidator(provider).validate(token)

    async def test_garbage_token(self, provider):
        with pytest.raises(InvalidToken):
            await TokenValidator(provider).validate("not-a-jwt")

    async def test_missing_issued_at(self):
        claims = {"sub": "subject-1", "exp": time.time() + 60}
        with pytest.raises(InvalidToken):
            await TokenValidator(_StaticProvider(claims)).validate("tok")

    async def test_missing_subject(self):
        claims = {"iat": time.time(), "exp": time.time() + 60}
        with pytest.raises(InvalidToken):
            await TokenValidator(_StaticProvider(claims)).validate("tok")

    async def test_provider_outage_is_retryable(self):
        validator = TokenValidator(_StaticProvider(error=ProviderUnavailable("down")))
        with pytest.raises(ProviderUnreachable) as excinfo:
            await validator.validate("tok")
        assert excinfo.value.retryable is True
        assert excinfo.value.status_code == 503

    async def test_provider_timeout(self):
        slow = _StaticProvider(claims={"sub": "s", "iat": 1, "exp": 2}, delay=0.5)
        with pytest.raises(ProviderUnreachable):
            await TokenValidator(slow, timeout_seconds=0.01).validate("tok")
