"""Tests for the HTTP identity provider client using httpx.MockTransport."""

import json

import httpx
import pytest

from learnity.config import Settings
from learnity.service.audit import ACTION_AUTHORIZE
from learnity.service.auth import AuthRequest
from learnity.service.errors import ExpiredToken, ProviderUnreachable
from learnity.service.identity import (
    AccountExists,
    InvalidCredentials,
    ProviderAccount,
    ProviderTokenExpired,
    ProviderTokenInvalid,
    ProviderUnavailable,
    RemoteIdentityProvider,
)
from learnity.service.runtime import reset_runtime_for_tests
from learnity.service.tokens import TokenValidator
from learnity.storage.models import TokenKind


def _settings(**overrides):
    values = {
        "identity_provider": "remote",
        "identity_provider_url": "https://idp.example.com/",
        "identity_provider_api_key": "secret-key",
        "jwt_secret": "x" * 48,
    }
    values.update(overrides)
    return Settings(**values)


def _provider(handler, **overrides):
    return RemoteIdentityProvider(_settings(**overrides), transport=httpx.MockTransport(handler))


def test_url_is_required():
    with pytest.raises(ValueError):
        RemoteIdentityProvider(_settings(identity_provider_url=None))


@pytest.mark.asyncio
async def test_verify_returns_claims():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"claims": {"sub": "s1", "iat": 1}})

    provider = _provider(handler)
    claims = await provider.verify_token("tok", token_kind=TokenKind.IDENTITY)
    assert claims == {"sub": "s1", "iat": 1}
    assert seen["path"] == "/v1/tokens:verify"
    assert seen["auth"] == "Bearer secret-key"
    assert seen["body"] == {"token": "tok", "token_type": "identity"}
    await provider.close()


@pytest.mark.asyncio
async def test_verify_expired_and_invalid():
    def expired(request):
        return httpx.Response(401, json={"error": {"code": "token_expired"}})

    def invalid(request):
        return httpx.Response(401, json={"error": "bad_signature"})

    with pytest.raises(ProviderTokenExpired):
        await _provider(expired).verify_token("tok", token_kind=TokenKind.IDENTITY)
    with pytest.raises(ProviderTokenInvalid):
        await _provider(invalid).verify_token("tok", token_kind=TokenKind.IDENTITY)


@pytest.mark.asyncio
async def test_verify_without_claims_is_invalid():
    provider = _provider(lambda request: httpx.Response(200, json={"ok": True}))
    with pytest.raises(ProviderTokenInvalid):
        await provider.verify_token("tok", token_kind=TokenKind.IDENTITY)


@pytest.mark.asyncio
async def test_server_errors_are_unavailable():
    provider = _provider(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(ProviderUnavailable):
        await provider.verify_token("tok", token_kind=TokenKind.IDENTITY)


@pytest.mark.asyncio
async def test_transport_errors_are_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await _provider(handler).get_account("s1")


@pytest.mark.asyncio
async def test_malformed_json_is_unavailable():
    provider = _provider(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(ProviderUnavailable):
        await provider.verify_token("tok", token_kind=TokenKind.IDENTITY)


@pytest.mark.asyncio
async def test_sign_in_failure_carries_subject():
    provider = _provider(
        lambda request: httpx.Response(401, json={"error": "invalid_password", "subject_id": "s1"})
    )
    with pytest.raises(InvalidCredentials) as excinfo:
        await provider.authenticate("ada@example.com", "wrong")
    assert excinfo.value.subject_id == "s1"


@pytest.mark.asyncio
async def test_create_account_conflict():
    provider = _provider(lambda request: httpx.Response(409, json={"error": "exists"}))
    with pytest.raises(AccountExists):
        await provider.create_account("ada@example.com", "password123")


@pytest.mark.asyncio
async def test_get_account():
    def handler(request):
        if request.url.path == "/v1/accounts/missing":
            return httpx.Response(404, json={})
        return httpx.Response(
            200, json={"subject_id": "s1", "email": "ada@example.com", "email_verified": True}
        )

    provider = _provider(handler)
    account = await provider.get_account("s1")
    assert account == ProviderAccount(subject_id="s1", email="ada@example.com", email_verified=True)
    assert await provider.get_account("missing") is None


@pytest.mark.asyncio
async def test_issue_tokens():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "identity_token": "id",
                "refresh_token": "rt",
                "issued_at": "2026-03-10T12:00:00+00:00",
                "expires_at": "2026-03-10T13:00:00+00:00",
                "refresh_expires_at": "2026-04-09T12:00:00+00:00",
            },
        )

    pair = await _provider(handler).issue_tokens(
        ProviderAccount(subject_id="s1", email="ada@example.com"),
        session_id="sess",
        claims={"role": "student"},
    )
    assert pair.identity_token == "id"
    assert pair.expires_at.hour == 13
    assert seen["body"] == {"subject_id": "s1", "claims": {"sid": "sess", "role": "student"}}


@pytest.mark.asyncio
async def test_incomplete_token_pair_is_unavailable():
    provider = _provider(lambda request: httpx.Response(200, json={"identity_token": "id"}))
    with pytest.raises(ProviderUnavailable):
        await provider.issue_tokens(
            ProviderAccount(subject_id="s1", email="ada@example.com"), session_id="sess"
        )


@pytest.mark.asyncio
async def test_revoke_ignores_unknown_subject():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(404, json={})

    await _provider(handler).revoke_refresh_tokens("s1")
    assert calls == ["/v1/accounts/s1:revokeRefreshTokens"]


@pytest.mark.asyncio
async def test_validator_maps_remote_failures():
    expired = _provider(lambda request: httpx.Response(401, json={"error": "token_expired"}))
    with pytest.raises(ExpiredToken):
        await TokenValidator(expired).validate("tok")

    down = _provider(lambda request: httpx.Response(503, json={}))
    with pytest.raises(ProviderUnreachable) as excinfo:
        await TokenValidator(down).validate("tok")
    assert excinfo.value.retryable


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 422, 429])
async def test_unexpected_statuses_are_unavailable(status):
    provider = _provider(lambda request: httpx.Response(status, json={}))
    with pytest.raises(ProviderUnavailable):
        await provider.verify_token("tok", token_kind=TokenKind.IDENTITY)
    with pytest.raises(ProviderUnavailable):
        await provider.issue_tokens(
            ProviderAccount(subject_id="s1", email="ada@example.com"), session_id="sess"
        )


@pytest.mark.asyncio
async def test_rate_limited_provider_is_an_audited_rejection():
    runtime = reset_runtime_for_tests(
        provider=_provider(lambda request: httpx.Response(429, json={}))
    )
    with pytest.raises(ProviderUnreachable):
        await runtime.auth.authorize(AuthRequest(authorization="Bearer tok", ip_address="10.0.0.1"))
    [record] = runtime.store.list_audit_records(action=ACTION_AUTHORIZE)
    assert record.success is False
    assert record.error_message == "provider_unreachable"
