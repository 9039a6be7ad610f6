"""End-to-end tests of the authorization pipeline against the in-memory runtime."""

import time
from datetime import datetime, timezone

import pytest

from learnity.service.audit import ACTION_AUTHORIZE, ACTION_BLACKLISTED_REUSE, ACTION_LOGIN, TimeRange
from learnity.service.auth import (
    AuthorizeOptions,
    AuthRequest,
    Credentials,
    Registration,
    require_admin,
    require_teacher,
)
from learnity.service.errors import (
    AuthenticationError,
    Blacklisted,
    ConflictError,
    EmailNotVerified,
    InsufficientPermission,
    InsufficientRole,
    InvalidToken,
    NotFoundError,
    ProviderUnreachable,
    ServerError,
    SessionTerminated,
    SubjectNotFound,
    ValidationError,
)
from learnity.service.identity import ProviderUnavailable
from learnity.storage.models import AuditEventType, Permission, Role

PASSWORD = "correct horse battery"


async def _register(runtime, email, role=Role.STUDENT, **profile):
    return await runtime.auth.register(
        Registration(email=email, password=PASSWORD, profile=profile), role=role
    )


async def _login(runtime, email, password=PASSWORD, fingerprint=None):
    return await runtime.auth.login(
        Credentials(email=email, password=password, device_fingerprint=fingerprint),
        AuthRequest(ip_address="10.0.0.1", user_agent="pytest"),
    )


async def _admin(runtime, email="admin@example.com"):
    result = await _register(runtime, email)
    await runtime.roles.assign_role(result.subject_id, Role.ADMIN)
    return await _login(runtime, email)


def _bearer(token, route=None):
    return AuthRequest(authorization=f"Bearer {token}", ip_address="10.0.0.1", route=route)


def _authorize_records(runtime):
    return runtime.store.list_audit_records(action=ACTION_AUTHORIZE)


class TestAuthorize:
    async def test_valid_token_yields_context(self, runtime):
        result = await _register(runtime, "ada@example.com")
        context = await runtime.auth.authorize(_bearer(result.identity_token))

        assert context.subject_id == result.subject_id
        assert context.role == Role.STUDENT
        assert Permission.BOOK_TUTORING in context.permissions
        assert context.session_id == result.session_id
        [record] = _authorize_records(runtime)
        assert record.success is True
        assert record.actor_id == result.subject_id

    async def test_missing_header(self, runtime):
        with pytest.raises(InvalidToken):
            await runtime.auth.authorize(AuthRequest())
        [record] = _authorize_records(runtime)
        assert record.success is False
        assert record.error_message == "invalid_token"

    async def test_student_denied_admin_route_writes_one_record(self, runtime):
        result = await _register(runtime, "student@example.com")
        with pytest.raises(InsufficientRole) as excinfo:
            await runtime.auth.authorize(_bearer(result.identity_token), require_admin())

        assert excinfo.value.status_code == 403
        records = _authorize_records(runtime)
        assert len(records) == 1
        assert records[0].success is False
        assert records[0].actor_id == result.subject_id
        assert records[0].error_message == "insufficient_role"

    async def test_missing_permission(self, runtime):
        result = await _register(runtime, "ada@example.com")
        options = AuthorizeOptions(required_permissions=frozenset({Permission.MANAGE_USERS}))
        with pytest.raises(InsufficientPermission) as excinfo:
            await runtime.auth.authorize(_bearer(result.identity_token), options)
        assert excinfo.value.detail == {"missing": ["manage:users"]}

    async def test_route_whitelist(self, runtime):
        result = await _register(runtime, "ada@example.com")
        await runtime.auth.authorize(
            _bearer(result.identity_token), AuthorizeOptions(route="/dashboard/student")
        )
        with pytest.raises(InsufficientRole):
            await runtime.auth.authorize(
                _bearer(result.identity_token), AuthorizeOptions(route="/dashboard/teacher")
            )

    async def test_teacher_preset_accepts_admin(self, runtime):
        admin = await _admin(runtime)
        context = await runtime.auth.authorize(_bearer(admin.identity_token), require_teacher())
        assert context.role == Role.ADMIN

    async def test_unverified_email(self, runtime):
        result = await _register(runtime, "ada@example.com")
        runtime.store.update_account(result.subject_id, email_verified=False)
        login = await _login(runtime, "ada@example.com")

        with pytest.raises(EmailNotVerified):
            await runtime.auth.authorize(_bearer(login.identity_token))
        context = await runtime.auth.authorize(
            _bearer(login.identity_token), AuthorizeOptions(skip_email_verification=True)
        )
        assert context.email_verified is False

    async def test_subject_without_role(self, runtime):
        account = await runtime.provider.create_account("ghost@example.com", PASSWORD)
        session = runtime.sessions.create_session(account.subject_id)
        pair = await runtime.provider.issue_tokens(account, session_id=session.id)

        with pytest.raises(SubjectNotFound) as excinfo:
            await runtime.auth.authorize(_bearer(pair.identity_token))
        assert excinfo.value.status_code == 401

    async def test_provider_outage(self, runtime, monkeypatch):
        result = await _register(runtime, "ada@example.com")

        async def unavailable(token, *, token_kind):
            raise ProviderUnavailable("connection refused")

        monkeypatch.setattr(runtime.provider, "verify_token", unavailable)
        with pytest.raises(ProviderUnreachable) as excinfo:
            await runtime.auth.authorize(_bearer(result.identity_token))
        assert excinfo.value.retryable
        [record] = _authorize_records(runtime)
        assert record.error_message == "provider_unreachable"

    async def test_non_ascii_signature_is_invalid(self, runtime):
        result = await _register(runtime, "ada@example.com")
        header, payload, _ = result.identity_token.split(".")
        with pytest.raises(InvalidToken):
            await runtime.auth.authorize(_bearer(f"{header}.{payload}.éé"))
        [record] = _authorize_records(runtime)
        assert record.error_message == "invalid_token"

    async def test_unexpected_failure_is_audited(self, runtime, monkeypatch):
        result = await _register(runtime, "ada@example.com")

        async def broken(subject_id):
            raise RuntimeError("store exploded")

        monkeypatch.setattr(runtime.roles, "resolve_role", broken)
        with pytest.raises(ServerError):
            await runtime.auth.authorize(_bearer(result.identity_token))
        [record] = _authorize_records(runtime)
        assert record.success is False
        assert record.error_message == "server_error"

    async def test_blacklisted_token_inside_clock_skew_stays_rejected(self, runtime):
        result = await _register(runtime, "ada@example.com")
        claims = runtime.provider._decode_jwt(result.identity_token)
        claims["exp"] = int(time.time()) - 5
        token = runtime.provider._encode_jwt(claims)
        # Past exp but within the verifier's leeway
        assert (await runtime.auth.authorize(_bearer(token))).subject_id == result.subject_id

        assert runtime.blacklist.blacklist(
            token,
            "logout",
            token_kind="identity",
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            subject_id=result.subject_id,
        )
        runtime.blacklist.prune()
        with pytest.raises(Blacklisted):
            await runtime.auth.authorize(_bearer(token))


class TestLogout:
    async def test_logout_blacklists_presented_tokens(self, runtime):
        result = await _register(runtime, "ada@example.com")
        outcome = await runtime.auth.logout(result.identity_token, result.refresh_token)
        assert outcome == {"success": True}

        with pytest.raises(Blacklisted):
            await runtime.auth.authorize(_bearer(result.identity_token))
        reuse = runtime.store.list_audit_records(action=ACTION_BLACKLISTED_REUSE)
        assert len(reuse) == 1
        assert reuse[0].actor_id == result.subject_id
        # The reuse and the refused decision are both recorded
        assert _authorize_records(runtime)[0].error_message == "token_revoked"

    async def test_logout_all_devices_terminates_other_sessions(self, runtime):
        await _register(runtime, "ada@example.com")
        laptop = await _login(runtime, "ada@example.com", fingerprint="laptop")
        phone = await _login(runtime, "ada@example.com", fingerprint="phone")

        await runtime.auth.logout(refresh_token=laptop.refresh_token, all_devices=True)

        with pytest.raises(SessionTerminated):
            await runtime.auth.authorize(_bearer(phone.identity_token))
        with pytest.raises(SessionTerminated):
            await runtime.auth.authorize(_bearer(laptop.identity_token))

    async def test_logout_single_session_leaves_others(self, runtime):
        await _register(runtime, "ada@example.com")
        laptop = await _login(runtime, "ada@example.com", fingerprint="laptop")
        phone = await _login(runtime, "ada@example.com", fingerprint="phone")

        await runtime.auth.logout(refresh_token=laptop.refresh_token)

        with pytest.raises(SessionTerminated):
            await runtime.auth.authorize(_bearer(laptop.identity_token))
        context = await runtime.auth.authorize(_bearer(phone.identity_token))
        assert context.session_id == phone.session_id

    async def test_logout_with_unusable_tokens(self, runtime):
        assert await runtime.auth.logout("garbage", None) == {"success": False}

    async def test_tokens_of_different_subjects(self, runtime):
        ada = await _register(runtime, "ada@example.com")
        bob = await _register(runtime, "bob@example.com")
        with pytest.raises(ValidationError):
            await runtime.auth.logout(ada.identity_token, bob.refresh_token)


class TestLoginAndRefresh:
    async def test_invalid_password_is_audited(self, runtime):
        result = await _register(runtime, "ada@example.com")
        with pytest.raises(AuthenticationError):
            await _login(runtime, "ada@example.com", password="wrong password")
        [record] = runtime.store.list_audit_records(action=ACTION_LOGIN, success=False)
        assert record.actor_id == result.subject_id
        assert record.ip_address == "10.0.0.1"

    async def test_unknown_email(self, runtime):
        with pytest.raises(AuthenticationError):
            await _login(runtime, "nobody@example.com")

    async def test_repeated_failures_are_detected(self, runtime):
        result = await _register(runtime, "ada@example.com")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await _login(runtime, "ada@example.com", password="wrong password")

        patterns = runtime.audit.detect_suspicious_patterns(TimeRange.last(hours=1))
        [pattern] = [p for p in patterns if p.type == "multiple_failed_logins"]
        assert pattern.severity.value == "medium"
        assert pattern.subject_ids == [result.subject_id]

    async def test_session_limit(self, runtime):
        first = await _register(runtime, "ada@example.com")
        for _ in range(runtime.settings.max_sessions_per_subject):
            await _login(runtime, "ada@example.com")

        with pytest.raises(SessionTerminated):
            await runtime.auth.authorize(_bearer(first.identity_token))

    async def test_refresh_rotates(self, runtime):
        result = await _register(runtime, "ada@example.com")
        refreshed = await runtime.auth.refresh(result.refresh_token)

        assert refreshed.session_id == result.session_id
        await runtime.auth.authorize(_bearer(refreshed.identity_token))
        with pytest.raises(Blacklisted):
            await runtime.auth.refresh(result.refresh_token)

    async def test_refresh_after_logout(self, runtime):
        result = await _register(runtime, "ada@example.com")
        await runtime.auth.logout(result.identity_token)
        with pytest.raises(SessionTerminated):
            await runtime.auth.refresh(result.refresh_token)

    async def test_identity_token_cannot_refresh(self, runtime):
        result = await _register(runtime, "ada@example.com")
        with pytest.raises(InvalidToken):
            await runtime.auth.refresh(result.identity_token)


class TestRegistration:
    async def test_duplicate_email(self, runtime):
        await _register(runtime, "ada@example.com")
        with pytest.raises(ConflictError):
            await _register(runtime, "ADA@example.com")

    async def test_teacher_applicant_starts_pending(self, runtime):
        result = await _register(runtime, "t@example.com", Role.PENDING_TEACHER, subjects=["math"])
        assignment = await runtime.roles.resolve_role(result.subject_id)
        assert assignment.role == Role.PENDING_TEACHER
        assert assignment.profile_complete is True

    @pytest.mark.parametrize("role", [Role.ADMIN, Role.TEACHER])
    async def test_privileged_self_registration_refused(self, runtime, role):
        with pytest.raises(ValidationError):
            await _register(runtime, "sneaky@example.com", role)


class TestAdminOperations:
    async def test_approve_teacher(self, runtime):
        admin = await _admin(runtime)
        applicant = await _register(runtime, "t@example.com", Role.PENDING_TEACHER)

        updated = await runtime.auth.approve_teacher(applicant.subject_id, admin.subject_id)
        assert updated.role == Role.TEACHER
        context = await runtime.auth.authorize(_bearer(applicant.identity_token), require_teacher())
        assert context.role == Role.TEACHER

        [record] = runtime.store.list_audit_records(type=AuditEventType.ADMIN_ACTION)
        assert record.action == "teacher_approved"
        assert record.actor_id == admin.subject_id
        assert record.old_values["role"] == "pending_teacher"
        assert record.new_values["role"] == "teacher"

    async def test_reject_requires_pending_application(self, runtime):
        admin = await _admin(runtime)
        student = await _register(runtime, "s@example.com")
        with pytest.raises(ValidationError):
            await runtime.auth.reject_teacher(student.subject_id, admin.subject_id)

    async def test_disallowed_transition_is_audited(self, runtime):
        admin = await _admin(runtime)
        applicant = await _register(runtime, "t@example.com", Role.PENDING_TEACHER)
        await runtime.auth.reject_teacher(applicant.subject_id, admin.subject_id, reason="incomplete")

        with pytest.raises(ValidationError):
            await runtime.auth.promote_role(applicant.subject_id, Role.TEACHER, admin.subject_id)
        failed = runtime.store.list_audit_records(type=AuditEventType.ADMIN_ACTION, success=False)
        assert len(failed) == 1

    async def test_unknown_target(self, runtime):
        admin = await _admin(runtime)
        with pytest.raises(NotFoundError):
            await runtime.auth.promote_role("missing", Role.TEACHER, admin.subject_id)

    async def test_revoke_all_tokens(self, runtime):
        admin = await _admin(runtime)
        victim = await _register(runtime, "v@example.com")

        outcome = await runtime.auth.revoke_all_tokens(victim.subject_id, admin.subject_id)
        assert outcome["sessions_terminated"] == 1
        with pytest.raises(Blacklisted):
            await runtime.auth.authorize(_bearer(victim.identity_token))

        fresh = await _login(runtime, "v@example.com")
        context = await runtime.auth.authorize(_bearer(fresh.identity_token))
        assert context.subject_id == victim.subject_id
