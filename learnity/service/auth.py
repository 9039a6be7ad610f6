from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Optional

from learnity.config import Settings
from learnity.logging import get_logger
from learnity.service.audit import (
    ACTION_AUTHORIZE,
    ACTION_BLACKLISTED_REUSE,
    ACTION_LOGIN,
    ACTION_LOGOUT,
    ACTION_REFRESH,
    ACTION_REGISTER,
    AdminAction,
    AuditLogger,
    AuthEvent,
)
from learnity.service.blacklist import TokenBlacklist
from learnity.service.errors import (
    AuthenticationError,
    AuthRejection,
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
from learnity.service.identity import (
    AccountExists,
    IdentityProvider,
    InvalidCredentials,
    ProviderAccount,
    ProviderUnavailable,
)
from learnity.service.roles import RoleResolver, role_allows_route, validate_transition
from learnity.service.sessions import SessionManager
from learnity.service.tokens import TokenValidator, VerifiedToken
from learnity.storage.models import Permission, Role, RoleAssignment, TokenKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthRequest:
    """What the orchestrator needs from an inbound request."""

    authorization: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    route: Optional[str] = None


def _coerce_roles(values: Iterable[Role | str]) -> FrozenSet[Role]:
    return frozenset(Role(v) for v in values)


@dataclass(frozen=True)
class AuthorizeOptions:
    required_role: Optional[Role] = None
    required_permissions: FrozenSet[Permission] = frozenset()
    allow_multiple_roles: FrozenSet[Role] = frozenset()
    skip_email_verification: bool = False
    route: Optional[str] = None

    def __post_init__(self) -> None:
        # Unknown role or permission names raise ValueError here, at the call site
        if self.required_role is not None:
            object.__setattr__(self, "required_role", Role(self.required_role))
        object.__setattr__(
            self,
            "required_permissions",
            frozenset(Permission(p) for p in self.required_permissions),
        )
        object.__setattr__(self, "allow_multiple_roles", _coerce_roles(self.allow_multiple_roles))

    @property
    def allowed_roles(self) -> FrozenSet[Role]:
        roles = set(self.allow_multiple_roles)
        if self.required_role is not None:
            roles.add(self.required_role)
        return frozenset(roles)


def require_admin(**kwargs: Any) -> AuthorizeOptions:
    return AuthorizeOptions(required_role=Role.ADMIN, **kwargs)


def require_teacher(**kwargs: Any) -> AuthorizeOptions:
    return AuthorizeOptions(
        required_role=Role.TEACHER, allow_multiple_roles=frozenset({Role.ADMIN}), **kwargs
    )


def require_student(**kwargs: Any) -> AuthorizeOptions:
    return AuthorizeOptions(required_role=Role.STUDENT, **kwargs)


@dataclass(frozen=True)
class AuthContext:
    subject_id: str
    role: Role
    permissions: FrozenSet[Permission]
    session_id: Optional[str]
    email: Optional[str]
    email_verified: bool
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    session_id: str
    identity_token: str
    refresh_token: str
    subject_id: str
    role: Role
    expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class Credentials:
    email: str
    password: str
    device_fingerprint: Optional[str] = None


@dataclass
class Registration:
    email: str
    password: str
    display_name: Optional[str] = None
    device_fingerprint: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)


class AuthService:
    """Composes the validator, blacklist, sessions, roles and audit trail.

    ``authorize`` runs a fixed pipeline and stops at the first failure:
    bearer extraction, token verification, revocation, session liveness,
    email verification, role and permission checks. Exactly one ``authorize``
    audit record is written per call.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        provider: IdentityProvider,
        validator: TokenValidator,
        blacklist: TokenBlacklist,
        sessions: SessionManager,
        roles: RoleResolver,
        audit: AuditLogger,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.validator = validator
        self.blacklist = blacklist
        self.sessions = sessions
        self.roles = roles
        self.audit = audit

    # authorization
    async def authorize(
        self, request: AuthRequest, options: Optional[AuthorizeOptions] = None
    ) -> AuthContext:
        options = options or AuthorizeOptions()
        route = options.route or request.route
        verified: Optional[VerifiedToken] = None
        try:
            raw_token = self.validator.extract_bearer(request.authorization)
            verified = await self.validator.validate(raw_token, token_kind=TokenKind.IDENTITY)
            self._check_revocation(raw_token, verified, request)
            if verified.session_id and not self.sessions.is_active(verified.session_id):
                raise SessionTerminated()
            if not options.skip_email_verification and not verified.email_verified:
                raise EmailNotVerified()
            assignment = await self.roles.resolve_role(verified.subject_id)
            self._check_role(assignment, options)
        except AuthRejection as exc:
            self._audit_decision(request, route, verified, success=False, code=exc.kind.value)
            raise
        except Exception as exc:
            logger.exception("authorize_failed", route=route, error_type=type(exc).__name__)
            self._audit_decision(
                request, route, verified, success=False, code=ServerError.error_code
            )
            raise ServerError("authorization failed") from exc
        if verified.session_id:
            self.sessions.touch(verified.session_id)
        self._audit_decision(request, route, verified, success=True)
        return AuthContext(
            subject_id=verified.subject_id,
            role=assignment.role,
            permissions=assignment.permissions,
            session_id=verified.session_id,
            email=verified.email,
            email_verified=verified.email_verified,
            issued_at=verified.issued_at,
            expires_at=verified.expires_at,
        )

    def _check_revocation(
        self, raw_token: str, verified: VerifiedToken, request: AuthRequest
    ) -> None:
        token_hash = self.blacklist.hash_token(raw_token)
        if not self.blacklist.is_revoked(token_hash, verified.subject_id, verified.issued_at):
            return
        self.audit.log_security_event(
            ACTION_BLACKLISTED_REUSE,
            subject_id=verified.subject_id,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            token_hash=token_hash,
            token_kind=verified.token_kind.value,
        )
        raise Blacklisted()

    @staticmethod
    def _check_role(assignment: RoleAssignment, options: AuthorizeOptions) -> None:
        allowed = options.allowed_roles
        if allowed and assignment.role not in allowed:
            raise InsufficientRole(
                detail={
                    "role": assignment.role.value,
                    "allowed_roles": sorted(r.value for r in allowed),
                }
            )
        missing = options.required_permissions - assignment.permissions
        if missing:
            raise InsufficientPermission(detail={"missing": sorted(p.value for p in missing)})
        if options.route and not role_allows_route(assignment.role, options.route):
            raise InsufficientRole(detail={"route": options.route})

    def _audit_decision(
        self,
        request: AuthRequest,
        route: Optional[str],
        verified: Optional[VerifiedToken],
        *,
        success: bool,
        code: Optional[str] = None,
    ) -> None:
        self.audit.log_auth_event(
            AuthEvent(
                action=ACTION_AUTHORIZE,
                success=success,
                subject_id=verified.subject_id if verified else None,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                device_fingerprint=request.device_fingerprint,
                target_resource=route,
                error_message=code,
                metadata=(
                    {"session_id": verified.session_id} if verified and verified.session_id else {}
                ),
            )
        )

    # session lifecycle
    async def _call_provider(self, coro):
        try:
            return await coro
        except ProviderUnavailable as exc:
            logger.warning("identity_provider_unreachable", error=str(exc))
            raise ProviderUnreachable()

    async def login(
        self, credentials: Credentials, request: Optional[AuthRequest] = None
    ) -> LoginResult:
        request = request or AuthRequest()
        fingerprint = credentials.device_fingerprint or request.device_fingerprint
        try:
            account = await self._call_provider(
                self.provider.authenticate(credentials.email, credentials.password)
            )
        except InvalidCredentials as exc:
            self.audit.log_auth_event(
                AuthEvent(
                    action=ACTION_LOGIN,
                    success=False,
                    subject_id=exc.subject_id,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    device_fingerprint=fingerprint,
                    error_message=str(exc),
                    metadata={} if exc.subject_id else {"email": credentials.email.lower()},
                )
            )
            raise AuthenticationError("invalid credentials")

        try:
            assignment = await self.roles.resolve_role(account.subject_id)
        except SubjectNotFound:
            self.audit.log_auth_event(
                AuthEvent(
                    action=ACTION_LOGIN,
                    success=False,
                    subject_id=account.subject_id,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    device_fingerprint=fingerprint,
                    error_message=SubjectNotFound.kind.value,
                )
            )
            raise
        result = await self._open_session(account, assignment, fingerprint, request)
        self.audit.log_auth_event(
            AuthEvent(
                action=ACTION_LOGIN,
                success=True,
                subject_id=account.subject_id,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                device_fingerprint=fingerprint,
                metadata={"session_id": result.session_id},
            )
        )
        logger.info("login_succeeded", subject_id=account.subject_id, session_id=result.session_id)
        return result

    async def _open_session(
        self,
        account: ProviderAccount,
        assignment: RoleAssignment,
        fingerprint: Optional[str],
        request: AuthRequest,
    ) -> LoginResult:
        session = self.sessions.create_session(
            account.subject_id,
            fingerprint,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        try:
            pair = await self._call_provider(
                self.provider.issue_tokens(
                    account, session_id=session.id, claims={"role": assignment.role.value}
                )
            )
        except AuthRejection:
            self.sessions.terminate_session(session.id, "token_issue_failed")
            raise
        return LoginResult(
            session_id=session.id,
            identity_token=pair.identity_token,
            refresh_token=pair.refresh_token,
            subject_id=account.subject_id,
            role=assignment.role,
            expires_at=pair.expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )

    async def refresh(self, refresh_token: str, request: Optional[AuthRequest] = None) -> LoginResult:
        request = request or AuthRequest()
        verified: Optional[VerifiedToken] = None
        try:
            verified = await self.validator.validate(refresh_token, token_kind=TokenKind.REFRESH)
            self._check_revocation(refresh_token, verified, request)
            if not verified.session_id or not self.sessions.is_active(verified.session_id):
                raise SessionTerminated()
            account = await self._call_provider(self.provider.get_account(verified.subject_id))
            if account is None or account.disabled:
                raise SubjectNotFound()
            assignment = await self.roles.resolve_role(verified.subject_id)
            pair = await self._call_provider(
                self.provider.issue_tokens(
                    account,
                    session_id=verified.session_id,
                    claims={"role": assignment.role.value},
                )
            )
        except AuthRejection as exc:
            self.audit.log_auth_event(
                AuthEvent(
                    action=ACTION_REFRESH,
                    success=False,
                    subject_id=verified.subject_id if verified else None,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    error_message=exc.kind.value,
                )
            )
            raise
        # Rotation: the presented refresh token is single-use
        self.blacklist.blacklist(
            refresh_token,
            "refresh_rotated",
            token_kind=TokenKind.REFRESH,
            expires_at=verified.expires_at,
            subject_id=verified.subject_id,
            session_id=verified.session_id,
        )
        self.sessions.touch(verified.session_id)
        self.audit.log_auth_event(
            AuthEvent(
                action=ACTION_REFRESH,
                success=True,
                subject_id=verified.subject_id,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                metadata={"session_id": verified.session_id},
            )
        )
        return LoginResult(
            session_id=verified.session_id,
            identity_token=pair.identity_token,
            refresh_token=pair.refresh_token,
            subject_id=verified.subject_id,
            role=assignment.role,
            expires_at=pair.expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )

    async def _verify_for_logout(
        self, raw_token: Optional[str], kind: TokenKind
    ) -> Optional[VerifiedToken]:
        if not raw_token:
            return None
        try:
            return await self.validator.validate(raw_token, token_kind=kind)
        except ProviderUnreachable:
            raise
        except AuthRejection as exc:
            # An unusable token needs no revocation
            logger.info("logout_token_ignored", token_kind=kind.value, reason=exc.kind.value)
            return None

    async def logout(
        self,
        identity_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        *,
        all_devices: bool = False,
        request: Optional[AuthRequest] = None,
    ) -> Dict[str, bool]:
        request = request or AuthRequest()
        presented = [
            (raw, verified)
            for raw, verified in (
                (identity_token, await self._verify_for_logout(identity_token, TokenKind.IDENTITY)),
                (refresh_token, await self._verify_for_logout(refresh_token, TokenKind.REFRESH)),
            )
            if verified is not None
        ]
        if not presented:
            self.audit.log_auth_event(
                AuthEvent(
                    action=ACTION_LOGOUT,
                    success=False,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    error_message=InvalidToken.kind.value,
                )
            )
            return {"success": False}

        subject_id = presented[0][1].subject_id
        if any(v.subject_id != subject_id for _, v in presented):
            raise ValidationError("tokens belong to different subjects")

        for raw, verified in presented:
            self.blacklist.blacklist(
                raw,
                "logout",
                token_kind=verified.token_kind,
                expires_at=verified.expires_at,
                subject_id=verified.subject_id,
                session_id=verified.session_id,
            )

        if all_devices:
            terminated = self.sessions.terminate_all_sessions(subject_id, "logout_all_devices")
            await self._call_provider(self.provider.revoke_refresh_tokens(subject_id))
        else:
            terminated = 0
            for session_id in {v.session_id for _, v in presented if v.session_id}:
                if self.sessions.terminate_session(session_id, "logout"):
                    terminated += 1

        self.audit.log_auth_event(
            AuthEvent(
                action=ACTION_LOGOUT,
                success=True,
                subject_id=subject_id,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                metadata={"all_devices": all_devices, "sessions_terminated": terminated},
            )
        )
        return {"success": True}

    # registration
    async def register(
        self,
        registration: Registration,
        *,
        role: Role | str = Role.STUDENT,
        request: Optional[AuthRequest] = None,
    ) -> LoginResult:
        request = request or AuthRequest()
        role = Role(role)
        if role not in (Role.STUDENT, Role.PENDING_TEACHER):
            raise ValidationError("self-registration is limited to students and teacher applicants")
        try:
            account = await self._call_provider(
                self.provider.create_account(
                    registration.email,
                    registration.password,
                    display_name=registration.display_name,
                )
            )
        except AccountExists:
            self.audit.log_auth_event(
                AuthEvent(
                    action=ACTION_REGISTER,
                    success=False,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    error_message="email_already_registered",
                    metadata={"email": registration.email.lower(), "role": role.value},
                )
            )
            raise ConflictError("email already registered")
        assignment = await self.roles.assign_role(
            account.subject_id,
            role,
            profile_complete=bool(registration.profile),
            email_verified=account.email_verified,
        )
        self.audit.log_auth_event(
            AuthEvent(
                action=ACTION_REGISTER,
                success=True,
                subject_id=account.subject_id,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                metadata={"role": role.value, "profile_fields": sorted(registration.profile)},
            )
        )
        return await self._open_session(
            account, assignment, registration.device_fingerprint, request
        )

    # admin operations
    async def _require_assignment(self, subject_id: str) -> RoleAssignment:
        try:
            return await self.roles.resolve_role(subject_id)
        except SubjectNotFound:
            raise NotFoundError("subject not found", detail={"subject_id": subject_id})

    async def promote_role(
        self,
        subject_id: str,
        new_role: Role | str,
        acting_admin_id: str,
        *,
        request: Optional[AuthRequest] = None,
        action: str = "role_change",
    ) -> RoleAssignment:
        request = request or AuthRequest()
        new_role = Role(new_role)
        current = await self._require_assignment(subject_id)
        try:
            validate_transition(current.role, new_role)
        except ValidationError as exc:
            self.audit.log_admin_action(
                AdminAction(
                    actor_id=acting_admin_id,
                    action=action,
                    target_resource=f"subject:{subject_id}",
                    old_values={"role": current.role.value},
                    new_values={"role": new_role.value},
                    success=False,
                    error_message=exc.message,
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                )
            )
            raise
        updated = await self.roles.assign_role(subject_id, new_role)
        self.audit.log_admin_action(
            AdminAction(
                actor_id=acting_admin_id,
                action=action,
                target_resource=f"subject:{subject_id}",
                old_values={
                    "role": current.role.value,
                    "permissions": sorted(p.value for p in current.permissions),
                },
                new_values={
                    "role": updated.role.value,
                    "permissions": sorted(p.value for p in updated.permissions),
                },
                ip_address=request.ip_address,
                user_agent=request.user_agent,
            )
        )
        return updated

    async def approve_teacher(
        self, subject_id: str, acting_admin_id: str, *, request: Optional[AuthRequest] = None
    ) -> RoleAssignment:
        current = await self._require_assignment(subject_id)
        if current.role != Role.PENDING_TEACHER:
            raise ValidationError("subject has no pending teacher application")
        return await self.promote_role(
            subject_id, Role.TEACHER, acting_admin_id, request=request, action="teacher_approved"
        )

    async def reject_teacher(
        self,
        subject_id: str,
        acting_admin_id: str,
        *,
        reason: Optional[str] = None,
        request: Optional[AuthRequest] = None,
    ) -> RoleAssignment:
        current = await self._require_assignment(subject_id)
        if current.role != Role.PENDING_TEACHER:
            raise ValidationError("subject has no pending teacher application")
        updated = await self.promote_role(
            subject_id,
            Role.REJECTED_TEACHER,
            acting_admin_id,
            request=request,
            action="teacher_rejected",
        )
        if reason:
            logger.info("teacher_application_rejected", subject_id=subject_id, reason=reason)
        return updated

    async def revoke_all_tokens(
        self,
        subject_id: str,
        acting_admin_id: str,
        reason: str = "admin_revocation",
        *,
        request: Optional[AuthRequest] = None,
    ) -> Dict[str, Any]:
        request = request or AuthRequest()
        await self._require_assignment(subject_id)
        revoked_after = self.blacklist.blacklist_all_for_subject(subject_id, reason)
        terminated = self.sessions.terminate_all_sessions(subject_id, reason)
        await self._call_provider(self.provider.revoke_refresh_tokens(subject_id))
        self.audit.log_admin_action(
            AdminAction(
                actor_id=acting_admin_id,
                action="tokens_revoked",
                target_resource=f"subject:{subject_id}",
                new_values={
                    "reason": reason,
                    "revoked_after": revoked_after.isoformat(),
                    "sessions_terminated": terminated,
                },
                ip_address=request.ip_address,
                user_agent=request.user_agent,
            )
        )
        return {"revoked_after": revoked_after, "sessions_terminated": terminated}

