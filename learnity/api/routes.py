from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from learnity.api.schemas import (
    AuditLogPageResponse,
    AuditRecordResponse,
    AuthContextResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RevokeTokensRequest,
    RoleAssignmentResponse,
    RoleChangeRequest,
    RouteAccessResponse,
    SessionResponse,
    StudentRegistrationRequest,
    TeacherRegistrationRequest,
    TeacherRejectionRequest,
    TokenRefreshRequest,
)
from learnity.logging import get_logger
from learnity.service.audit import TimeRange
from learnity.service.auth import (
    AuthContext,
    AuthorizeOptions,
    AuthRequest,
    Credentials,
    LoginResult,
    Registration,
    require_admin,
)
from learnity.service.roles import role_allows_route
from learnity.service.runtime import check_rate_limit, get_runtime
from learnity.storage.models import AuditEventType, AuditRecord, Permission, Role, RoleAssignment

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

DEFAULT_REPORT_WINDOW = timedelta(hours=24)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has spent its budget for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": max(1, reset_seconds)},
        )


def _client_ip(request: Request) -> Optional[str]:
    """Address the IP-based detection rules key on.

    X-Forwarded-For is only read when the socket peer is a configured trusted
    proxy. The chain is walked from the right, skipping other trusted hops, so
    a client cannot choose its own address by prepending entries.
    """
    peer = request.client.host if request.client else None
    trusted = set(get_runtime().settings.trusted_proxies)
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted:
        return peer
    for hop in reversed([part.strip() for part in forwarded.split(",")]):
        if not hop or hop in trusted:
            continue
        try:
            return str(ip_address(hop))
        except ValueError:
            logger.warning("forwarded_for_invalid", peer=peer)
            return peer
    return peer


def _auth_request(request: Request, authorization: Optional[str] = None) -> AuthRequest:
    return AuthRequest(
        authorization=authorization,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_fingerprint=request.headers.get("x-device-fingerprint"),
        route=request.url.path,
    )


def require(options: Optional[AuthorizeOptions] = None) -> Callable:
    """Build a dependency that authorizes the caller against ``options``."""
    options = options or AuthorizeOptions()

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AuthContext:
        runtime = get_runtime()
        return await runtime.auth.authorize(_auth_request(request, authorization), options)

    return dependency


def _time_range(start: Optional[datetime], end: Optional[datetime]) -> TimeRange:
    end = end or datetime.now(timezone.utc)
    start = start or end - DEFAULT_REPORT_WINDOW
    return TimeRange(start, end)


def _login_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        subject_id=result.subject_id,
        session_id=result.session_id,
        role=result.role,
        identity_token=result.identity_token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
        refresh_expires_at=result.refresh_expires_at,
    )


def _assignment_response(assignment: RoleAssignment) -> RoleAssignmentResponse:
    return RoleAssignmentResponse(
        subject_id=assignment.subject_id,
        role=assignment.role,
        permissions=sorted(p.value for p in assignment.permissions),
        profile_complete=assignment.profile_complete,
        email_verified=assignment.email_verified,
        updated_at=assignment.updated_at,
    )


def _audit_record_response(record: AuditRecord) -> AuditRecordResponse:
    return AuditRecordResponse(
        id=record.id,
        timestamp=record.timestamp,
        type=record.type.value,
        action=record.action,
        success=record.success,
        actor_id=record.actor_id,
        target_resource=record.target_resource,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        device_fingerprint=record.device_fingerprint,
        old_values=record.old_values,
        new_values=record.new_values,
        error_message=record.error_message,
    )


# auth


@router.post("/auth/register/student", response_model=Envelope, status_code=201, tags=["auth"])
async def register_student(body: StudentRegistrationRequest, request: Request):
    """Create a student account and open its first session.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"register:{body.email}", runtime.settings.login_rate_limit_per_minute, 60
    )
    result = await runtime.auth.register(
        Registration(
            email=body.email,
            password=body.password,
            display_name=body.display_name,
            device_fingerprint=body.device_fingerprint,
            profile=body.profile(),
        ),
        role=Role.STUDENT,
        request=_auth_request(request),
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/register/teacher", response_model=Envelope, status_code=201, tags=["auth"])
async def register_teacher(body: TeacherRegistrationRequest, request: Request):
    """Create a teacher applicant; an admin must approve before teacher access."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"register:{body.email}", runtime.settings.login_rate_limit_per_minute, 60
    )
    result = await runtime.auth.register(
        Registration(
            email=body.email,
            password=body.password,
            display_name=body.display_name,
            device_fingerprint=body.device_fingerprint,
            profile=body.profile(),
        ),
        role=Role.PENDING_TEACHER,
        request=_auth_request(request),
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
        503: If the identity provider is unreachable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(
        Credentials(
            email=body.email,
            password=body.password,
            device_fingerprint=body.device_fingerprint,
        ),
        _auth_request(request),
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, _auth_request(request))
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest, request: Request, authorization: Optional[str] = Header(None)
):
    """Revoke the presented tokens; ``all_devices`` also ends every other session."""
    runtime = get_runtime()
    identity_token = None
    if authorization:
        identity_token = runtime.validator.extract_bearer(authorization)
    if not identity_token and not body.refresh_token:
        raise _http_error("validation_error", "no token presented", status_code=400)
    result = await runtime.auth.logout(
        identity_token,
        body.refresh_token,
        all_devices=body.all_devices,
        request=_auth_request(request),
    )
    return Envelope(status="ok", data=result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(require())):
    return Envelope(
        status="ok",
        data=AuthContextResponse(
            subject_id=principal.subject_id,
            role=principal.role,
            permissions=sorted(p.value for p in principal.permissions),
            session_id=principal.session_id,
            email=principal.email,
            email_verified=principal.email_verified,
            expires_at=principal.expires_at,
        ),
    )


@router.get("/auth/route-access", response_model=Envelope, tags=["auth"])
async def route_access(
    route: str = Query(..., min_length=1, max_length=512),
    principal: AuthContext = Depends(require()),
):
    return Envelope(
        status="ok",
        data=RouteAccessResponse(route=route, allowed=role_allows_route(principal.role, route)),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(require())):
    runtime = get_runtime()
    sessions = runtime.sessions.list_active_sessions(principal.subject_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=s.id,
                device_fingerprint=s.device_fingerprint,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_seen_at=s.last_seen_at,
                expires_at=s.expires_at,
                current=s.id == principal.session_id,
            )
            for s in sessions
        ],
    )


# admin


@router.post("/admin/users/{subject_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    subject_id: str,
    body: RoleChangeRequest,
    request: Request,
    principal: AuthContext = Depends(
        require(require_admin(required_permissions=frozenset({Permission.MANAGE_USERS})))
    ),
):
    runtime = get_runtime()
    assignment = await runtime.auth.promote_role(
        subject_id, body.role, principal.subject_id, request=_auth_request(request)
    )
    return Envelope(status="ok", data=_assignment_response(assignment))


@router.post("/admin/teachers/{subject_id}/approve", response_model=Envelope, tags=["admin"])
async def admin_approve_teacher(
    subject_id: str,
    request: Request,
    principal: AuthContext = Depends(
        require(require_admin(required_permissions=frozenset({Permission.APPROVE_TEACHERS})))
    ),
):
    runtime = get_runtime()
    assignment = await runtime.auth.approve_teacher(
        subject_id, principal.subject_id, request=_auth_request(request)
    )
    return Envelope(status="ok", data=_assignment_response(assignment))


@router.post("/admin/teachers/{subject_id}/reject", response_model=Envelope, tags=["admin"])
async def admin_reject_teacher(
    subject_id: str,
    body: TeacherRejectionRequest,
    request: Request,
    principal: AuthContext = Depends(
        require(require_admin(required_permissions=frozenset({Permission.APPROVE_TEACHERS})))
    ),
):
    runtime = get_runtime()
    assignment = await runtime.auth.reject_teacher(
        subject_id, principal.subject_id, reason=body.reason, request=_auth_request(request)
    )
    return Envelope(status="ok", data=_assignment_response(assignment))


@router.post("/admin/users/{subject_id}/revoke-tokens", response_model=Envelope, tags=["admin"])
async def admin_revoke_tokens(
    subject_id: str,
    body: RevokeTokensRequest,
    request: Request,
    principal: AuthContext = Depends(
        require(require_admin(required_permissions=frozenset({Permission.MANAGE_USERS})))
    ),
):
    runtime = get_runtime()
    result = await runtime.auth.revoke_all_tokens(
        subject_id, principal.subject_id, body.reason, request=_auth_request(request)
    )
    return Envelope(status="ok", data=result)


_audit_reader = require(
    require_admin(required_permissions=frozenset({Permission.VIEW_AUDIT_LOGS}))
)


@router.get("/admin/audit/logs", response_model=Envelope, tags=["admin"])
async def admin_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    actor_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    type: Optional[AuditEventType] = Query(None),
    success: Optional[bool] = Query(None),
    ip_address: Optional[str] = Query(None, max_length=64),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(_audit_reader),
):
    runtime = get_runtime()
    result = runtime.audit.get_audit_logs(
        page=page,
        page_size=page_size,
        actor_id=actor_id,
        action=action,
        type=type,
        success=success,
        ip_address=ip_address,
        start=start,
        end=end,
    )
    return Envelope(
        status="ok",
        data=AuditLogPageResponse(
            records=[_audit_record_response(r) for r in result.records],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            has_more=result.has_more,
        ),
    )


@router.get("/admin/audit/summary", response_model=Envelope, tags=["admin"])
async def admin_audit_summary(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(_audit_reader),
):
    runtime = get_runtime()
    summary = runtime.audit.get_audit_summary(_time_range(start, end))
    return Envelope(status="ok", data=asdict(summary))


@router.get("/admin/audit/patterns", response_model=Envelope, tags=["admin"])
async def admin_audit_patterns(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(_audit_reader),
):
    runtime = get_runtime()
    patterns = runtime.audit.detect_suspicious_patterns(_time_range(start, end))
    return Envelope(
        status="ok",
        data=[{"id": p.fingerprint, **asdict(p)} for p in patterns],
    )


@router.get("/admin/audit/alerts", response_model=Envelope, tags=["admin"])
async def admin_audit_alerts(principal: AuthContext = Depends(_audit_reader)):
    runtime = get_runtime()
    return Envelope(status="ok", data=[asdict(a) for a in runtime.audit.check_for_alerts()])


@router.get("/admin/audit/failed-logins", response_model=Envelope, tags=["admin"])
async def admin_failed_logins(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(_audit_reader),
):
    runtime = get_runtime()
    analysis = runtime.audit.get_failed_login_analysis(_time_range(start, end))
    return Envelope(status="ok", data=asdict(analysis))


@router.get("/admin/audit/report", response_model=Envelope, tags=["admin"])
async def admin_security_report(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    principal: AuthContext = Depends(_audit_reader),
):
    runtime = get_runtime()
    report = runtime.audit.generate_security_report(_time_range(start, end))
    return Envelope(status="ok", data=asdict(report))


_platform_admin = require(
    require_admin(required_permissions=frozenset({Permission.MANAGE_PLATFORM}))
)


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def admin_session_stats(principal: AuthContext = Depends(_platform_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.sessions.get_session_stats())


@router.post("/admin/maintenance/prune-blacklist", response_model=Envelope, tags=["admin"])
async def admin_prune_blacklist(principal: AuthContext = Depends(_platform_admin)):
    runtime = get_runtime()
    removed = runtime.blacklist.prune()
    return Envelope(status="ok", data={"removed": removed})
