"""Role and permission tables plus the cached resolver built on them.

All access rules live in the tables below so they can be audited in one
place. Routes that no role lists are denied.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from redis.exceptions import RedisError

from learnity.logging import get_logger
from learnity.service.errors import SubjectNotFound, ValidationError
from learnity.storage.common import AuthStore, coerce_permissions, parse_timestamp
from learnity.storage.models import Permission, Role, RoleAssignment
from learnity.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ROLE_PERMISSIONS: Mapping[Role, FrozenSet[Permission]] = {
    Role.STUDENT: frozenset(
        {
            Permission.VIEW_STUDENT_DASHBOARD,
            Permission.JOIN_STUDY_GROUPS,
            Permission.BOOK_TUTORING,
            Permission.ENHANCE_PROFILE,
        }
    ),
    Role.TEACHER: frozenset(
        {
            Permission.VIEW_TEACHER_DASHBOARD,
            Permission.MANAGE_SESSIONS,
            Permission.UPLOAD_CONTENT,
            Permission.VIEW_STUDENT_PROGRESS,
        }
    ),
    Role.PENDING_TEACHER: frozenset(
        {Permission.VIEW_APPLICATION_STATUS, Permission.UPDATE_APPLICATION}
    ),
    Role.REJECTED_TEACHER: frozenset({Permission.VIEW_APPLICATION_STATUS}),
    Role.ADMIN: frozenset(Permission),
}

# The most specific matching prefix decides which permission a route needs
ROUTE_PERMISSIONS: Mapping[str, Permission] = {
    "/dashboard/student": Permission.VIEW_STUDENT_DASHBOARD,
    "/dashboard/teacher": Permission.VIEW_TEACHER_DASHBOARD,
    "/dashboard/admin": Permission.VIEW_ADMIN_PANEL,
    "/admin": Permission.VIEW_ADMIN_PANEL,
    "/admin/users": Permission.MANAGE_USERS,
    "/admin/teachers": Permission.APPROVE_TEACHERS,
    "/admin/audit": Permission.VIEW_AUDIT_LOGS,
    "/teacher/sessions": Permission.MANAGE_SESSIONS,
    "/teacher/content": Permission.UPLOAD_CONTENT,
    "/student/groups": Permission.JOIN_STUDY_GROUPS,
    "/student/tutoring": Permission.BOOK_TUTORING,
    "/profile/enhance": Permission.ENHANCE_PROFILE,
    "/application/status": Permission.VIEW_APPLICATION_STATUS,
    "/application/update": Permission.UPDATE_APPLICATION,
}

ROUTE_ACCESS: Mapping[Role, Tuple[str, ...]] = {
    role: tuple(
        prefix for prefix, permission in ROUTE_PERMISSIONS.items() if permission in granted
    )
    for role, granted in ROLE_PERMISSIONS.items()
}

ALLOWED_ROLE_TRANSITIONS: Mapping[Role, FrozenSet[Role]] = {
    Role.STUDENT: frozenset({Role.PENDING_TEACHER, Role.TEACHER, Role.ADMIN}),
    Role.PENDING_TEACHER: frozenset({Role.TEACHER, Role.REJECTED_TEACHER}),
    Role.REJECTED_TEACHER: frozenset({Role.PENDING_TEACHER}),
    Role.TEACHER: frozenset({Role.STUDENT, Role.ADMIN}),
    Role.ADMIN: frozenset({Role.TEACHER, Role.STUDENT}),
}


def normalize_route(route: str) -> str:
    path = route.split("?", 1)[0].split("#", 1)[0].strip()
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def route_matches(route: str, prefix: str) -> bool:
    """``/admin`` matches ``/admin`` and ``/admin/users`` but not ``/administrator``."""
    path = normalize_route(route)
    return path == prefix or path.startswith(prefix + "/")


def protecting_prefix(route: str) -> Optional[str]:
    """Longest prefix of ``ROUTE_PERMISSIONS`` covering ``route``, if any."""
    matches = [prefix for prefix in ROUTE_PERMISSIONS if route_matches(route, prefix)]
    return max(matches, key=len) if matches else None


def role_allows_route(role: Role, route: str) -> bool:
    prefix = protecting_prefix(route)
    return prefix is not None and prefix in ROUTE_ACCESS.get(role, ())


def validate_transition(current: Optional[Role], new_role: Role) -> None:
    if current is None or current == new_role:
        return
    if new_role not in ALLOWED_ROLE_TRANSITIONS.get(current, frozenset()):
        raise ValidationError(
            f"role transition {current.value} -> {new_role.value} is not allowed",
            detail={"from": current.value, "to": new_role.value},
        )


def _serialize(assignment: RoleAssignment) -> Dict[str, Any]:
    return {
        "subject_id": assignment.subject_id,
        "role": assignment.role.value,
        "permissions": sorted(p.value for p in assignment.permissions),
        "profile_complete": assignment.profile_complete,
        "email_verified": assignment.email_verified,
        "updated_at": assignment.updated_at.isoformat(),
    }


def _deserialize(payload: Dict[str, Any]) -> Optional[RoleAssignment]:
    try:
        return RoleAssignment(
            subject_id=payload["subject_id"],
            role=Role(payload["role"]),
            permissions=coerce_permissions(payload.get("permissions")),
            profile_complete=bool(payload.get("profile_complete")),
            email_verified=bool(payload.get("email_verified")),
            updated_at=parse_timestamp(payload["updated_at"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


class RoleResolver:
    """Resolves role assignments through a short TTL cache.

    With a ``RedisCache`` the cache is shared across workers; otherwise each
    process keeps its own map. Every write goes through ``assign_role`` which
    invalidates both, so a change is visible on the next lookup regardless of
    the TTL.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        cache: Optional[RedisCache] = None,
        ttl_seconds: int = 30,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = max(0, ttl_seconds)
        self._local: Dict[str, Tuple[float, RoleAssignment]] = {}
        self._local_lock = threading.Lock()

    async def resolve_role(self, subject_id: str) -> RoleAssignment:
        assignment = await self._cached(subject_id)
        if assignment is not None:
            return assignment
        assignment = self.store.get_role_assignment(subject_id)
        if assignment is None:
            logger.warning("role_assignment_missing", subject_id=subject_id)
            raise SubjectNotFound()
        await self._remember(assignment)
        if self.cache and self.ttl_seconds > 0:
            # An assign_role that landed while the shared entry was being
            # written may already have run its invalidation
            latest = self.store.get_role_assignment(subject_id)
            if latest != assignment:
                logger.info("role_cache_write_superseded", subject_id=subject_id)
                await self.invalidate(subject_id)
                if latest is None:
                    raise SubjectNotFound()
                return latest
        return assignment

    async def get_role(self, subject_id: str) -> Optional[RoleAssignment]:
        try:
            return await self.resolve_role(subject_id)
        except SubjectNotFound:
            return None

    async def has_permission(self, subject_id: str, permission: Permission | str) -> bool:
        assignment = await self.get_role(subject_id)
        if assignment is None:
            return False
        try:
            wanted = Permission(permission)
        except ValueError:
            logger.warning("unknown_permission_checked", subject_id=subject_id, permission=permission)
            return False
        return wanted in assignment.permissions

    async def validate_route_access(self, subject_id: str, route: str) -> bool:
        assignment = await self.get_role(subject_id)
        if assignment is None:
            return False
        return role_allows_route(assignment.role, route)

    async def assign_role(
        self,
        subject_id: str,
        role: Role | str,
        *,
        permissions: Optional[Iterable[Permission | str]] = None,
        profile_complete: Optional[bool] = None,
        email_verified: Optional[bool] = None,
    ) -> RoleAssignment:
        role = Role(role)
        allowed = ROLE_PERMISSIONS[role]
        granted = allowed if permissions is None else coerce_permissions(permissions) & allowed
        current = self.store.get_role_assignment(subject_id)
        if current is None:
            assignment = RoleAssignment(
                subject_id=subject_id,
                role=role,
                permissions=granted,
                profile_complete=bool(profile_complete),
                email_verified=bool(email_verified),
            )
        else:
            assignment = replace(
                current,
                role=role,
                permissions=granted,
                profile_complete=(
                    current.profile_complete if profile_complete is None else profile_complete
                ),
                email_verified=current.email_verified if email_verified is None else email_verified,
            )
        stored = self.store.upsert_role_assignment(assignment)
        await self.invalidate(subject_id)
        logger.info(
            "role_assigned",
            subject_id=subject_id,
            role=role.value,
            previous_role=current.role.value if current else None,
        )
        return stored

    async def invalidate(self, subject_id: str) -> bool:
        """Drop cached entries for ``subject_id``.

        Returns False when the shared cache could not be reached; the stored
        assignment is already authoritative, so callers carry on and the stale
        entry ages out with its TTL.
        """
        with self._local_lock:
            self._local.pop(subject_id, None)
        if self.cache:
            try:
                await self.cache.invalidate_role(subject_id)
            except RedisError as exc:
                logger.error("role_cache_invalidate_failed", subject_id=subject_id, error=str(exc))
                return False
        return True

    async def _cached(self, subject_id: str) -> Optional[RoleAssignment]:
        if self.ttl_seconds <= 0:
            return None
        if self.cache:
            try:
                payload = await self.cache.get_role_assignment(subject_id)
            except RedisError as exc:
                logger.warning("role_cache_read_failed", subject_id=subject_id, error=str(exc))
                return None
            return _deserialize(payload) if payload else None
        now = time.monotonic()
        with self._local_lock:
            entry = self._local.get(subject_id)
            if entry is None:
                return None
            expires_at, assignment = entry
            if expires_at <= now:
                del self._local[subject_id]
                return None
            return replace(assignment)

    async def _remember(self, assignment: RoleAssignment) -> None:
        if self.ttl_seconds <= 0:
            return
        if self.cache:
            try:
                await self.cache.set_role_assignment(
                    assignment.subject_id, _serialize(assignment), self.ttl_seconds
                )
            except RedisError as exc:
                logger.warning(
                    "role_cache_write_failed", subject_id=assignment.subject_id, error=str(exc)
                )
            return
        with self._local_lock:
            self._local[assignment.subject_id] = (
                time.monotonic() + self.ttl_seconds,
                replace(assignment),
            )
