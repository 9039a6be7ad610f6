from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from learnity.config import IdentityProviderMode, get_settings, reset_settings_cache
from learnity.logging import get_logger
from learnity.service.audit import AuditLogger, DetectionConfig
from learnity.service.auth import AuthService
from learnity.service.blacklist import TokenBlacklist
from learnity.service.identity import (
    IdentityProvider,
    LocalIdentityProvider,
    RemoteIdentityProvider,
)
from learnity.service.roles import RoleResolver
from learnity.service.sessions import SessionManager
from learnity.service.tokens import TokenValidator
from learnity.storage.memory import MemoryStore
from learnity.storage.postgres import PostgresStore
from learnity.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the explicitly constructed auth services for the FastAPI app.

    Built once on first use and torn down by ``close()`` from the app lifespan.
    """

    def __init__(self, *, provider: Optional[IdentityProvider] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            identity_provider=self.settings.identity_provider.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the shared role cache and login rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; role cache and rate limits "
                    "are per-process only."
                ),
                mode=fallback_mode,
            )

        if provider is not None:
            self.provider = provider
        elif self.settings.identity_provider == IdentityProviderMode.REMOTE:
            self.provider = RemoteIdentityProvider(self.settings)
        else:
            self.provider = LocalIdentityProvider(self.store, self.settings)

        self.audit = AuditLogger(
            self.store,
            config=DetectionConfig.from_settings(self.settings),
            alert_window=timedelta(minutes=self.settings.alert_window_minutes),
        )
        self.validator = TokenValidator(
            self.provider, timeout_seconds=self.settings.identity_provider_timeout_seconds
        )
        self.blacklist = TokenBlacklist(
            self.store,
            revocation_retention=timedelta(
                minutes=max(
                    self.settings.identity_token_ttl_minutes,
                    self.settings.refresh_token_ttl_minutes,
                )
            ),
            clock_skew=timedelta(seconds=self.settings.jwt_clock_skew_seconds),
        )
        self.sessions = SessionManager(
            self.store,
            ttl_minutes=self.settings.session_ttl_minutes,
            max_sessions_per_subject=self.settings.max_sessions_per_subject,
            audit=self.audit,
        )
        self.roles = RoleResolver(
            self.store, cache=self.cache, ttl_seconds=self.settings.role_cache_ttl_seconds
        )
        self.auth = AuthService(
            self.settings,
            provider=self.provider,
            validator=self.validator,
            blacklist=self.blacklist,
            sessions=self.sessions,
            roles=self.roles,
            audit=self.audit,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            identity_provider=self.settings.identity_provider.value,
            role_cache_ttl_seconds=self.settings.role_cache_ttl_seconds,
        )

    async def close(self) -> None:
        await self.provider.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from both constructing it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, provider: Optional[IdentityProvider] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(provider=provider)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available and per-process otherwise.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
