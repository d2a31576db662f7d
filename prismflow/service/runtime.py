from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from prismflow.config import get_settings, reset_settings_cache
from prismflow.logging import get_logger
from prismflow.service.accounts import AccountService
from prismflow.service.auth import AuthService
from prismflow.service.csrf import CsrfProtector
from prismflow.service.guard import RequestGuard
from prismflow.service.mfa import SecondFactorService
from prismflow.service.permissions import PermissionEngine
from prismflow.service.projects import ProjectAccessControl
from prismflow.service.tokens import TokenService
from prismflow.storage.memory import MemoryStore
from prismflow.storage.postgres import PostgresStore
from prismflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_LOCAL_RATE_LIMIT_PRUNE_AT = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        mfa_key = self.settings.mfa_secret_key or self.settings.jwt_secret
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
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
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
                mode=fallback_mode,
            )

        self.permissions = PermissionEngine(self.store)
        self.permissions.ensure_system_roles()
        self.projects = ProjectAccessControl(self.store)
        self.tokens = TokenService(self.store, self.settings)
        self.mfa = SecondFactorService(self.store, self.settings)
        self.csrf = CsrfProtector(self.settings)
        self.accounts = AccountService(self.store, self.permissions, self.tokens, self.settings)
        self.auth = AuthService(self.accounts, self.tokens, self.mfa, self.csrf)
        self.guard = RequestGuard(
            self.store, self.tokens, self.csrf, self.permissions, self.projects
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            signup_enabled=self.settings.allow_signup,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Consume from the token bucket for ``key``, in Redis when available.

    Returns ``(allowed, remaining, reset_after_seconds)``. A non-positive
    ``limit`` disables limiting.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if len(runtime._local_rate_limits) >= _LOCAL_RATE_LIMIT_PRUNE_AT:
            _prune_local_rate_limits(runtime, now)
        tokens, last_ts, _full_at = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    return allowed, remaining, reset_seconds


def _prune_local_rate_limits(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that have refilled; a fresh bucket behaves identically."""
    stale = [key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now]
    for key in stale:
        del runtime._local_rate_limits[key]
    if stale:
        logger.debug("rate_limit_buckets_pruned", pruned=len(stale))
