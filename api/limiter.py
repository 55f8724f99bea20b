"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limit strings come from settings ("5 per 15 minutes" style) and are read
through callables so the values are resolved when a request is checked,
not when this module is imported.

Credential-handling routes use FailedAttemptLimit instead of
@limiter.limit(): only responses with status >= 400 count against the
client, so normal logins and refreshes are never throttled. It keeps its
counters in the same storage as the slowapi limiter, so limiter.enabled and
limiter.reset() cover it too.
"""

import logging
import time
from collections.abc import Callable

from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.routing import Match

from core.config import get_settings

logger = logging.getLogger("hattbooks.api")


def auth_limit() -> str:
    """Limit for credential-handling routes (register, login, refresh)."""
    return get_settings().auth_rate_limit


def default_limit() -> str:
    return get_settings().default_rate_limit


limiter = Limiter(key_func=get_remote_address, default_limits=[default_limit], storage_uri="memory://")


class FailedAttemptLimit:
    """Per-client limit that counts failed requests only.

    Usage:
        @router.post("/auth/login-local")
        @auth_attempts.guard
        def login_local(request: Request, ...): ...

    The app middleware calls is_blocked() before the request and
    record_failure() when the response status is >= 400.
    """

    def __init__(self, owner: Limiter, limit_value: Callable[[], str], scope: str) -> None:
        self._owner = owner
        self._limit_value = limit_value
        self._scope = scope
        self._endpoints: set[Callable] = set()

    def guard(self, func: Callable) -> Callable:
        self._endpoints.add(func)
        return func

    def applies(self, request: Request) -> bool:
        if not self._owner.enabled:
            return False
        for route in request.app.router.routes:
            match, child_scope = route.matches(request.scope)
            if match == Match.FULL:
                return child_scope.get("endpoint") in self._endpoints
        return False

    def _identifiers(self, request: Request) -> tuple[str, str]:
        return get_remote_address(request), self._scope

    def is_blocked(self, request: Request) -> bool:
        return not self._owner.limiter.test(parse(self._limit_value()), *self._identifiers(request))

    def retry_after(self, request: Request) -> int:
        stats = self._owner.limiter.get_window_stats(parse(self._limit_value()), *self._identifiers(request))
        return max(1, int(stats.reset_time - time.time()))

    def record_failure(self, request: Request) -> None:
        self._owner.limiter.hit(parse(self._limit_value()), *self._identifiers(request))
        logger.info("Failed auth attempt from %s on %s", self._identifiers(request)[0], request.url.path)


auth_attempts = FailedAttemptLimit(limiter, auth_limit, scope="auth-attempts")  # [H2]
