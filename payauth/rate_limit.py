"""
Fixed-window request throttling for the endpoints that take guesses.

Usage in a route:
    @router.post("/login", dependencies=[Depends(login_limit)])

Signup and login are keyed by client IP. Attempt creation is keyed by the
account, because every new attempt buys MAX_VERIFICATION_ATTEMPTS more PIN
guesses. Counters live in process memory, like authorization attempts, so a
multi-worker deployment limits per worker.
"""

import logging
from datetime import datetime, timedelta

from fastapi import Depends, Request

from payauth.config import settings
from payauth.dependencies import get_current_account
from payauth.exceptions import RateLimitExceededError
from payauth.models.account import Account
from payauth.time_utils import utcnow

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow the setting named `limit_setting` hits per key in each window."""

    def __init__(self, scope: str, limit_setting: str):
        self.scope = scope
        self.limit_setting = limit_setting
        self._windows: dict[str, tuple[datetime, int]] = {}

    @property
    def limit(self) -> int:
        return getattr(settings, self.limit_setting)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=settings.RATE_LIMIT_WINDOW_SECONDS)

    def hit(self, key: str, now: datetime | None = None) -> None:
        """
        Count one request for `key`.

        Raises:
            RateLimitExceededError: The key used up its window.
        """
        if not settings.RATE_LIMIT_ENABLED:
            return
        now = now or utcnow()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window:
            started, count = now, 0

        if count >= self.limit:
            retry_after = int((started + self.window - now).total_seconds()) + 1
            logger.warning("Rate limit hit: %s for %s", self.scope, key)
            raise RateLimitExceededError(retry_after)

        self._windows[key] = (started, count + 1)

    def clear(self) -> None:
        self._windows.clear()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


signup_limiter = RateLimiter("signup", "SIGNUP_RATE_LIMIT")
login_limiter = RateLimiter("login", "LOGIN_RATE_LIMIT")
authorization_limiter = RateLimiter("authorization", "AUTHORIZATION_RATE_LIMIT")

LIMITERS = (signup_limiter, login_limiter, authorization_limiter)


async def signup_limit(request: Request) -> None:
    signup_limiter.hit(_client_ip(request))


async def login_limit(request: Request) -> None:
    login_limiter.hit(_client_ip(request))


async def authorization_limit(account: Account = Depends(get_current_account)) -> None:
    authorization_limiter.hit(str(account.id))
