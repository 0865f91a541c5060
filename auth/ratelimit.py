"""
auth/ratelimit.py -- Login attempt log and brute-force guard.

Every local login attempt -- successful, failed, or refused for a missing
CAPTCHA -- is appended to login_attempts after the decision for that attempt
has been made, so the next evaluation includes it. Rows are never updated or
deleted; the trailing window is applied at query time.

The guard is advisory. is_rate_limited() only says "this account or this
origin has been busy"; the service answers that by demanding a successful
CAPTCHA, never by refusing a login outright.

This is separate from the slowapi limiter in api/limiter.py, which is a
coarse per-IP request throttle in front of the whole login route.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import func, select

from auth.db import Database, UnitOfWork, login_attempts
from auth.models import LoginAttempt

logger = logging.getLogger("appstore.auth.ratelimit")

DEFAULT_WINDOW_SECONDS = 60 * 60  # 1 hour
DEFAULT_THRESHOLD = 10


class LoginAttemptLog:
    """Append-only repository for LoginAttempt records."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def record(self, uow: UnitOfWork, attempt: LoginAttempt) -> None:
        """Append one attempt inside the caller's unit of work."""
        uow.conn.execute(
            login_attempts.insert().values(
                account_id=attempt.account_id,
                origin=attempt.origin,
                attempted_at=attempt.attempted_at,
                success=1 if attempt.success else 0,
            )
        )

    def count_for_account(self, account_id: int, since: float) -> int:
        with self._db.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(login_attempts)
                .where((login_attempts.c.account_id == account_id) & (login_attempts.c.attempted_at >= since))
            ).scalar()
        return count or 0

    def count_for_origin(self, origin: str, since: float) -> int:
        with self._db.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(login_attempts)
                .where((login_attempts.c.origin == origin) & (login_attempts.c.attempted_at >= since))
            ).scalar()
        return count or 0


class BruteForceGuard:
    """Decides whether a login must be accompanied by a CAPTCHA.

    Rate limited when, within the trailing window, the account OR the
    origin address has more than `threshold` recorded attempts. All attempts
    count, not only failures: a successful login followed by a burst of
    guesses still trips the guard.
    """

    def __init__(
        self,
        log: LoginAttemptLog,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        self._log = log
        self.window_seconds = window_seconds
        self.threshold = threshold

    def is_rate_limited(self, account_id: int | None, origin: str) -> bool:
        """Return True if either counter exceeds the threshold.

        account_id is None when the username did not resolve; only the origin
        counter applies then.
        """
        since = time.time() - self.window_seconds
        origin_count = self._log.count_for_origin(origin, since)
        account_count = self._log.count_for_account(account_id, since) if account_id is not None else 0
        limited = account_count > self.threshold or origin_count > self.threshold
        if limited:
            logger.warning(
                "Login rate limit reached (account=%s attempts=%d, origin=%s attempts=%d)",
                account_id,
                account_count,
                origin,
                origin_count,
            )
        return limited

    def record(self, uow: UnitOfWork, account_id: int | None, origin: str, success: bool) -> None:
        """Append the outcome of an attempt that has already been decided."""
        self._log.record(
            uow,
            LoginAttempt(account_id=account_id, origin=origin, attempted_at=time.time(), success=success),
        )
