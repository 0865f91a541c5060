"""
auth/sessions.py -- Session Store: opaque session key -> account id.

Invariant: at most max_sessions (default 5) live sessions per account.
create_session() counts the account's sessions, evicts the single
least-recently-seen one when the cap is reached, and inserts the new one --
all inside the caller's unit of work, with the account locked (see auth/db.py
for how the lock is held until commit). Two concurrent logins for the same
account therefore cannot both observe count=4 and both insert.

Keys are generated by auth.tokens.generate_session_key() and stored as
HMAC-SHA256 hashes. A key that does not exist resolves to None, which is a
normal outcome. Storage failures raise StorageError.

Sessions carry no expiry: they live until evicted or logged out. Sliding
last-seen is opt-in (touch()).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import func, select

from auth.db import Database, UnitOfWork, sessions
from auth.directory import AccountDirectory
from auth.models import Session, SessionSideData
from auth.tokens import generate_session_key, hash_session_key, key_prefix

logger = logging.getLogger("appstore.auth.sessions")


class SessionStore:
    """Repository for Session entities.

    Usage:
        store = SessionStore(db, directory)
        with db.unit_of_work() as uow:
            key = store.create_session(uow, account_id)
        account_id = store.resolve_session(key)
    """

    def __init__(self, db: Database, directory: AccountDirectory, max_sessions: int = 5) -> None:
        self._db = db
        self._directory = directory
        self.max_sessions = max_sessions

    def create_session(self, uow: UnitOfWork, account_id: int, side_data: SessionSideData | None = None) -> str:
        """Insert a new session for account_id and return the raw session key.

        Evicts the oldest-by-last-seen session first if the account already
        holds max_sessions. Must be called inside a unit of work; nothing is
        visible to other requests until it commits.
        """
        side_data = side_data or SessionSideData()
        self._directory.lock_row(uow, account_id)

        count = uow.conn.execute(
            select(func.count()).select_from(sessions).where(sessions.c.account_id == account_id)
        ).scalar()
        count = count or 0

        while count >= self.max_sessions:
            oldest = uow.conn.execute(
                select(sessions.c.key_hash)
                .where(sessions.c.account_id == account_id)
                .order_by(sessions.c.last_seen_at.asc(), sessions.c.created_at.asc())
                .limit(1)
            ).scalar()
            uow.conn.execute(sessions.delete().where(sessions.c.key_hash == oldest))
            logger.info("Evicted least-recently-seen session of account %d", account_id)
            count -= 1

        raw_key = generate_session_key()
        now = time.time()
        uow.conn.execute(
            sessions.insert().values(
                key_hash=hash_session_key(raw_key),
                account_id=account_id,
                created_at=now,
                last_seen_at=now,
                access_token=side_data.access_token,
                access_token_expires_at=side_data.access_token_expires_at,
            )
        )
        logger.info("Issued session %s... for account %d", key_prefix(raw_key), account_id)
        return raw_key

    def resolve_session(self, session_key: str) -> int | None:
        """Return the account id owning session_key, or None if unknown.

        Does not update last_seen_at; call touch() for sliding behaviour.
        """
        if not session_key:
            return None
        with self._db.connect() as conn:
            account_id = conn.execute(
                select(sessions.c.account_id).where(sessions.c.key_hash == hash_session_key(session_key))
            ).scalar()
        return account_id

    def touch(self, session_key: str) -> None:
        """Stamp last_seen_at = now for session_key."""
        with self._db.unit_of_work() as uow:
            uow.conn.execute(
                sessions.update()
                .where(sessions.c.key_hash == hash_session_key(session_key))
                .values(last_seen_at=time.time())
            )

    def delete_session(self, session_key: str) -> bool:
        """Log out one session. Returns False if the key was unknown."""
        with self._db.unit_of_work() as uow:
            result = uow.conn.execute(sessions.delete().where(sessions.c.key_hash == hash_session_key(session_key)))
        return result.rowcount > 0

    def revoke_all(self, account_id: int) -> int:
        """Delete every session of an account. Returns how many were removed."""
        with self._db.unit_of_work() as uow:
            uow.lock_account(account_id)
            result = uow.conn.execute(sessions.delete().where(sessions.c.account_id == account_id))
        return result.rowcount

    def list_sessions(self, account_id: int) -> list[Session]:
        """Return the account's sessions, most recently seen first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where(sessions.c.account_id == account_id)
                .order_by(sessions.c.last_seen_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_sessions(self, account_id: int) -> int:
        with self._db.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(sessions).where(sessions.c.account_id == account_id)
            ).scalar()
        return count or 0


def _row_to_session(row) -> Session:
    return Session(
        key_hash=row.key_hash,
        account_id=row.account_id,
        created_at=row.created_at,
        last_seen_at=row.last_seen_at,
        access_token=row.access_token,
        access_token_expires_at=row.access_token_expires_at,
    )
