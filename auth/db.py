"""
auth/db.py -- SQLAlchemy Core schema and unit of work for auth entities.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Pattern: Unit of Work. Database.unit_of_work() opens one transaction
(engine.begin()) and hands a UnitOfWork to the repositories. Every write that
must be atomic -- session count / evict / insert, login attempt + session,
registration + first session -- runs against that one connection. Any
exception inside the block rolls the whole transaction back.

Per-account critical section:
  SQLite's driver does not emit BEGIN before a SELECT, so two concurrent
  logins could both count 4 sessions and both insert. UnitOfWork.lock_account()
  takes an in-process lock for the account that is held until the transaction
  has committed or rolled back. On PostgreSQL / MySQL the repositories also
  lock the account row with SELECT ... FOR UPDATE, which serializes logins
  across processes.

Schema notes:
  UNIQUE(provider, subject) is a real SQL constraint. Local accounts store
  NULL in both columns; SQL treats NULLs as distinct, which is what we want.
  UNIQUE(username) likewise allows many NULL usernames for SSO accounts.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConstraintViolationError, StorageError

logger = logging.getLogger("appstore.auth.db")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("kind", String(10), nullable=False),  # "sso" or "local"
    Column("provider", String(64)),  # NULL for local accounts
    Column("subject", String(255)),  # NULL for local accounts
    Column("username", String(255), unique=True),  # NULL for SSO accounts
    Column("password_hash", Text),  # NULL for SSO accounts
    Column("disabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    UniqueConstraint("provider", "subject", name="uq_accounts_provider_subject"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("key_hash", String(64), primary_key=True),  # HMAC-SHA256 hex of the raw key
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("last_seen_at", Float, nullable=False),
    Column("access_token", Text),  # SSO sessions only
    Column("access_token_expires_at", Float),
    Index("ix_sessions_account_last_seen", "account_id", "last_seen_at"),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer),  # NULL when the username did not resolve
    Column("origin", String(64), nullable=False),
    Column("attempted_at", Float, nullable=False),
    Column("success", Integer, nullable=False),
    Index("ix_login_attempts_account", "account_id", "attempted_at"),
    Index("ix_login_attempts_origin", "origin", "attempted_at"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys for every new SQLite connection.

    SQLite PRAGMAs are per-connection and not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Per-account locks
# ---------------------------------------------------------------------------


class AccountLocks:
    """Fixed pool of striped locks keyed by account id.

    A unit of work locks at most one account, so lock ordering between
    stripes never matters.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_account(self, account_id: int) -> threading.Lock:
        return self._locks[hash(account_id) % len(self._locks)]


class UnitOfWork:
    """One open transaction plus the account locks it holds.

    Repositories receive the UnitOfWork and execute on uow.conn. Locks taken
    through lock_account() are released by Database.unit_of_work() only after
    the transaction has ended.
    """

    def __init__(self, conn: Connection, locks: AccountLocks, lock_timeout: float) -> None:
        self.conn = conn
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._held: list[threading.Lock] = []

    def lock_account(self, account_id: int) -> None:
        lock = self._locks.for_account(account_id)
        if lock in self._held:
            return
        if not lock.acquire(timeout=self._lock_timeout):
            raise StorageError(f"Timed out waiting for the session lock of account {account_id}")
        self._held.append(lock)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Owns the engine, creates the schema, and opens units of work.

    Usage:
        db = Database("sqlite:///accounts.db")
        with db.unit_of_work() as uow:
            sessions.create_session(uow, account_id)
        with db.connect() as conn:
            ...read-only queries...
        db.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout  # busy timeout, seconds
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self.timeout = timeout
        self._locks = AccountLocks()
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError("Could not initialise the accounts database") from exc

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """Yield a UnitOfWork inside one transaction.

        Commit on normal exit, rollback on any exception. SQLAlchemy errors
        are re-raised as StorageError so callers only deal with auth errors.
        """
        uow: UnitOfWork | None = None
        try:
            with self.engine.begin() as conn:
                uow = UnitOfWork(conn, self._locks, self.timeout)
                yield uow
        except IntegrityError as exc:
            raise ConstraintViolationError("Database constraint violated") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Database transaction failed") from exc
        finally:
            if uow is not None:
                uow.release()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Yield a plain connection for read-only queries."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise StorageError("Database query failed") from exc

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health check."""
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()
