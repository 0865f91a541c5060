"""
auth/directory.py -- Account Directory: SQLAlchemy Core repository for accounts.

Pattern: Repository + Data Mapper. AccountDirectory is the repository;
_row_to_account is the mapper. The service never touches SQL directly.

One directory serves both account kinds. The identity column set
(provider/subject vs username/password_hash) is chosen by the tagged
variant in auth/models.py.

Security:
  All queries use bound parameters. No f-strings in SQL.

  find_or_create() relies on the UNIQUE(provider, subject) constraint, not on
  the SELECT in front of it: when two first logins race, the loser's INSERT
  fails with ConstraintViolationError and it re-reads the winner's row.

  authenticate() always runs bcrypt, against DUMMY_HASH for unknown
  usernames, so response time does not reveal which usernames exist [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from auth.db import Database, UnitOfWork, accounts
from auth.errors import (
    AccountDisabledError,
    ConstraintViolationError,
    DuplicateUsernameError,
    InvalidCredentialsError,
    StorageError,
)
from auth.models import Account, LocalCredential, SsoIdentity
from auth.tokens import DUMMY_HASH, MAX_PASSWORD_BYTES, hash_password, verify_password

logger = logging.getLogger("appstore.auth.directory")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccountDirectory:
    """Repository for Account entities.

    Usage:
        directory = AccountDirectory(db)
        account_id = directory.find_or_create("google", "1234", "Alice")
        with db.unit_of_work() as uow:
            account_id = directory.register(uow, "alice", "secret", "Alice")
    """

    def __init__(self, db: Database, username_max_length: int = 64, display_name_max_length: int = 100) -> None:
        self._db = db
        self.username_max_length = username_max_length
        self.display_name_max_length = display_name_max_length

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self._db.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_sso(self, provider: str, subject: str) -> Account | None:
        """Look up an account by its (provider, subject) pair."""
        with self._db.connect() as conn:
            row = conn.execute(
                accounts.select().where((accounts.c.provider == provider) & (accounts.c.subject == subject))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str, uow: UnitOfWork | None = None) -> Account | None:
        """Look up a local account by exact username (case-sensitive)."""
        query = accounts.select().where(accounts.c.username == username)
        if uow is not None:
            row = uow.conn.execute(query).fetchone()
        else:
            with self._db.connect() as conn:
                row = conn.execute(query).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # SSO accounts
    # ------------------------------------------------------------------

    def find_or_create(self, provider: str, subject: str, display_name: str) -> Account:
        """Return the account linked to (provider, subject), creating it on first login.

        Idempotent per pair. Runs in its own short transaction -- account
        creation does not need to share a unit of work with session issuance.
        """
        existing = self.get_by_sso(provider, subject)
        if existing is not None:
            return existing

        display_name = display_name[: self.display_name_max_length]
        created = False
        try:
            with self._db.unit_of_work() as uow:
                uow.conn.execute(
                    accounts.insert().values(
                        display_name=display_name,
                        kind="sso",
                        provider=provider,
                        subject=subject,
                        created_at=_now_iso(),
                        disabled=0,
                    )
                )
                created = True
        except ConstraintViolationError:
            logger.info("Concurrent first login for %s account; using the existing record", provider)

        account = self.get_by_sso(provider, subject)
        if account is None:
            raise StorageError(f"Account for provider {provider!r} missing after insert")
        if created:
            logger.info("Created account %d for %s subject", account.id, provider)
        return account

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    def register(self, uow: UnitOfWork, username: str, password: str, display_name: str) -> int:
        """Create a local account inside the caller's unit of work.

        Raises DuplicateUsernameError if the username is taken, ValueError if
        a field is out of bounds. A registration racing on the same username
        surfaces as ConstraintViolationError when the unit of work commits or
        on insert; the service maps both to DuplicateUsernameError.
        """
        self.check_username(username)
        self.check_password(password)
        self.check_display_name(display_name)

        if self.get_by_username(username, uow=uow) is not None:
            raise DuplicateUsernameError(f"Username {username!r} is already taken")

        result = uow.conn.execute(
            accounts.insert().values(
                display_name=display_name,
                kind="local",
                username=username,
                password_hash=hash_password(password),
                created_at=_now_iso(),
                disabled=0,
            )
        )
        return result.inserted_primary_key[0]

    def authenticate(self, username: str, password: str, uow: UnitOfWork | None = None) -> Account:
        """Verify a username/password pair with timing equalization [C1].

        Always runs bcrypt whether or not the user exists:
        - Unknown username: bcrypt runs against DUMMY_HASH (same cost).
        - Wrong password: bcrypt runs against the real hash.

        The disabled check runs after the password check so a disabled
        account is only reported to someone who knows its password.

        Raises InvalidCredentialsError or AccountDisabledError.
        """
        account = self.get_by_username(username, uow=uow)
        if account is None or not isinstance(account.identity, LocalCredential):
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentialsError("Unknown username", unknown_username=True)
        if not verify_password(password, account.identity.password_hash):
            raise InvalidCredentialsError(f"Wrong password for account {account.id}")
        if account.disabled:
            raise AccountDisabledError(f"Account {account.id} is disabled")
        return account

    def update_password(self, account_id: int, password: str) -> bool:
        """Replace a local account's password hash. Returns False if not a local account."""
        self.check_password(password)
        with self._db.unit_of_work() as uow:
            result = uow.conn.execute(
                accounts.update()
                .where((accounts.c.id == account_id) & (accounts.c.kind == "local"))
                .values(password_hash=hash_password(password))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Mutations shared by both kinds
    # ------------------------------------------------------------------

    def update_profile(self, account_id: int, display_name: str) -> bool:
        """Set the display name. Only length bounds are checked here.

        Returns True if a row was updated, False if account_id was not found.
        """
        self.check_display_name(display_name)
        with self._db.unit_of_work() as uow:
            result = uow.conn.execute(
                accounts.update().where(accounts.c.id == account_id).values(display_name=display_name)
            )
        return result.rowcount > 0

    def set_disabled(self, account_id: int, disabled: bool) -> bool:
        """Flip the disabled flag. Accounts are never deleted."""
        with self._db.unit_of_work() as uow:
            result = uow.conn.execute(
                accounts.update().where(accounts.c.id == account_id).values(disabled=1 if disabled else 0)
            )
        return result.rowcount > 0

    def update_last_login(self, uow: UnitOfWork, account_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the account."""
        uow.conn.execute(accounts.update().where(accounts.c.id == account_id).values(last_login=_now_iso()))

    def lock_row(self, uow: UnitOfWork, account_id: int) -> None:
        """Lock the account row until the unit of work ends.

        with_for_update() is a no-op on SQLite; there the in-process lock
        taken by UnitOfWork.lock_account() provides the critical section.
        """
        uow.lock_account(account_id)
        uow.conn.execute(select(accounts.c.id).where(accounts.c.id == account_id).with_for_update()).fetchone()

    # ------------------------------------------------------------------
    # Bounds
    # ------------------------------------------------------------------

    def check_username(self, username: str) -> None:
        if not username or len(username) > self.username_max_length:
            raise ValueError(f"Username must be between 1 and {self.username_max_length} characters")

    def check_password(self, password: str) -> None:
        if not password or len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be between 1 and {MAX_PASSWORD_BYTES} bytes")

    def check_display_name(self, display_name: str) -> None:
        if not display_name.strip() or len(display_name) > self.display_name_max_length:
            raise ValueError(f"Name must be between 1 and {self.display_name_max_length} characters")


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    if row.kind == "sso":
        identity = SsoIdentity(provider=row.provider, subject=row.subject)
    else:
        identity = LocalCredential(username=row.username, password_hash=row.password_hash or "")
    return Account(
        id=row.id,
        display_name=row.display_name,
        identity=identity,
        disabled=bool(row.disabled),
        created_at=row.created_at,
        last_login=row.last_login,
    )
