"""
auth/service.py -- Account service: the public contract of the auth core.

Catalog routes and the admin CLI talk to accounts only through AccountService.
Each login is a short state machine:

    UNAUTHENTICATED
      SSO:   -> EXCHANGING_TOKEN -> VERIFYING_TOKEN -> VERIFIED -> SESSION_ISSUED
      local: -> CHECKING_RATE_LIMIT -> [CAPTCHA_REQUIRED] -> VERIFIED -> SESSION_ISSUED
    any state -> REJECTED (with a RejectReason)

A disabled account is REJECTED from VERIFIED on both paths; no session is
ever created for it.

Error contract:
  Login, registration, and profile operations never raise. Every failure is
  turned into a result object carrying a user-safe message and a reason code.
  The underlying exception is logged here and nowhere else:
    VerificationError -> "Could not verify identity"   (logged INFO)
    UpstreamError     -> "Internal server error"       (logged with traceback)
    account errors    -> their fixed messages          (logged INFO)
  resolve_session() is the one exception: it is a plain lookup used on every
  catalog request and lets StorageError propagate.

Ordering:
  All network calls (code exchange, JWKS refresh, CAPTCHA) and bcrypt run
  before a unit of work opens. The unit of work then holds the account lock
  only for the session count/evict/insert and the audit row.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum

from auth.captcha import CaptchaVerifier
from auth.db import Database
from auth.directory import AccountDirectory
from auth.errors import (
    AccountDisabledError,
    ConstraintViolationError,
    DuplicateUsernameError,
    InvalidCredentialsError,
    UnknownProviderError,
    UpstreamError,
    VerificationError,
)
from auth.exchange import IdentityExchangeClient
from auth.models import Account, LocalCredential, SessionSideData
from auth.oidc import ProviderRegistry, TokenVerifier
from auth.ratelimit import BruteForceGuard, LoginAttemptLog
from auth.sessions import SessionStore
from auth.tokens import key_prefix
from core.config import Settings
from core.http import build_session

logger = logging.getLogger("appstore.auth.service")

# ---------------------------------------------------------------------------
# User-facing messages -- the only text that reaches a client
# ---------------------------------------------------------------------------

MSG_INTERNAL = "Internal server error"
MSG_INVALID_PROVIDER = "Invalid SSO provider"
MSG_UNVERIFIED = "Could not verify identity"
MSG_INVALID_USERNAME = "Invalid username"
MSG_INVALID_PASSWORD = "Invalid password"
MSG_DISABLED = "Account is disabled"
MSG_USERNAME_TAKEN = "This username is already taken"
MSG_INVALID_SESSION = "Invalid session key"
MSG_CAPTCHA_REQUIRED = "Too many login attempts. Please complete the CAPTCHA."
MSG_CAPTCHA_FAILED = "CAPTCHA verification failed"
MSG_SSO_DISABLED = "SSO login is not enabled on this server"
MSG_LOCAL_DISABLED = "Password login is not enabled on this server"
MSG_NO_PASSWORD = "This account does not use a password"


class LoginState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    EXCHANGING_TOKEN = "exchanging_token"
    VERIFYING_TOKEN = "verifying_token"
    CHECKING_RATE_LIMIT = "checking_rate_limit"
    CAPTCHA_REQUIRED = "captcha_required"
    VERIFIED = "verified"
    SESSION_ISSUED = "session_issued"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    INVALID_INPUT = "invalid_input"
    MODE_DISABLED = "mode_disabled"
    UNKNOWN_PROVIDER = "unknown_provider"
    VERIFICATION_FAILED = "verification_failed"
    INVALID_USERNAME = "invalid_username"
    INVALID_PASSWORD = "invalid_password"
    ACCOUNT_DISABLED = "account_disabled"
    USERNAME_TAKEN = "username_taken"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_FAILED = "captcha_failed"
    INVALID_SESSION = "invalid_session"
    INTERNAL_ERROR = "internal_error"


@dataclass
class LoginResult:
    success: bool
    state: LoginState
    session_key: str = ""
    user_message: str = ""
    rate_limited: bool = False
    reason: RejectReason | None = None
    account_id: int | None = None

    @classmethod
    def issued(cls, session_key: str, account_id: int) -> "LoginResult":
        return cls(success=True, state=LoginState.SESSION_ISSUED, session_key=session_key, account_id=account_id)

    @classmethod
    def rejected(cls, reason: RejectReason, message: str, rate_limited: bool = False) -> "LoginResult":
        state = LoginState.CAPTCHA_REQUIRED if reason is RejectReason.CAPTCHA_REQUIRED else LoginState.REJECTED
        return cls(success=False, state=state, user_message=message, rate_limited=rate_limited, reason=reason)


@dataclass
class SessionInfo:
    """What /user/info reports for a session key.

    username is the local username ("" for SSO accounts); name is the
    display name.
    """

    logged_in: bool
    username: str = ""
    name: str = ""
    error_message: str = ""
    account_id: int | None = None
    reason: RejectReason | None = None


@dataclass
class UpdateResult:
    success: bool
    error_message: str = ""
    reason: RejectReason | None = None

    @classmethod
    def ok(cls) -> "UpdateResult":
        return cls(success=True)

    @classmethod
    def failed(cls, reason: RejectReason, message: str) -> "UpdateResult":
        return cls(success=False, error_message=message, reason=reason)


# update_profile()'s documented return type; password change and logout share it.
ProfileUpdateResult = UpdateResult


class AccountService:
    """Facade over the directory, session store, guard, and SSO collaborators.

    Usage:
        service = build_account_service(get_settings())
        result = service.login("alice", "Str0ngPass!", "", origin="203.0.113.7")
        account_id = service.resolve_session(result.session_key)
    """

    def __init__(
        self,
        db: Database,
        directory: AccountDirectory,
        sessions: SessionStore,
        guard: BruteForceGuard,
        captcha: CaptchaVerifier,
        providers: ProviderRegistry,
        exchange_client: IdentityExchangeClient,
        verifier: TokenVerifier,
        auth_mode: str = "sso",
        touch_on_resolve: bool = False,
    ) -> None:
        self.db = db
        self.directory = directory
        self.sessions = sessions
        self.guard = guard
        self.captcha = captcha
        self.providers = providers
        self.exchange_client = exchange_client
        self.verifier = verifier
        self.auth_mode = auth_mode
        self.touch_on_resolve = touch_on_resolve

    # ------------------------------------------------------------------
    # SSO login
    # ------------------------------------------------------------------

    def login_or_register(self, provider_name: str, code: str, origin: str) -> LoginResult:
        """Log in through an SSO provider, creating the account on first use."""
        if self.auth_mode != "sso":
            return LoginResult.rejected(RejectReason.MODE_DISABLED, MSG_SSO_DISABLED)
        if not provider_name or not code:
            return LoginResult.rejected(RejectReason.INVALID_INPUT, "code and authProvider are required")

        try:
            provider = self.providers.get(provider_name)
        except UnknownProviderError as exc:
            logger.info("SSO login rejected: %s", exc)
            return LoginResult.rejected(RejectReason.UNKNOWN_PROVIDER, MSG_INVALID_PROVIDER)

        state = LoginState.EXCHANGING_TOKEN
        try:
            tokens = self.exchange_client.exchange(provider, code)
            state = LoginState.VERIFYING_TOKEN
            claims = self.verifier.verify(provider, tokens.id_token, access_token=tokens.access_token or None)
            state = LoginState.VERIFIED
            account = self.directory.find_or_create(provider.name, claims.sub, claims.name or "")
            if account.disabled:
                raise AccountDisabledError(f"Account {account.id} is disabled")

            if tokens.expires_in is not None:
                expires_at = time.time() + tokens.expires_in
            else:
                expires_at = float(claims.exp)
            side_data = SessionSideData(access_token=tokens.access_token or None, access_token_expires_at=expires_at)

            with self.db.unit_of_work() as uow:
                session_key = self.sessions.create_session(uow, account.id, side_data)
                self.directory.update_last_login(uow, account.id)
                self.guard.record(uow, account.id, origin, success=True)
        except VerificationError as exc:
            logger.info("SSO login via %s rejected in %s: %s", provider.name, state.value, exc)
            return LoginResult.rejected(RejectReason.VERIFICATION_FAILED, MSG_UNVERIFIED)
        except AccountDisabledError as exc:
            logger.info("SSO login rejected: %s", exc)
            return LoginResult.rejected(RejectReason.ACCOUNT_DISABLED, MSG_DISABLED)
        except UpstreamError:
            logger.exception("SSO login via %s failed in %s", provider.name, state.value)
            return LoginResult.rejected(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)

        logger.info("SSO login for account %d via %s (session %s...)", account.id, provider.name, key_prefix(session_key))
        return LoginResult.issued(session_key, account.id)

    # ------------------------------------------------------------------
    # Local login / registration
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, captcha_response: str, origin: str) -> LoginResult:
        """Log in with a username and password, escalating to CAPTCHA when busy."""
        if self.auth_mode != "local":
            return LoginResult.rejected(RejectReason.MODE_DISABLED, MSG_LOCAL_DISABLED)
        if not username or not password:
            return LoginResult.rejected(RejectReason.INVALID_INPUT, "username and password are required")

        try:
            known = self.directory.get_by_username(username)
            account_id = known.id if known is not None else None

            # CHECKING_RATE_LIMIT
            rate_limited = self.guard.is_rate_limited(account_id, origin)
            if rate_limited and not self.captcha.verify(captcha_response, origin):
                self._record_attempt(account_id, origin, success=False)
                if captcha_response:
                    return LoginResult.rejected(RejectReason.CAPTCHA_FAILED, MSG_CAPTCHA_FAILED, rate_limited=True)
                return LoginResult.rejected(RejectReason.CAPTCHA_REQUIRED, MSG_CAPTCHA_REQUIRED, rate_limited=True)

            try:
                account = self.directory.authenticate(username, password)
            except InvalidCredentialsError as exc:
                logger.info("Local login rejected from %s: %s", origin, exc)
                self._record_attempt(account_id, origin, success=False)
                if exc.unknown_username:
                    return LoginResult.rejected(RejectReason.INVALID_USERNAME, MSG_INVALID_USERNAME, rate_limited)
                return LoginResult.rejected(RejectReason.INVALID_PASSWORD, MSG_INVALID_PASSWORD, rate_limited)
            except AccountDisabledError as exc:
                logger.info("Local login rejected: %s", exc)
                self._record_attempt(account_id, origin, success=False)
                return LoginResult.rejected(RejectReason.ACCOUNT_DISABLED, MSG_DISABLED, rate_limited)

            # VERIFIED
            with self.db.unit_of_work() as uow:
                self.guard.record(uow, account.id, origin, success=True)
                session_key = self.sessions.create_session(uow, account.id)
                self.directory.update_last_login(uow, account.id)
        except UpstreamError:
            logger.exception("Local login for %r failed", username)
            return LoginResult.rejected(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)

        logger.info("Local login for account %d (session %s...)", account.id, key_prefix(session_key))
        return LoginResult.issued(session_key, account.id)

    def register(self, username: str, password: str, display_name: str, origin: str) -> LoginResult:
        """Create a local account and log it in.

        Account row, first session, and a successful login record commit
        together or not at all.
        """
        if self.auth_mode != "local":
            return LoginResult.rejected(RejectReason.MODE_DISABLED, MSG_LOCAL_DISABLED)
        try:
            with self.db.unit_of_work() as uow:
                account_id = self.directory.register(uow, username, password, display_name)
                session_key = self.sessions.create_session(uow, account_id)
                self.directory.update_last_login(uow, account_id)
                self.guard.record(uow, account_id, origin, success=True)
        except ValueError as exc:
            return LoginResult.rejected(RejectReason.INVALID_INPUT, str(exc))
        except (DuplicateUsernameError, ConstraintViolationError) as exc:
            logger.info("Registration rejected: %s", exc)
            return LoginResult.rejected(RejectReason.USERNAME_TAKEN, MSG_USERNAME_TAKEN)
        except UpstreamError:
            logger.exception("Registration of %r failed", username)
            return LoginResult.rejected(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)

        logger.info("Registered account %d (session %s...)", account_id, key_prefix(session_key))
        return LoginResult.issued(session_key, account_id)

    def _record_attempt(self, account_id: int | None, origin: str, success: bool) -> None:
        with self.db.unit_of_work() as uow:
            self.guard.record(uow, account_id, origin, success=success)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def resolve_session(self, session_key: str) -> int | None:
        """Return the account id for a session key, or None. Raises StorageError."""
        account_id = self.sessions.resolve_session(session_key)
        if account_id is not None and self.touch_on_resolve:
            self.sessions.touch(session_key)
        return account_id

    def current_account(self, session_key: str) -> Account | None:
        """Resolve a session key to an enabled Account. Raises StorageError."""
        account_id = self.resolve_session(session_key)
        if account_id is None:
            return None
        account = self.directory.get_by_id(account_id)
        if account is None or account.disabled:
            return None
        return account

    def session_info(self, session_key: str) -> SessionInfo:
        try:
            account_id = self.resolve_session(session_key)
            account = self.directory.get_by_id(account_id) if account_id is not None else None
        except UpstreamError:
            logger.exception("Session lookup failed")
            return SessionInfo(logged_in=False, error_message=MSG_INTERNAL, reason=RejectReason.INTERNAL_ERROR)
        if account is None:
            return SessionInfo(logged_in=False, error_message=MSG_INVALID_SESSION, reason=RejectReason.INVALID_SESSION)
        if account.disabled:
            return SessionInfo(logged_in=False, error_message=MSG_DISABLED, reason=RejectReason.ACCOUNT_DISABLED)
        return SessionInfo(logged_in=True, username=account.username, name=account.display_name, account_id=account.id)

    def logout(self, session_key: str) -> UpdateResult:
        try:
            removed = self.sessions.delete_session(session_key) if session_key else False
        except UpstreamError:
            logger.exception("Logout failed")
            return UpdateResult.failed(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)
        if not removed:
            return UpdateResult.failed(RejectReason.INVALID_SESSION, MSG_INVALID_SESSION)
        logger.info("Session %s... logged out", key_prefix(session_key))
        return UpdateResult.ok()

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, session_key: str, new_name: str) -> ProfileUpdateResult:
        """Change the display name of the account owning session_key."""
        try:
            self.directory.check_display_name(new_name)
        except ValueError as exc:
            return UpdateResult.failed(RejectReason.INVALID_INPUT, str(exc))
        try:
            account = self.current_account(session_key)
            if account is None:
                return UpdateResult.failed(RejectReason.INVALID_SESSION, MSG_INVALID_SESSION)
            self.directory.update_profile(account.id, new_name)
        except UpstreamError:
            logger.exception("Display name update failed")
            return UpdateResult.failed(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)
        return UpdateResult.ok()

    def update_password(self, session_key: str, password: str) -> UpdateResult:
        """Replace the password of the local account owning session_key."""
        if self.auth_mode != "local":
            return UpdateResult.failed(RejectReason.MODE_DISABLED, MSG_LOCAL_DISABLED)
        try:
            self.directory.check_password(password)
        except ValueError as exc:
            return UpdateResult.failed(RejectReason.INVALID_INPUT, str(exc))
        try:
            account = self.current_account(session_key)
            if account is None:
                return UpdateResult.failed(RejectReason.INVALID_SESSION, MSG_INVALID_SESSION)
            if not isinstance(account.identity, LocalCredential):
                return UpdateResult.failed(RejectReason.INVALID_INPUT, MSG_NO_PASSWORD)
            self.directory.update_password(account.id, password)
        except UpstreamError:
            logger.exception("Password update failed")
            return UpdateResult.failed(RejectReason.INTERNAL_ERROR, MSG_INTERNAL)
        logger.info("Password changed for account %d", account.id)
        return UpdateResult.ok()

    # ------------------------------------------------------------------
    # Administration (used by the CLI)
    # ------------------------------------------------------------------

    def disable_account(self, account_id: int) -> bool:
        """Disable an account and end all its sessions. Returns False if unknown."""
        if not self.directory.set_disabled(account_id, True):
            return False
        revoked = self.sessions.revoke_all(account_id)
        logger.warning("Account %d disabled (%d sessions revoked)", account_id, revoked)
        return True

    def enable_account(self, account_id: int) -> bool:
        if not self.directory.set_disabled(account_id, False):
            return False
        logger.warning("Account %d re-enabled", account_id)
        return True

    def revoke_sessions(self, account_id: int) -> int:
        revoked = self.sessions.revoke_all(account_id)
        logger.warning("Revoked %d sessions of account %d", revoked, account_id)
        return revoked

    def close(self) -> None:
        self.db.close()


def build_account_service(settings: Settings) -> AccountService:
    """Wire an AccountService from Settings.

    SSO discovery documents are fetched here, once, when AUTH_MODE=sso.
    """
    db = Database(settings.database_url, timeout=settings.storage_timeout_seconds)
    directory = AccountDirectory(
        db,
        username_max_length=settings.username_max_length,
        display_name_max_length=settings.display_name_max_length,
    )
    http = build_session()
    if settings.auth_mode == "sso":
        providers = ProviderRegistry.from_config(settings.sso_providers, http, settings.upstream_timeout_seconds)
    else:
        providers = ProviderRegistry()
    return AccountService(
        db=db,
        directory=directory,
        sessions=SessionStore(db, directory, max_sessions=settings.max_sessions_per_account),
        guard=BruteForceGuard(
            LoginAttemptLog(db),
            window_seconds=settings.rate_limit_window_seconds,
            threshold=settings.rate_limit_threshold,
        ),
        captcha=CaptchaVerifier(
            settings.captcha_secret,
            settings.captcha_verify_url,
            timeout=settings.upstream_timeout_seconds,
            session=http,
        ),
        providers=providers,
        exchange_client=IdentityExchangeClient(http, timeout=settings.upstream_timeout_seconds),
        verifier=TokenVerifier(),
        auth_mode=settings.auth_mode,
        touch_on_resolve=settings.session_touch_on_resolve,
    )
