"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work.

Account identity is a tagged variant: an account is either linked to an SSO
provider (SsoIdentity) or holds a local credential (LocalCredential), never
both. Which kind a deployment creates is selected by AUTH_MODE.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class SsoIdentity:
    """Account linked to an external identity provider.

    (provider, subject) is unique across all accounts -- enforced by a
    UNIQUE constraint in the accounts table.
    """

    provider: str  # configured provider name, e.g. "google"
    subject: str  # provider's stable "sub" claim


@dataclass(frozen=True)
class LocalCredential:
    """Account with a username and a bcrypt password hash.

    username is unique and matched case-sensitively, exactly as stored.
    """

    username: str
    password_hash: str = field(repr=False)


Identity = Union[SsoIdentity, LocalCredential]


@dataclass
class Account:
    """Internal identity record. Never deleted -- disabled is a flag flip."""

    display_name: str
    identity: Identity
    id: int | None = None
    disabled: bool = False
    created_at: str | None = None
    last_login: str | None = None

    @property
    def username(self) -> str:
        """Local username, or "" for SSO-linked accounts."""
        if isinstance(self.identity, LocalCredential):
            return self.identity.username
        return ""


@dataclass
class Session:
    """A server-side login session.

    The raw session key is only ever held by the client. The store keeps
    key_hash = HMAC-SHA256(SECRET_KEY, key), the same scheme used for
    long-lived API keys, so a database leak does not leak live sessions.

    access_token / access_token_expires_at are set for SSO-backed sessions.
    """

    key_hash: str
    account_id: int
    created_at: float
    last_seen_at: float
    access_token: str | None = field(default=None, repr=False)
    access_token_expires_at: float | None = None


@dataclass(frozen=True)
class SessionSideData:
    """Extra data recorded with a new session (SSO upstream token)."""

    access_token: str | None = field(default=None, repr=False)
    access_token_expires_at: float | None = None


@dataclass
class LoginAttempt:
    """Append-only audit / rate-limit signal. Never mutated."""

    origin: str
    attempted_at: float
    success: bool
    account_id: int | None = None
    id: int | None = None


@dataclass(frozen=True)
class SigningKey:
    """One RSA public key from a provider's JWKS document."""

    kid: str
    kty: str
    n: str
    e: str
    alg: str | None = None
    use: str | None = None


@dataclass(frozen=True)
class TokenSet:
    """Result of an authorization-code exchange."""

    access_token: str = field(repr=False)
    id_token: str = field(repr=False)
    expires_in: int | None = None
    token_type: str | None = None
