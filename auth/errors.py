"""
auth/errors.py -- Exception hierarchy for the authentication core.

Three families, matching how the service reports them to callers:

  VerificationError -- the presented credential is not trustworthy (bad
      signature, unknown key, forbidden algorithm, expired or malformed
      token). Users see a generic "Could not verify identity" message.

  UpstreamError -- an identity provider, the CAPTCHA verifier, or storage
      failed. Users see "Internal server error"; the detail is logged only.

  Account errors -- wrong credentials, disabled account, duplicate username,
      unknown SSO provider. Users see a fixed, safe message.

The service layer (auth/service.py) is the only place these are turned into
user-facing text. Exception messages are for logs and never reach a client.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by auth/."""


# ---------------------------------------------------------------------------
# Identity token verification
# ---------------------------------------------------------------------------


class VerificationError(AuthError):
    """The identity token could not be trusted."""


class MalformedTokenError(VerificationError):
    """Token header or structure could not be parsed."""


class UnknownKeyError(VerificationError):
    """No signing key with the token's kid, even after one JWKS refresh."""


class AlgorithmNotAllowedError(VerificationError):
    """Token declares a symmetric, "none", or otherwise unexpected algorithm."""


class InvalidSignatureError(VerificationError):
    """Signature check or standard claim check (exp, aud, iss) failed."""


class MalformedClaimsError(VerificationError):
    """Signature was valid but required claims are missing or mistyped."""


# ---------------------------------------------------------------------------
# Upstream / infrastructure
# ---------------------------------------------------------------------------


class UpstreamError(AuthError):
    """A collaborator outside this process failed."""


class JwksFetchError(UpstreamError):
    """The provider's JWKS endpoint could not be fetched or decoded."""


class DiscoveryError(UpstreamError):
    """The provider's discovery document could not be fetched or decoded."""


class ExchangeError(UpstreamError):
    """The token endpoint rejected the authorization code or failed.

    error / description carry the provider's error fields for operator logs.
    """

    def __init__(self, message: str, error: str = "", description: str = "") -> None:
        super().__init__(message)
        self.error = error
        self.description = description

    def __str__(self) -> str:
        base = super().__str__()
        if self.error:
            return f"{base}: {self.error} ({self.description})"
        return base


class CaptchaUnavailableError(UpstreamError):
    """The CAPTCHA verification service could not be reached."""


class StorageError(UpstreamError):
    """The database failed (connectivity, lock timeout, constraint)."""


class ConstraintViolationError(StorageError):
    """A UNIQUE or foreign-key constraint rejected a write.

    Repositories catch this to resolve check-then-insert races.
    """


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class UnknownProviderError(AuthError):
    """The requested SSO provider is not configured."""


class DuplicateUsernameError(AuthError):
    """A local account with this username already exists."""


class InvalidCredentialsError(AuthError):
    """Username unknown or password wrong.

    unknown_username distinguishes the two for the user-facing message
    ("Invalid username" vs "Invalid password").
    """

    def __init__(self, message: str, unknown_username: bool = False) -> None:
        super().__init__(message)
        self.unknown_username = unknown_username


class AccountDisabledError(AuthError):
    """The account exists but has been disabled."""
