"""
auth/oidc.py -- OpenID Connect identity-token verification.

Pieces, leaf first:
  KeyCache        -- one provider's signing keys (JWKS), held as an immutable
                     snapshot and replaced wholesale on refresh.
  SsoProvider     -- one configured provider: client credentials, endpoints,
                     and its KeyCache.
  ProviderRegistry-- the configured providers by name. Owns the key caches;
                     there is no module-level key state.
  TokenVerifier   -- checks an id_token's algorithm and signature against the
                     provider's keys and returns typed IdentityClaims.

Security notes:
  [O1] Only RS256/RS384/RS512 are accepted. "none" and every HMAC algorithm
       are rejected before any key lookup -- a token that names HS256 would
       otherwise let an attacker "sign" with the provider's public key.
  [O2] Unknown kid -> exactly one JWKS refresh, then one more lookup. A second
       miss is UnknownKeyError. This bounds a login to two upstream round
       trips for verification and stops a forged kid from hammering the
       provider.
  [O3] Refresh swaps self._snapshot in a single assignment. Concurrent
       readers see the old or the new key set, never a partial one. Two
       concurrent refreshes race last-writer-wins; both results are complete.
  [O4] Claims are only returned after signature, expiry, audience (client_id)
       and, when configured, issuer checks pass, and after they validate as
       IdentityClaims. Missing or mistyped "sub"/"exp" rejects the token.

Provider discovery is fetched once at startup for providers configured
without explicit endpoints. A provider whose discovery failed stays
registered with empty endpoints; logins through it fail as upstream errors.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, Union

import requests
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auth.errors import (
    AlgorithmNotAllowedError,
    DiscoveryError,
    InvalidSignatureError,
    JwksFetchError,
    MalformedClaimsError,
    MalformedTokenError,
    UnknownKeyError,
    UnknownProviderError,
)
from auth.models import SigningKey
from core.config import SsoProviderConfig

logger = logging.getLogger("appstore.auth.oidc")

ALLOWED_ALGORITHMS = frozenset({"RS256", "RS384", "RS512"})


# ---------------------------------------------------------------------------
# Typed claims
# ---------------------------------------------------------------------------


class IdentityClaims(BaseModel):
    """Decoded id_token payload.

    sub and exp are required. Standard optional claims are typed; anything
    else the provider sends is kept as an extra field.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    sub: str = Field(min_length=1)
    exp: int
    iss: Optional[str] = None
    aud: Union[str, list[str], None] = None
    iat: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    email_verified: Optional[bool] = None


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def _b64url_uint(value: str) -> int:
    """Decode a base64url big-endian unsigned integer (JWK n / e).

    JWKS values are unpadded; pad to a multiple of 4 before decoding.
    """
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded.encode("ascii")), "big")


def public_key_pem(key: SigningKey) -> str:
    """Rebuild the RSA public key from a JWK's modulus/exponent as PEM."""
    try:
        numbers = RSAPublicNumbers(e=_b64url_uint(key.e), n=_b64url_uint(key.n))
        public_key = numbers.public_key()
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise InvalidSignatureError(f"Signing key {key.kid!r} has invalid RSA material") from exc
    return public_key.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo).decode("ascii")


def parse_jwks(document: dict) -> dict[str, SigningKey]:
    """Turn a JWKS document into {kid: SigningKey}, keeping RSA signing keys only.

    Raises JwksFetchError when "keys" is not a list.
    """
    entries = document.get("keys", [])
    if not isinstance(entries, list):
        raise JwksFetchError(f"JWKS \"keys\" is {type(entries).__name__}, not a list")
    keys: dict[str, SigningKey] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        kid, n, e = entry.get("kid"), entry.get("n"), entry.get("e")
        if entry.get("kty") != "RSA" or not all(isinstance(v, str) and v for v in (kid, n, e)):
            logger.debug("Skipping non-RSA or incomplete JWK (kid=%r)", kid)
            continue
        if entry.get("use") not in (None, "sig"):
            continue
        keys[kid] = SigningKey(kid=kid, kty="RSA", n=n, e=e, alg=entry.get("alg"), use=entry.get("use"))
    return keys


class KeyCache:
    """One provider's signing keys, refreshed on miss.

    get() never blocks and never fetches. refresh() performs one GET and
    replaces the whole snapshot.
    """

    def __init__(self, jwks_uri: str, session: requests.Session, timeout: float) -> None:
        self.jwks_uri = jwks_uri
        self._session = session
        self._timeout = timeout
        self._snapshot: Mapping[str, SigningKey] = MappingProxyType({})
        self.refresh_count = 0

    def get(self, kid: str) -> SigningKey | None:
        return self._snapshot.get(kid)

    def kids(self) -> list[str]:
        return sorted(self._snapshot)

    def refresh(self) -> None:
        """Fetch the JWKS document and swap in the new snapshot [O3]."""
        self.refresh_count += 1
        if not self.jwks_uri:
            raise JwksFetchError("Provider has no jwks_uri (discovery failed or not configured)")
        try:
            resp = self._session.get(self.jwks_uri, timeout=self._timeout)
            resp.raise_for_status()
            document = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise JwksFetchError(f"Could not fetch JWKS from {self.jwks_uri}: {exc}") from exc
        if not isinstance(document, dict):
            raise JwksFetchError(f"JWKS document from {self.jwks_uri} is not an object")

        keys = parse_jwks(document)
        self._snapshot = MappingProxyType(keys)
        logger.info("JWKS refreshed from %s (kids=%s)", self.jwks_uri, self.kids())


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass
class SsoProvider:
    name: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    token_endpoint: str
    keys: KeyCache
    issuer: str = ""


class ProviderRegistry:
    """Configured SSO providers by name.

    Usage:
        registry = ProviderRegistry.from_config(settings.sso_providers, session, timeout=10)
        provider = registry.get("google")   # raises UnknownProviderError
    """

    def __init__(self, providers: list[SsoProvider] | None = None) -> None:
        self._providers: dict[str, SsoProvider] = {p.name: p for p in providers or []}

    @classmethod
    def from_config(
        cls, configs: list[SsoProviderConfig], session: requests.Session, timeout: float
    ) -> "ProviderRegistry":
        providers: list[SsoProvider] = []
        for cfg in configs:
            token_endpoint, jwks_uri, issuer = cfg.token_endpoint, cfg.jwks_uri, cfg.issuer
            if cfg.discover_uri and not (token_endpoint and jwks_uri):
                try:
                    discovery = fetch_discovery(cfg.discover_uri, session, timeout)
                except DiscoveryError:
                    logger.exception(
                        "Could not load discovery document for SSO provider %s. Check SSO_PROVIDERS.", cfg.name
                    )
                    discovery = {}
                token_endpoint = token_endpoint or discovery.get("token_endpoint", "")
                jwks_uri = jwks_uri or discovery.get("jwks_uri", "")
                issuer = issuer or discovery.get("issuer", "")
            providers.append(
                SsoProvider(
                    name=cfg.name,
                    client_id=cfg.client_id,
                    client_secret=cfg.client_secret,
                    redirect_uri=cfg.redirect_uri,
                    token_endpoint=token_endpoint,
                    issuer=issuer,
                    keys=KeyCache(jwks_uri, session, timeout),
                )
            )
            logger.info("SSO provider registered: %s", cfg.name)
        return cls(providers)

    def get(self, name: str) -> SsoProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(f"SSO provider {name!r} is not configured")
        return provider

    def names(self) -> list[str]:
        return list(self._providers)


def fetch_discovery(discover_uri: str, session: requests.Session, timeout: float) -> dict:
    """GET an OpenID Connect discovery document. Only endpoints are used."""
    try:
        resp = session.get(discover_uri, timeout=timeout)
        resp.raise_for_status()
        document = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise DiscoveryError(f"Discovery GET {discover_uri} failed: {exc}") from exc
    if not isinstance(document, dict):
        raise DiscoveryError(f"Discovery document at {discover_uri} is not an object")
    return document


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class TokenVerifier:
    """Verify provider-signed id_tokens.

    Side effects are limited to the provider's KeyCache (refresh on miss).
    """

    def verify(self, provider: SsoProvider, token: str, access_token: str | None = None) -> IdentityClaims:
        """Return the token's claims or raise a VerificationError subclass.

        access_token, when given, is checked against the at_hash claim.
        JwksFetchError (an upstream error) propagates if the refresh fails.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedTokenError(f"Unparseable token header: {exc}") from exc

        alg = header.get("alg")
        if not isinstance(alg, str) or alg not in ALLOWED_ALGORITHMS:  # [O1]
            raise AlgorithmNotAllowedError(f"Algorithm {alg!r} is not accepted for {provider.name}")

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise MalformedTokenError("Token header has no kid")

        key = provider.keys.get(kid)
        if key is None:  # [O2]
            logger.info("Unknown kid %r for %s; refreshing JWKS once", kid, provider.name)
            provider.keys.refresh()
            key = provider.keys.get(kid)
            if key is None:
                raise UnknownKeyError(f"No signing key {kid!r} for {provider.name} after refresh")

        if key.alg and key.alg != alg:
            raise AlgorithmNotAllowedError(f"Key {kid!r} is for {key.alg}, token declares {alg}")

        try:
            payload = jwt.decode(
                token,
                public_key_pem(key),
                algorithms=[alg],
                audience=provider.client_id,
                issuer=provider.issuer or None,
                access_token=access_token,
                options={"verify_at_hash": access_token is not None},
            )
        except ExpiredSignatureError as exc:
            raise InvalidSignatureError(f"Token from {provider.name} has expired") from exc
        except JWTClaimsError as exc:
            raise InvalidSignatureError(f"Token claims rejected: {exc}") from exc
        except JWTError as exc:
            raise InvalidSignatureError(f"Signature verification failed: {exc}") from exc

        try:
            return IdentityClaims.model_validate(payload)
        except ValidationError as exc:
            raise MalformedClaimsError(f"Token claims have the wrong shape: {exc.error_count()} error(s)") from exc
