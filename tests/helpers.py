"""
tests/helpers.py -- Plain helpers shared by the test modules (no fixtures).

  - memory_db_url(): a unique named shared-memory SQLite URI per call
  - json_response(): MagicMock standing in for a requests.Response
  - jwk_for() / make_id_token(): real RSA JWKs and RS-signed id_tokens
  - make_service(): an AccountService wired to a test DB with mocked upstreams
  - SsoHarness: an SSO-mode service whose provider is simulated in-process

Fixtures built on these live in conftest.py.
"""

from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass
from unittest.mock import MagicMock

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from auth.captcha import CaptchaVerifier
from auth.db import Database
from auth.directory import AccountDirectory
from auth.exchange import IdentityExchangeClient
from auth.models import TokenSet
from auth.oidc import KeyCache, ProviderRegistry, SsoProvider, TokenVerifier
from auth.ratelimit import BruteForceGuard, LoginAttemptLog
from auth.service import AccountService
from auth.sessions import SessionStore

CLIENT_ID = "store-client"
PROVIDER = "example"
JWKS_URI = "https://idp.example.test/jwks"
TOKEN_ENDPOINT = "https://idp.example.test/token"

# ---------------------------------------------------------------------------
# Database / HTTP
# ---------------------------------------------------------------------------


def memory_db_url(label: str) -> str:
    return f"sqlite:///file:test_{label}_{uuid.uuid4().hex[:12]}?mode=memory&cache=shared&uri=true"


def json_response(payload, status: int = 200) -> MagicMock:
    """A stand-in for requests.Response carrying a JSON body."""
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status // 100 != 2:
        resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    else:
        resp.raise_for_status.return_value = None
    return resp


# ---------------------------------------------------------------------------
# RSA / JWT
# ---------------------------------------------------------------------------


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def jwk_for(private_key: rsa.RSAPrivateKey, kid: str, alg: str | None = "RS256") -> dict:
    """Public JWK (unpadded base64url n / e) for a private key."""
    numbers = private_key.public_key().public_numbers()
    jwk = {"kty": "RSA", "use": "sig", "kid": kid, "n": _b64url_uint(numbers.n), "e": _b64url_uint(numbers.e)}
    if alg:
        jwk["alg"] = alg
    return jwk


def private_pem(private_key: rsa.RSAPrivateKey) -> str:
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def make_id_token(private_key: rsa.RSAPrivateKey, kid: str, alg: str = "RS256", **claims) -> str:
    """Sign an id_token. Defaults: aud=CLIENT_ID, exp one hour ahead."""
    now = int(time.time())
    payload = {"aud": CLIENT_ID, "iat": now, "exp": now + 3600}
    payload.update(claims)
    return jwt.encode(payload, private_pem(private_key), algorithm=alg, headers={"kid": kid})


def unsigned_token(header: dict, payload: dict) -> str:
    """Assemble a JWS by hand with an empty signature (alg "none" tokens)."""
    import json

    def seg(obj: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode("ascii")

    return f"{seg(header)}.{seg(payload)}."


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def make_service(
    db_url: str,
    auth_mode: str = "local",
    providers: ProviderRegistry | None = None,
    exchange_client=None,
    captcha: CaptchaVerifier | None = None,
    max_sessions: int = 5,
) -> AccountService:
    db = Database(db_url)
    directory = AccountDirectory(db)
    return AccountService(
        db=db,
        directory=directory,
        sessions=SessionStore(db, directory, max_sessions=max_sessions),
        guard=BruteForceGuard(LoginAttemptLog(db)),
        # No secret configured: CAPTCHA always fails closed, without network.
        captcha=captcha or CaptchaVerifier("", "https://captcha.example.test/siteverify", session=MagicMock()),
        providers=providers or ProviderRegistry(),
        exchange_client=exchange_client or MagicMock(spec=IdentityExchangeClient),
        verifier=TokenVerifier(),
        auth_mode=auth_mode,
    )


@dataclass
class SsoHarness:
    """An SSO-mode service whose provider is fully simulated in-process."""

    service: AccountService
    provider: SsoProvider
    jwks_http: MagicMock
    exchange: MagicMock
    key: rsa.RSAPrivateKey
    kid: str = "key-1"

    def next_login(self, sub: str, name: str | None = "Alice Example", expires_in: int | None = 3600, **claims) -> str:
        """Make the next code exchange return a signed id_token for sub."""
        if name is not None:
            claims["name"] = name
        token = make_id_token(self.key, self.kid, sub=sub, **claims)
        self.exchange.exchange.return_value = TokenSet(
            access_token="upstream-access-token",
            id_token=token,
            expires_in=expires_in,
            token_type="Bearer",
        )
        return token


def make_sso_harness(private_key: rsa.RSAPrivateKey, db_url: str) -> SsoHarness:
    jwks_http = MagicMock()
    jwks_http.get.return_value = json_response({"keys": [jwk_for(private_key, "key-1")]})
    provider = SsoProvider(
        name=PROVIDER,
        client_id=CLIENT_ID,
        client_secret="client-secret",
        redirect_uri="https://store.example.test/login/callback",
        token_endpoint=TOKEN_ENDPOINT,
        keys=KeyCache(JWKS_URI, jwks_http, timeout=5.0),
    )
    exchange = MagicMock(spec=IdentityExchangeClient)
    service = make_service(
        db_url,
        auth_mode="sso",
        providers=ProviderRegistry([provider]),
        exchange_client=exchange,
    )
    return SsoHarness(service=service, provider=provider, jwks_http=jwks_http, exchange=exchange, key=private_key)
