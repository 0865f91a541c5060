"""Unit tests for auth/oidc.py -- KeyCache, TokenVerifier, ProviderRegistry.

Tokens are signed with real RSA keys (cryptography) via python-jose; the
JWKS and discovery endpoints are a MagicMock requests.Session.

Covers:
- valid RS256 token -> typed IdentityClaims
- unknown kid triggers exactly one JWKS fetch; a second miss is UnknownKeyError
- HS256 and "none" tokens are rejected without touching the key cache
- wrong signing key, expired token, wrong audience are rejected
- missing sub / exp reject the token after signature verification
- JWKS fetch failure surfaces as JwksFetchError (upstream, not verification)
- discovery at registry build time, and unknown provider lookup
"""

import time
from unittest.mock import MagicMock

import pytest
import requests
from jose import jwt

from auth.errors import (
    AlgorithmNotAllowedError,
    InvalidSignatureError,
    JwksFetchError,
    MalformedClaimsError,
    MalformedTokenError,
    UnknownKeyError,
    UnknownProviderError,
    UpstreamError,
    VerificationError,
)
from auth.oidc import IdentityClaims, KeyCache, ProviderRegistry, SsoProvider, TokenVerifier, parse_jwks
from core.config import SsoProviderConfig
from tests.helpers import CLIENT_ID, JWKS_URI, json_response, jwk_for, make_id_token, private_pem, unsigned_token


def _provider(jwks: dict, http: MagicMock | None = None) -> tuple[SsoProvider, MagicMock]:
    http = http or MagicMock()
    http.get.return_value = json_response(jwks)
    provider = SsoProvider(
        name="example",
        client_id=CLIENT_ID,
        client_secret="secret",
        redirect_uri="https://store.example.test/cb",
        token_endpoint="https://idp.example.test/token",
        keys=KeyCache(JWKS_URI, http, timeout=5.0),
    )
    return provider, http


@pytest.fixture
def verifier():
    return TokenVerifier()


class TestVerify:
    def test_valid_token(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = make_id_token(rsa_key, "key-1", sub="1234", name="Alice", email="a@example.test")
        claims = verifier.verify(provider, token)
        assert isinstance(claims, IdentityClaims)
        assert claims.sub == "1234"
        assert claims.name == "Alice"
        assert claims.email == "a@example.test"
        assert isinstance(claims.exp, int)

    def test_name_is_optional(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        claims = verifier.verify(provider, make_id_token(rsa_key, "key-1", sub="1234"))
        assert claims.name is None

    def test_extra_claims_kept(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        claims = verifier.verify(provider, make_id_token(rsa_key, "key-1", sub="1234", locale="en"))
        assert claims.model_extra["locale"] == "en"

    @pytest.mark.parametrize("alg", ["RS384", "RS512"])
    def test_other_rsa_algorithms(self, verifier, rsa_key, alg):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1", alg=None)]})
        claims = verifier.verify(provider, make_id_token(rsa_key, "key-1", alg=alg, sub="1234"))
        assert claims.sub == "1234"


class TestKeyRefresh:
    def test_first_use_fetches_once_then_caches(self, verifier, rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = make_id_token(rsa_key, "key-1", sub="1234")
        verifier.verify(provider, token)
        verifier.verify(provider, token)
        assert http.get.call_count == 1
        http.get.assert_called_once_with(JWKS_URI, timeout=5.0)

    def test_unknown_kid_refreshes_exactly_once(self, verifier, rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = make_id_token(rsa_key, "rotated-away", sub="1234")
        with pytest.raises(UnknownKeyError):
            verifier.verify(provider, token)
        assert http.get.call_count == 1
        assert provider.keys.refresh_count == 1

    def test_rotation_picked_up_on_miss(self, verifier, rsa_key, other_rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        verifier.verify(provider, make_id_token(rsa_key, "key-1", sub="1234"))

        http.get.return_value = json_response({"keys": [jwk_for(other_rsa_key, "key-2")]})
        claims = verifier.verify(provider, make_id_token(other_rsa_key, "key-2", sub="1234"))
        assert claims.sub == "1234"
        assert http.get.call_count == 2
        # The refresh replaced the snapshot wholesale.
        assert provider.keys.kids() == ["key-2"]

    def test_jwks_fetch_failure_is_upstream_error(self, verifier, rsa_key):
        http = MagicMock()
        provider, _ = _provider({"keys": []}, http=http)
        http.get.side_effect = requests.ConnectionError("down")
        with pytest.raises(JwksFetchError) as exc_info:
            verifier.verify(provider, make_id_token(rsa_key, "key-1", sub="1234"))
        assert isinstance(exc_info.value, UpstreamError)
        assert not isinstance(exc_info.value, VerificationError)

    def test_jwks_http_error(self):
        http = MagicMock()
        http.get.return_value = json_response({}, status=503)
        cache = KeyCache(JWKS_URI, http, timeout=1.0)
        with pytest.raises(JwksFetchError):
            cache.refresh()

    def test_missing_jwks_uri(self):
        cache = KeyCache("", MagicMock(), timeout=1.0)
        with pytest.raises(JwksFetchError):
            cache.refresh()


class TestRejectedAlgorithms:
    def test_hs256_rejected_without_key_lookup(self, verifier, rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = jwt.encode({"sub": "1234", "aud": CLIENT_ID, "exp": int(time.time()) + 60}, "s3cret", algorithm="HS256", headers={"kid": "key-1"})
        with pytest.raises(AlgorithmNotAllowedError):
            verifier.verify(provider, token)
        http.get.assert_not_called()

    def test_none_rejected(self, verifier, rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = unsigned_token(
            {"alg": "none", "kid": "key-1", "typ": "JWT"},
            {"sub": "1234", "aud": CLIENT_ID, "exp": int(time.time()) + 60},
        )
        with pytest.raises(AlgorithmNotAllowedError):
            verifier.verify(provider, token)
        http.get.assert_not_called()

    def test_key_alg_must_match_header(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1", alg="RS512")]})
        with pytest.raises(AlgorithmNotAllowedError):
            verifier.verify(provider, make_id_token(rsa_key, "key-1", alg="RS256", sub="1234"))

    @pytest.mark.parametrize("alg", [["RS256"], {"name": "RS256"}, 256, None])
    def test_non_string_alg_rejected(self, verifier, rsa_key, alg):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = unsigned_token(
            {"alg": alg, "kid": "key-1", "typ": "JWT"},
            {"sub": "1234", "aud": CLIENT_ID, "exp": int(time.time()) + 60},
        )
        with pytest.raises(AlgorithmNotAllowedError):
            verifier.verify(provider, token)
        http.get.assert_not_called()


class TestRejectedTokens:
    def test_signed_by_wrong_key(self, verifier, rsa_key, other_rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        with pytest.raises(InvalidSignatureError):
            verifier.verify(provider, make_id_token(other_rsa_key, "key-1", sub="1234"))

    def test_expired(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = make_id_token(rsa_key, "key-1", sub="1234", exp=int(time.time()) - 60)
        with pytest.raises(InvalidSignatureError):
            verifier.verify(provider, token)

    def test_wrong_audience(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = make_id_token(rsa_key, "key-1", sub="1234", aud="someone-else")
        with pytest.raises(InvalidSignatureError):
            verifier.verify(provider, token)

    def test_garbage_token(self, verifier, rsa_key):
        provider, http = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        with pytest.raises(MalformedTokenError):
            verifier.verify(provider, "not-a-jwt")
        http.get.assert_not_called()

    def test_missing_kid(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = jwt.encode(
            {"sub": "1234", "aud": CLIENT_ID, "exp": int(time.time()) + 60},
            private_pem(rsa_key),
            algorithm="RS256",
        )
        with pytest.raises(MalformedTokenError):
            verifier.verify(provider, token)

    def test_missing_sub(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        with pytest.raises(MalformedClaimsError):
            verifier.verify(provider, make_id_token(rsa_key, "key-1"))

    def test_missing_exp(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        token = jwt.encode({"sub": "1234", "aud": CLIENT_ID}, private_pem(rsa_key), algorithm="RS256", headers={"kid": "key-1"})
        with pytest.raises(MalformedClaimsError):
            verifier.verify(provider, token)

    def test_empty_sub(self, verifier, rsa_key):
        provider, _ = _provider({"keys": [jwk_for(rsa_key, "key-1")]})
        with pytest.raises(MalformedClaimsError):
            verifier.verify(provider, make_id_token(rsa_key, "key-1", sub=""))


class TestParseJwks:
    def test_skips_non_rsa_and_encryption_keys(self, rsa_key):
        doc = {
            "keys": [
                jwk_for(rsa_key, "good"),
                {"kty": "EC", "kid": "ec", "crv": "P-256", "x": "a", "y": "b"},
                dict(jwk_for(rsa_key, "enc"), use="enc"),
                {"kty": "RSA", "kid": "incomplete"},
            ]
        }
        assert list(parse_jwks(doc)) == ["good"]

    @pytest.mark.parametrize("keys", [None, 5, "key-1", {"kid": "key-1"}])
    def test_keys_must_be_a_list(self, keys):
        with pytest.raises(JwksFetchError):
            parse_jwks({"keys": keys})

    def test_missing_keys_is_empty(self):
        assert parse_jwks({}) == {}

    def test_refresh_with_bad_keys_member(self):
        http = MagicMock()
        http.get.return_value = json_response({"keys": None})
        cache = KeyCache(JWKS_URI, http, timeout=1.0)
        with pytest.raises(JwksFetchError):
            cache.refresh()
        assert cache.kids() == []

    def test_refresh_logs_snapshot_kids(self, rsa_key, other_rsa_key, caplog):
        http = MagicMock()
        http.get.return_value = json_response({"keys": [jwk_for(other_rsa_key, "key-b"), jwk_for(rsa_key, "key-a")]})
        cache = KeyCache(JWKS_URI, http, timeout=1.0)
        with caplog.at_level("INFO", logger="appstore.auth.oidc"):
            cache.refresh()
        assert "kids=['key-a', 'key-b']" in caplog.text


class TestProviderRegistry:
    def _config(self, **overrides) -> SsoProviderConfig:
        values = dict(
            name="example",
            client_id=CLIENT_ID,
            client_secret="secret",
            redirect_uri="https://store.example.test/cb",
            discover_uri="https://idp.example.test/.well-known/openid-configuration",
        )
        values.update(overrides)
        return SsoProviderConfig(**values)

    def test_discovery_fills_endpoints(self):
        http = MagicMock()
        http.get.return_value = json_response(
            {
                "issuer": "https://idp.example.test",
                "token_endpoint": "https://idp.example.test/token",
                "jwks_uri": "https://idp.example.test/jwks",
                "userinfo_endpoint": "https://idp.example.test/userinfo",
            }
        )
        registry = ProviderRegistry.from_config([self._config()], http, timeout=3.0)
        provider = registry.get("example")
        assert provider.token_endpoint == "https://idp.example.test/token"
        assert provider.keys.jwks_uri == "https://idp.example.test/jwks"
        assert provider.issuer == "https://idp.example.test"
        assert registry.names() == ["example"]

    def test_explicit_endpoints_skip_discovery(self):
        http = MagicMock()
        registry = ProviderRegistry.from_config(
            [self._config(token_endpoint="https://t.example.test", jwks_uri="https://j.example.test")],
            http,
            timeout=3.0,
        )
        http.get.assert_not_called()
        assert registry.get("example").token_endpoint == "https://t.example.test"

    def test_failed_discovery_keeps_provider_unusable(self):
        http = MagicMock()
        http.get.side_effect = requests.Timeout("slow")
        registry = ProviderRegistry.from_config([self._config()], http, timeout=3.0)
        provider = registry.get("example")
        assert provider.token_endpoint == ""
        with pytest.raises(JwksFetchError):
            provider.keys.refresh()

    def test_unknown_provider(self):
        with pytest.raises(UnknownProviderError):
            ProviderRegistry().get("nope")
