"""Unit tests for auth/exchange.py -- IdentityExchangeClient.

The token endpoint is a MagicMock requests.Session; nothing leaves the process.
"""

from unittest.mock import MagicMock

import pytest
import requests

from auth.errors import DiscoveryError, ExchangeError
from auth.exchange import IdentityExchangeClient
from auth.oidc import KeyCache, SsoProvider
from tests.helpers import CLIENT_ID, JWKS_URI, TOKEN_ENDPOINT, json_response


@pytest.fixture
def provider():
    return SsoProvider(
        name="example",
        client_id=CLIENT_ID,
        client_secret="client-secret",
        redirect_uri="https://store.example.test/login/callback",
        token_endpoint=TOKEN_ENDPOINT,
        keys=KeyCache(JWKS_URI, MagicMock(), timeout=5.0),
    )


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def client(http):
    return IdentityExchangeClient(http, timeout=7.0)


def test_posts_code_exactly_once(client, http, provider):
    http.post.return_value = json_response(
        {"access_token": "at", "id_token": "idt", "expires_in": 3599, "token_type": "Bearer"}
    )
    tokens = client.exchange(provider, "auth-code")

    http.post.assert_called_once_with(
        TOKEN_ENDPOINT,
        data={
            "code": "auth-code",
            "client_id": CLIENT_ID,
            "client_secret": "client-secret",
            "redirect_uri": "https://store.example.test/login/callback",
            "grant_type": "authorization_code",
        },
        timeout=7.0,
    )
    assert tokens.access_token == "at"
    assert tokens.id_token == "idt"
    assert tokens.expires_in == 3599
    assert tokens.token_type == "Bearer"


def test_provider_error_fields_kept_for_logs(client, http, provider):
    http.post.return_value = json_response(
        {"error": "invalid_grant", "error_description": "code already used"}, status=400
    )
    with pytest.raises(ExchangeError) as exc_info:
        client.exchange(provider, "reused")
    assert exc_info.value.error == "invalid_grant"
    assert exc_info.value.description == "code already used"
    assert "invalid_grant" in str(exc_info.value)
    assert http.post.call_count == 1


def test_error_field_on_200_is_still_a_failure(client, http, provider):
    http.post.return_value = json_response({"error": "access_denied"})
    with pytest.raises(ExchangeError):
        client.exchange(provider, "code")


def test_non_2xx_without_json(client, http, provider):
    resp = json_response(None, status=502)
    resp.json.side_effect = ValueError("no json")
    http.post.return_value = resp
    with pytest.raises(ExchangeError):
        client.exchange(provider, "code")


def test_missing_id_token(client, http, provider):
    http.post.return_value = json_response({"access_token": "at"})
    with pytest.raises(ExchangeError, match="no id_token"):
        client.exchange(provider, "code")


def test_network_error_is_not_retried(client, http, provider):
    http.post.side_effect = requests.ConnectionError("reset")
    with pytest.raises(ExchangeError):
        client.exchange(provider, "code")
    assert http.post.call_count == 1


@pytest.mark.parametrize("expires_in", ["soon", float("inf"), float("-inf"), float("nan"), [3600]])
def test_non_numeric_expires_in_dropped(client, http, provider, expires_in):
    http.post.return_value = json_response({"id_token": "idt", "expires_in": expires_in})
    assert client.exchange(provider, "code").expires_in is None


def test_provider_without_token_endpoint(client, http, provider):
    provider.token_endpoint = ""
    with pytest.raises(DiscoveryError):
        client.exchange(provider, "code")
    http.post.assert_not_called()
