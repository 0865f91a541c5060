"""
auth/exchange.py -- Authorization code -> token set, against a provider's
token endpoint.

One form-encoded POST per login:
    code, client_id, client_secret, redirect_uri, grant_type=authorization_code

Any failure is terminal for that login and raises ExchangeError. There is no
retry: an authorization code is single-use, and a retried POST of a code the
provider already consumed only produces a second, more confusing error.

The provider's error / error_description fields travel on the exception for
operator logs. They never reach the client.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import requests

from auth.errors import DiscoveryError, ExchangeError
from auth.models import TokenSet
from auth.oidc import SsoProvider

logger = logging.getLogger("appstore.auth.exchange")


class IdentityExchangeClient:
    def __init__(self, session: requests.Session, timeout: float = 10.0) -> None:
        self._session = session
        self._timeout = timeout

    def exchange(self, provider: SsoProvider, code: str) -> TokenSet:
        """Redeem an authorization code. Raises ExchangeError on any failure."""
        if not provider.token_endpoint:
            raise DiscoveryError(f"Provider {provider.name} has no token endpoint (discovery failed?)")

        form = {
            "code": code,
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "redirect_uri": provider.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            resp = self._session.post(provider.token_endpoint, data=form, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ExchangeError(f"Token endpoint of {provider.name} unreachable: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise ExchangeError(f"Token endpoint of {provider.name} returned HTTP {resp.status_code} without JSON")

        error = body.get("error")
        if resp.status_code // 100 != 2 or error:
            raise ExchangeError(
                f"Token exchange with {provider.name} failed (HTTP {resp.status_code})",
                error=str(error or ""),
                description=str(body.get("error_description") or ""),
            )

        id_token = body.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            raise ExchangeError(f"Token response from {provider.name} carries no id_token")

        expires_in = body.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError, OverflowError):
            logger.warning("Ignoring non-numeric expires_in from %s", provider.name)
            expires_in = None

        return TokenSet(
            access_token=str(body.get("access_token") or ""),
            id_token=id_token,
            expires_in=expires_in,
            token_type=body.get("token_type"),
        )
