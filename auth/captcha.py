"""
auth/captcha.py -- CAPTCHA response verification (reCAPTCHA-compatible).

The brute-force guard escalates rate-limited logins to "CAPTCHA required".
This module asks the verification service whether the client's CAPTCHA
response is genuine: a form POST of {secret, response, remoteip} to the
siteverify URL, answered with {"success": bool, "error-codes": [...]}.
Cloudflare Turnstile and hCaptcha accept the same request shape.

Fail-closed rules:
  - Empty response token   -> False, no network call.
  - No secret configured   -> False, logged at ERROR (rate-limited users
                              cannot log in until an operator configures it).
  - Network / decode error -> CaptchaUnavailableError (an internal error for
                              the caller, not a wrong answer).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import requests

from auth.errors import CaptchaUnavailableError

logger = logging.getLogger("appstore.auth.captcha")


class CaptchaVerifier:
    def __init__(self, secret: str, verify_url: str, timeout: float = 10.0, session: requests.Session | None = None):
        self._secret = secret
        self._verify_url = verify_url
        self._timeout = timeout
        self._session = session or requests.Session()

    def verify(self, response_token: str, remote_ip: str) -> bool:
        """Return True only if the verification service accepts the token."""
        if not response_token:
            return False
        if not self._secret:
            logger.error("CAPTCHA required but CAPTCHA_SECRET is not configured; refusing")
            return False
        try:
            resp = self._session.post(
                self._verify_url,
                data={"secret": self._secret, "response": response_token, "remoteip": remote_ip},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise CaptchaUnavailableError(f"CAPTCHA verification failed: {exc}") from exc

        if not isinstance(body, dict):
            raise CaptchaUnavailableError(f"CAPTCHA service returned {type(body).__name__}, not an object")

        if body.get("success") is True:
            return True
        logger.info("CAPTCHA rejected (error-codes=%s)", body.get("error-codes", []))
        return False
