"""
core/http.py -- Shared requests.Session factory for upstream calls.

Identity providers, their JWKS endpoints, and the CAPTCHA verifier are all
reached through one pooled session built here. max_redirects=3 replaces the
requests default of 30 -- these are known endpoints, 3 hops is generous and
protects against SSRF via redirect chains.

Every call site passes its own timeout; the session has no default.
"""

import requests

USER_AGENT = "appstore-accounts/0.3"


def build_session() -> requests.Session:
    session = requests.Session()
    session.max_redirects = 3
    session.headers["User-Agent"] = USER_AGENT
    session.headers["Accept"] = "application/json"
    return session
