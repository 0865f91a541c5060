"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Catalog routes identify the caller with:
    Authorization: Bearer <sessionKey>

The key is resolved through AccountService.current_account(), which returns
None for unknown keys and for disabled accounts.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for
  Depends/HTTPException/Request) because this module is part of the FastAPI
  dependency injection system. No imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import StorageError
from auth.models import Account

logger = logging.getLogger("appstore.auth.dependencies")


def _bearer_key(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return ""


def try_get_current_account(request: Request) -> Account | None:
    """Resolve the Bearer session key to an Account, or None.

    A storage failure is not an authentication failure: it surfaces as 503
    rather than being reported to the client as "not logged in".
    """
    session_key = _bearer_key(request)
    if not session_key:
        return None
    service = request.app.state.account_service
    try:
        return service.current_account(session_key)
    except StorageError:
        logger.exception("Session lookup failed")
        raise HTTPException(
            status_code=503,
            detail={"code": "storage_unavailable", "message": "Internal server error"},
        )


def get_current_account(request: Request) -> Account:
    """Require a valid session. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Invalid session key"},
        )
    return account
