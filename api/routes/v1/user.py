"""
api/routes/v1/user.py -- Account and session REST endpoints.

Routes:
  POST /api/v1/user/login            -- SSO code or username/password; returns sessionKey
  POST /api/v1/user/register         -- create a local account and log it in (AUTH_MODE=local)
  POST /api/v1/user/info             -- session key -> {loggedIn, username, name, realName}
  POST /api/v1/user/update/name      -- change display name
  POST /api/v1/user/update/password  -- change password (AUTH_MODE=local)
  POST /api/v1/user/logout           -- end one session
  GET  /api/v1/user/providers        -- configured SSO provider names (public)
  GET  /api/v1/user/me               -- identity for Authorization: Bearer <sessionKey>

Every handler is a plain def: FastAPI runs it in the threadpool, which is
where the blocking upstream calls and bcrypt belong.

Security:
  [H2] /login and /register are throttled per IP (HTTP_RATE_LIMIT) on top of
       the per-account CAPTCHA escalation in the service.
  [M5] Cache-Control: no-store on every response that can carry a session key.
  The origin passed to the service is slowapi's get_remote_address(), the
  same address the throttle keys on.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.limiter import limiter
from api.models import (
    ErrorDetail,
    LoginRequest,
    LoginResponse,
    MeResponse,
    ProviderInfo,
    RegisterRequest,
    SessionInfoResponse,
    SessionKeyRequest,
    StatusResponse,
    UpdateNameRequest,
    UpdatePasswordRequest,
)
from auth.dependencies import get_current_account
from auth.models import Account, SsoIdentity
from auth.service import AccountService, LoginResult, RejectReason, UpdateResult
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /user/login, /user/register: public -- these create sessions
# - POST /user/info, /update/*, /logout: session key in the body, checked by the service
# - GET  /user/providers: public -- the login page renders provider buttons from it
# - GET  /user/me: requires Bearer session key (get_current_account)
router = APIRouter()

# HTTP status per rejection reason. Rate-limit escalation is not an error:
# the client gets 200 with rateLimited=true and shows a CAPTCHA.
_REJECT_STATUS: dict[RejectReason, int] = {
    RejectReason.INVALID_INPUT: 400,
    RejectReason.MODE_DISABLED: 400,
    RejectReason.UNKNOWN_PROVIDER: 400,
    RejectReason.VERIFICATION_FAILED: 401,
    RejectReason.INVALID_USERNAME: 401,
    RejectReason.INVALID_PASSWORD: 401,
    RejectReason.ACCOUNT_DISABLED: 403,
    RejectReason.USERNAME_TAKEN: 409,
    RejectReason.CAPTCHA_REQUIRED: 200,
    RejectReason.CAPTCHA_FAILED: 200,
    RejectReason.INVALID_SESSION: 401,
    RejectReason.INTERNAL_ERROR: 500,
}


def _service(request: Request) -> AccountService:
    return request.app.state.account_service


def _login_response(result: LoginResult) -> JSONResponse:
    status = 200 if result.success else _REJECT_STATUS.get(result.reason, 400)
    resp = JSONResponse(
        status_code=status,
        content=LoginResponse(
            success=result.success,
            error_message=result.user_message,
            session_key=result.session_key,
            rate_limited=result.rate_limited,
        ).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _status_response(result: UpdateResult) -> JSONResponse:
    # An unknown session is a normal answer here (success=false), as is a
    # rejected name; only malformed input and server faults change the status.
    status = 200
    if result.reason is RejectReason.INVALID_INPUT:
        status = 400
    elif result.reason is RejectReason.INTERNAL_ERROR:
        status = 500
    return JSONResponse(
        status_code=status,
        content=StatusResponse(success=result.success, error_message=result.error_message).model_dump(by_alias=True),
    )


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail=ErrorDetail(code="bad_request", message=message).model_dump())


# ---------------------------------------------------------------------------
# Login / registration
# ---------------------------------------------------------------------------


@limiter.limit(_settings.http_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/user/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Log in with an SSO authorization code or with a username and password.

    SSO body:   {"code": "...", "authProvider": "google"}
    Local body: {"username": "...", "password": "...", "captchaResponse": "..."}
    """
    service = _service(request)
    origin = get_remote_address(request)
    if body.is_sso:
        if not body.code or not body.auth_provider:
            raise _bad_request("Both code and authProvider are required for SSO login.")
        result = service.login_or_register(body.auth_provider, body.code, origin)
    else:
        if not body.username or not body.password:
            raise _bad_request("Either code/authProvider or username/password is required.")
        result = service.login(body.username, body.password, body.captcha_response, origin)
    return _login_response(result)


@limiter.limit(_settings.http_rate_limit)  # [H2]
@router.post("/user/register", response_model=LoginResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account; on success the response carries its first session key."""
    service = _service(request)
    result = service.register(body.username, body.password, body.real_name, get_remote_address(request))
    return _login_response(result)


# ---------------------------------------------------------------------------
# Session-keyed operations
# ---------------------------------------------------------------------------


@router.post("/user/info", response_model=SessionInfoResponse)
def info(request: Request, body: SessionKeyRequest) -> JSONResponse:
    """Report whether a session key is logged in and for whom."""
    result = _service(request).session_info(body.session_key)
    status = 500 if result.reason is RejectReason.INTERNAL_ERROR else 200
    return JSONResponse(
        status_code=status,
        content=SessionInfoResponse(
            logged_in=result.logged_in,
            username=result.username,
            name=result.name,
            real_name=result.name,
            error_message=result.error_message,
        ).model_dump(by_alias=True),
    )


@router.post("/user/update/name", response_model=StatusResponse)
def update_name(request: Request, body: UpdateNameRequest) -> JSONResponse:
    return _status_response(_service(request).update_profile(body.session_key, body.name))


@router.post("/user/update/password", response_model=StatusResponse)
def update_password(request: Request, body: UpdatePasswordRequest) -> JSONResponse:
    return _status_response(_service(request).update_password(body.session_key, body.password))


@router.post("/user/logout", response_model=StatusResponse)
def logout(request: Request, body: SessionKeyRequest) -> JSONResponse:
    return _status_response(_service(request).logout(body.session_key))


# ---------------------------------------------------------------------------
# Public / Bearer endpoints
# ---------------------------------------------------------------------------


@router.get("/user/providers", response_model=list[ProviderInfo])
def list_providers(request: Request) -> list[ProviderInfo]:
    """Return the configured SSO providers. Empty in AUTH_MODE=local."""
    return [ProviderInfo(name=name) for name in _service(request).providers.names()]


@router.get("/user/me", response_model=MeResponse)
def me(account: Account = Depends(get_current_account)) -> JSONResponse:
    """Return identity information for the Bearer session key."""
    kind = "sso" if isinstance(account.identity, SsoIdentity) else "local"
    return JSONResponse(
        content=MeResponse(
            account_id=account.id,
            username=account.username,
            name=account.display_name,
            kind=kind,
        ).model_dump(by_alias=True)
    )
