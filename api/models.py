"""
API request and response models for the accounts REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are separate from the dataclasses in auth/models.py and
auth/service.py, which own the internal representation. Route handlers map
between the two.

Field names on the wire are camelCase (sessionKey, authProvider, ...) for
compatibility with existing store clients. Python attributes stay snake_case;
populate_by_name lets tests build models either way.

Bounds here are coarse transport limits only. The exact username, password
and display-name rules live in AccountDirectory and come back as a normal
{"success": false, "errorMessage": ...} response.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_FIELD_LENGTH = 512
# Authorization codes and CAPTCHA tokens are provider-generated and can be long.
MAX_TOKEN_LENGTH = 4096

_wire = ConfigDict(populate_by_name=True, str_strip_whitespace=False)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/user/login.

    Either {code, authProvider} (SSO) or {username, password, captchaResponse}
    (local). The route picks the path from whichever pair is present.
    """

    model_config = _wire

    code: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    auth_provider: Optional[str] = Field(default=None, alias="authProvider", max_length=100)
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    captcha_response: str = Field(default="", alias="captchaResponse", max_length=MAX_TOKEN_LENGTH)

    @property
    def is_sso(self) -> bool:
        return self.code is not None or self.auth_provider is not None


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/user/register (AUTH_MODE=local)."""

    model_config = _wire

    username: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    password: str = Field(min_length=1, max_length=MAX_FIELD_LENGTH)
    real_name: str = Field(alias="realName", min_length=1, max_length=MAX_FIELD_LENGTH)


class SessionKeyRequest(BaseModel):
    """Request body for POST /user/info and POST /user/logout."""

    model_config = _wire

    session_key: str = Field(alias="sessionKey", max_length=MAX_FIELD_LENGTH)


class UpdateNameRequest(BaseModel):
    model_config = _wire

    session_key: str = Field(alias="sessionKey", max_length=MAX_FIELD_LENGTH)
    name: str = Field(max_length=MAX_FIELD_LENGTH)


class UpdatePasswordRequest(BaseModel):
    model_config = _wire

    session_key: str = Field(alias="sessionKey", max_length=MAX_FIELD_LENGTH)
    password: str = Field(max_length=MAX_FIELD_LENGTH)


# ---------------------------------------------------------------------------
# Response models
#
# Serialized with model_dump(by_alias=True) so clients see camelCase.
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for POST /user/login and POST /user/register."""

    model_config = _wire

    success: bool
    error_message: str = Field(default="", alias="errorMessage")
    session_key: str = Field(default="", alias="sessionKey")
    rate_limited: bool = Field(default=False, alias="rateLimited")


class SessionInfoResponse(BaseModel):
    """Response for POST /user/info.

    name and realName both carry the display name; older clients read one,
    newer ones the other.
    """

    model_config = _wire

    logged_in: bool = Field(alias="loggedIn")
    username: str = ""
    name: str = ""
    real_name: str = Field(default="", alias="realName")
    error_message: str = Field(default="", alias="errorMessage")


class StatusResponse(BaseModel):
    """Response for the update and logout endpoints."""

    model_config = _wire

    success: bool
    error_message: str = Field(default="", alias="errorMessage")


class MeResponse(BaseModel):
    """Response for GET /user/me (Bearer session key)."""

    model_config = _wire

    account_id: int = Field(alias="accountId")
    username: str
    name: str
    kind: str


class ProviderInfo(BaseModel):
    """One configured SSO provider, for the login page."""

    model_config = ConfigDict(frozen=True)

    name: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
