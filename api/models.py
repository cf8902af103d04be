"""
API request and response models for AuthFlow REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

error_response() is the one place the error envelope is rendered; exception
handlers and routes both go through it.

Request fields are Optional on purpose: "missing" and "empty" must both reach
AuthService so it can report them as a 400 naming the field, in the same
order it checks everything else. Pydantic only guards types and sizes here.
"""

from datetime import datetime
from typing import Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""

    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class UserPatch(BaseModel):
    """Request body for PATCH /auth/me. Omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPublic(BaseModel):
    """User as exposed over HTTP -- never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str


class AuthResponse(BaseModel):
    """Response for a successful register, login, profile update or OAuth callback."""

    message: str
    token: str
    user: UserPublic


class MeResponse(BaseModel):
    """Response for GET /auth/me."""

    id: int
    name: str
    email: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


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


def error_response(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    """Build a JSONResponse carrying the ErrorResponse envelope."""
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
