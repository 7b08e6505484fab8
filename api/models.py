"""
API request and response models for accountd REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in account/models.py, which own
the internal domain representation. Route handlers map between the two.

Wire format is camelCase (sessionToken, refreshTokenExpiry, ...). Every model
uses alias_generator=to_camel; populate_by_name lets tests and internal
callers construct them with snake_case names.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from account.errors import FieldError
from account.models import Page, Role, Session, User

_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_WIRE_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

# Emails and OTPs are trimmed. Passwords are never touched: they are hashed and
# compared exactly as sent.
_Email = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=254)]
_Otp = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=16)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsRequest(BaseModel):
    """Request body for POST /account/auth/register and /account/auth/login.

    Only length is checked here. Email format and password strength are
    domain rules enforced by the engine so every caller gets them.
    """

    model_config = _WIRE

    email: _Email
    password: str = Field(min_length=1, max_length=255)


class ExtendSessionRequest(BaseModel):
    """Request body for POST /account/auth/extend."""

    model_config = _WIRE

    refresh_token: str = Field(min_length=1, max_length=255)


class RequestOtpRequest(BaseModel):
    model_config = _WIRE

    email: _Email


class VerifyOtpRequest(BaseModel):
    model_config = _WIRE

    email: _Email
    otp: _Otp


class ResetPasswordRequest(BaseModel):
    """Request body for POST /account/forgot-password/reset.

    token is the reset token returned by verify-otp, not the OTP itself.
    """

    model_config = _WIRE

    token: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = _WIRE_FROZEN

    id: int
    email: str
    role: Role

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, role=user.role)


class AuthenticatedResponse(BaseModel):
    """Response for login and extend: the new token pair and its owner."""

    model_config = _WIRE_FROZEN

    session_token: str
    refresh_token: str
    session_token_expiry: datetime
    refresh_token_expiry: datetime
    user: UserResponse

    @classmethod
    def from_session(cls, session: Session, user: User) -> "AuthenticatedResponse":
        return cls(
            session_token=session.token,
            refresh_token=session.refresh_token,
            session_token_expiry=session.token_expiry,
            refresh_token_expiry=session.refresh_token_expiry,
            user=UserResponse.from_user(user),
        )


class VerifyOtpResponse(BaseModel):
    model_config = _WIRE_FROZEN

    token: str


class PageRequestModel(BaseModel):
    model_config = _WIRE_FROZEN

    take: int
    skip: int


class UserPageResponse(BaseModel):
    """Response for GET /account/users."""

    model_config = _WIRE_FROZEN

    content: list[UserResponse]
    total: int
    request: PageRequestModel

    @classmethod
    def from_page(cls, page: Page[User]) -> "UserPageResponse":
        return cls(
            content=[UserResponse.from_user(u) for u in page.content],
            total=page.total,
            request=PageRequestModel(take=page.request.take, skip=page.request.skip),
        )


class ValidationErrorDetail(BaseModel):
    model_config = _WIRE_FROZEN

    property: str
    errors: list[str]

    @classmethod
    def from_field_error(cls, error: FieldError) -> "ValidationErrorDetail":
        return cls(property=error.property, errors=list(error.errors))


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = _WIRE_FROZEN

    code: str
    message: str
    debug_description: Optional[str] = None
    validation_errors: Optional[list[ValidationErrorDetail]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = _WIRE_FROZEN

    error: ErrorDetail

    def render(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = _WIRE_FROZEN

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
