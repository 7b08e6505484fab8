"""
api/routes/v1/account.py -- Account REST endpoints.

Routes:
  POST /account/auth/register                -- create a User (public)
  POST /account/auth/login                   -- password login; returns token pair (public)
  POST /account/auth/extend                  -- rotate a renewable session (X-Session-Id + refresh token)
  POST /account/auth/logout                  -- revoke the caller's sessions (X-Session-Id)
  POST /account/forgot-password/request-otp  -- open a reset transaction (public)
  POST /account/forgot-password/verify-otp   -- OTP -> reset token (public)
  POST /account/forgot-password/reset        -- reset token + new password (public)
  GET  /account/users/me                     -- current user (X-Session-Id)
  GET  /account/users                        -- paginated user list (Admin)

Every handler that hashes or touches the store is a plain `def`: FastAPI runs
those on its threadpool, so bcrypt and blocking DB calls never stall the
event loop. Domain failures are raised as AccountError subclasses and
rendered by the handler in api/main.py.

Security:
  login, request-otp and verify-otp are rate-limited per client IP.
  Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from account.dependencies import get_current_user, get_possibly_expired_session, require_admin
from account.engine import AuthenticationEngine
from account.models import PageRequest, Session, User
from account.password_reset import PasswordResetEngine
from api.limiter import limiter, login_limit, otp_limit
from api.models import (
    AuthenticatedResponse,
    CredentialsRequest,
    ExtendSessionRequest,
    RequestOtpRequest,
    ResetPasswordRequest,
    UserPageResponse,
    UserResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)

router = APIRouter(prefix="/account")


def _auth(request: Request) -> AuthenticationEngine:
    return request.app.state.auth_engine


def _reset(request: Request) -> PasswordResetEngine:
    return request.app.state.reset_engine


def _token_response(session: Session, user: User) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=AuthenticatedResponse.from_session(session, user).model_dump(mode="json", by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: CredentialsRequest) -> UserResponse:
    """Create an account. Does not log the user in."""
    user = _auth(request).register(body.email, body.password)
    return UserResponse.from_user(user)


@router.post("/auth/login", response_model=AuthenticatedResponse)
@limiter.limit(login_limit)  # below @router so the router registers the limited wrapper
def login(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Authenticate with email and password; revokes any previous session."""
    session, user = _auth(request).login(body.email, body.password)
    return _token_response(session, user)


@router.post("/auth/extend", response_model=AuthenticatedResponse)
def extend_session(
    request: Request,
    body: ExtendSessionRequest,
    session: Session = Depends(get_possibly_expired_session),
) -> JSONResponse:
    """Trade a renewable session (header) plus its refresh token (body) for a new pair."""
    new_session, user = _auth(request).extend_session(session, body.refresh_token)
    return _token_response(new_session, user)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    _auth(request).logout(current_user)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Forgot password
# ---------------------------------------------------------------------------


@router.post("/forgot-password/request-otp", status_code=204)
@limiter.limit(otp_limit)
def request_otp(request: Request, body: RequestOtpRequest) -> Response:
    """Issue an OTP. The code is delivered out of band and never echoed here."""
    _reset(request).request_otp(body.email)
    return Response(status_code=204)


@router.post("/forgot-password/verify-otp", response_model=VerifyOtpResponse)
@limiter.limit(otp_limit)
def verify_otp(request: Request, body: VerifyOtpRequest) -> JSONResponse:
    reset_token = _reset(request).verify_otp(body.email, body.otp)
    resp = JSONResponse(content=VerifyOtpResponse(token=reset_token).model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/forgot-password/reset", status_code=204)
def reset_password(request: Request, body: ResetPasswordRequest) -> Response:
    _reset(request).reset_password(body.token, body.password)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.get("/users", response_model=UserPageResponse)
def list_users(
    request: Request,
    take: int = Query(default=20, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    current_user: User = Depends(require_admin),
) -> UserPageResponse:
    """List user accounts one page at a time. Admin only."""
    page = _auth(request).list_users(PageRequest(take=take, skip=skip))
    return UserPageResponse.from_page(page)
