"""
api/routes/auth.py -- Login, logout, and current-user endpoints.

Routes (mounted under /api):
  POST /login              -- directory-then-local login; sets the session cookie
  POST /logout             -- destroys the session; clears the cookie
  GET  /user               -- current user (401 without a valid session)
  PUT  /user               -- edit own profile (never role or status)
  GET  /user/permissions   -- resolved permission map for the current user
  POST /token              -- bearer JWT for API clients (requires a session)

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() runs a hash check even for unknown usernames.
  [M5] Cache-Control: no-store on login responses.
  Every failed login answers with the same 401 body, whichever internal path
  failed, so responses cannot be used to enumerate accounts.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, MessageResponse, PermissionsResponse, ProfileUpdate, TokenResponse, UserResponse
from auth.dependencies import get_auth_service, get_current_user
from auth.models import User
from auth.service import LoginStatus, LoginStrategy
from auth.tokens import clear_session_cookie, create_access_token, set_session_cookie

# Auth policy:
# - POST /login, POST /logout:        public
# - GET/PUT /user, GET /user/...:     requires a session (get_current_user)
# - POST /token:                      requires a session (get_current_user)
router = APIRouter()

_LOGIN_FAILED = "Invalid username or password"


def _login_response(status_code: int, content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/login", response_model=UserResponse)
@limiter.limit(login_rate_limit)  # [H2] enforced by the wrapped endpoint itself
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and open a session.

    The AuthService state machine produces one LoginOutcome; this handler
    converts it into exactly one response.
    """
    service = get_auth_service(request)
    strategy = LoginStrategy(body.strategy) if body.strategy else LoginStrategy.AUTO
    outcome = service.login(body.username, body.password, strategy)

    if outcome.ok:
        resp = _login_response(200, UserResponse.from_user(outcome.user).model_dump(by_alias=True, mode="json"))
        set_session_cookie(resp, outcome.session_token, request.app.state.settings)
        return resp
    if outcome.status is LoginStatus.SERVICE_UNAVAILABLE:
        return _login_response(500, {"message": "Authentication service unavailable"})
    return _login_response(401, {"message": _LOGIN_FAILED})


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Destroy the current session (if any) and clear the cookie."""
    settings = request.app.state.settings
    get_auth_service(request).logout(request.cookies.get(settings.session_cookie_name))
    resp = JSONResponse(content={"message": "Logged out"})
    clear_session_cookie(resp, settings)
    return resp


@router.get("/user", response_model=UserResponse)
def read_current_user(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.put("/user", response_model=UserResponse)
def update_current_user(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update the caller's own profile. Role and status are not part of the body.

    A password change ends every other session of the user; the session that
    made the change stays signed in.
    """
    service = get_auth_service(request)
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    new_password = updates.pop("password", None)
    service.users.update_user(current_user.id, **updates)
    if new_password is not None:
        own_token = request.cookies.get(request.app.state.settings.session_cookie_name)
        service.change_password(current_user.id, new_password, keep_token=own_token)
    return UserResponse.from_user(service.users.get_by_id(current_user.id))


@router.get("/user/permissions", response_model=PermissionsResponse)
def read_current_permissions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> PermissionsResponse:
    """Resolved permission map the dashboard uses to show or hide controls."""
    permissions = get_auth_service(request).effective_permissions(current_user)
    return PermissionsResponse(user_id=current_user.id, role=current_user.role, permissions=permissions.as_dict())


@router.post("/token", response_model=TokenResponse)
def issue_token(request: Request, current_user: User = Depends(get_current_user)) -> TokenResponse:
    """Issue a bearer JWT for scripts and API clients that cannot hold a cookie."""
    settings = request.app.state.settings
    token = create_access_token(
        current_user.id,
        current_user.username,
        current_user.role.value,
        settings.secret_key,
        settings.token_expire_seconds,
    )
    return TokenResponse(access_token=token, expires_in=settings.token_expire_seconds)
