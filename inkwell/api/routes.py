from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query
from fastapi.responses import RedirectResponse

from inkwell.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    ResetTokenStatusResponse,
    ResetTokenValidationRequest,
    UpdateUserRequest,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
)
from inkwell.config import get_settings
from inkwell.logging import get_logger
from inkwell.service.auth import AuthContext, AuthResult
from inkwell.service.errors import AuthenticationError
from inkwell.service.runtime import get_runtime
from inkwell.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_super_admin(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization, required_role=UserRole.SUPER_ADMIN.value
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        session_id=result.session_id,
        expires_in=result.expires_in,
    )


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a new account with email and password.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    user = await runtime.auth.register(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        password=body.password,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the email is unverified while
            verification is required
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """End the current session. Repeating a logout is not an error."""
    runtime = get_runtime()
    try:
        ctx = await runtime.auth.authenticate(authorization)
    except AuthenticationError:
        return Envelope(status="ok", data=MessageResponse(message="logged out"))
    await runtime.auth.logout(
        user_id=ctx.user_id,
        access_token=ctx.token,
        session_id=ctx.session_id,
        refresh_token=body.refresh_token if body else None,
    )
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    """Revoke every other token of the caller; the calling token stays usable."""
    runtime = get_runtime()
    await runtime.auth.logout_from_all_devices(
        principal.user_id,
        current_token=principal.token,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=MessageResponse(message="logged out from all devices"))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password and revoke every existing token."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password changed successfully. Please login again."),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    result = await runtime.password_reset.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    result = await runtime.password_reset.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(body: ResetTokenValidationRequest):
    runtime = get_runtime()
    status = await runtime.password_reset.validate_reset_token(body.token)
    return Envelope(
        status="ok", data=ResetTokenStatusResponse(valid=status.valid, email=status.email)
    )


@router.get("/auth/oauth/google/start", response_model=Envelope, tags=["auth"])
async def google_oauth_start():
    """Return the Google authorization URL the client should redirect to."""
    runtime = get_runtime()
    start = await runtime.auth.start_google_oauth()
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/google/callback", tags=["auth"])
async def google_oauth_callback(
    code: str = Query(..., max_length=512, description="Authorization code from Google"),
    state: str = Query(..., max_length=128, description="State issued by the start endpoint"),
):
    """Finish Google sign-in and hand the access token to the frontend."""
    runtime = get_runtime()
    result = await runtime.auth.complete_google_oauth(code, state)
    frontend = runtime.settings.frontend_url.rstrip("/")
    query = urlencode({"token": result.access_token})
    return RedirectResponse(f"{frontend}/auth/google-callback?{query}", status_code=302)


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.users.get_user(principal, principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- users ---------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    users = runtime.users.list_users(principal, limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = runtime.users.get_user(principal, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = runtime.users.update_user(
        principal,
        user_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.users.delete_user(principal, user_id)
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def set_user_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    user = runtime.users.set_role(principal, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/{user_id}/revoke", response_model=Envelope, tags=["users"])
async def revoke_user_tokens(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_super_admin),
):
    """Force-revoke every outstanding token of a user."""
    runtime = get_runtime()
    await runtime.users.revoke_user_tokens(principal, user_id)
    return Envelope(status="ok", data=MessageResponse(message="tokens revoked"))
