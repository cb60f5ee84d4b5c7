from __future__ import annotations

import asyncio
from typing import List, Optional, TypeVar
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, File, Header, Query, Request, Response, UploadFile
from fastapi.responses import RedirectResponse

from starterauth.api.error_handling import ApiException
from starterauth.api.schemas import (
    AuthTokensOut,
    CreateUserRequest,
    EmailRequest,
    LoginRequest,
    MessageOut,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateNameRequest,
    UpdatePasswordRequest,
    UpdateUserRequest,
    UserOut,
)
from starterauth.config import Settings
from starterauth.logging import get_logger
from starterauth.service.auth import LOGGED_OUT_MESSAGE, AuthTokens
from starterauth.service.errors import ErrorCodes, Failure, Result
from starterauth.service.runtime import Runtime, check_rate_limit, get_runtime
from starterauth.service.tokens import extract_bearer
from starterauth.storage.models import SafeUser

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refresh_token"
OAUTH_ERROR_MESSAGE = "Google login failed"


def _unwrap(result: Result[T]) -> T:
    if not result.ok:
        raise ApiException(result.failure)
    return result.value


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    """Raise a 429 ``AUTH.RATE_LIMIT_EXCEEDED`` when the bucket for ``key`` is empty."""
    allowed, _remaining, retry_after = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after=retry_after)
        raise ApiException(
            Failure(
                ErrorCodes.AUTH.RATE_LIMIT_EXCEEDED,
                429,
                {"retryAfter": retry_after},
            ),
            headers={"Retry-After": str(retry_after)},
        )


def _user_out(user: SafeUser) -> UserOut:
    return UserOut(**user.to_dict())


def _tokens_out(tokens: AuthTokens) -> AuthTokensOut:
    return AuthTokensOut(
        user=_user_out(tokens.user),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
    )


def _cookie_policy(settings: Settings) -> dict:
    samesite = "none" if settings.is_production and settings.cross_site_cookies else "lax"
    return {"httponly": True, "secure": settings.is_production, "samesite": samesite, "path": "/"}


def _apply_auth_cookies(response: Response, settings: Settings, tokens: AuthTokens) -> None:
    policy = _cookie_policy(settings)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_cookie_max_age_hours * 60 * 60,
        **policy,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        **policy,
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    policy = _cookie_policy(settings)
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, **policy)


def _refresh_token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    return extract_bearer(authorization) or request.cookies.get(REFRESH_COOKIE)


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> SafeUser:
    """Resolve the caller from a bearer access token or the ``token`` cookie."""
    token = extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise ApiException(Failure(ErrorCodes.AUTH.UNAUTHORIZED, 401))
    return _unwrap(await get_runtime().auth.authenticate(token))


# auth


@router.post("/auth/login", response_model=AuthTokensOut, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns the user with an access/refresh token pair and sets both as
    httpOnly cookies.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    tokens = _unwrap(await runtime.auth.login(body.email, body.password))
    _apply_auth_cookies(response, runtime.settings, tokens)
    return _tokens_out(tokens)


@router.post("/auth/register", response_model=MessageOut, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
    )
    message = _unwrap(await runtime.auth.register(body.email, body.password, body.name))
    return MessageOut(message=message)


@router.get("/auth/confirm-email", response_model=MessageOut, tags=["auth"])
async def confirm_email(token: str = Query(..., min_length=1, max_length=256)):
    message = _unwrap(await get_runtime().auth.confirm_email(token))
    return MessageOut(message=message)


@router.post("/auth/resend-confirmation", response_model=MessageOut, tags=["auth"])
async def resend_confirmation(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{_client_ip(request)}",
        runtime.settings.resend_rate_limit_per_minute,
    )
    message = _unwrap(await runtime.auth.resend_confirmation(body.email))
    return MessageOut(message=message)


@router.post("/auth/refresh", response_model=AuthTokensOut, tags=["auth"])
async def refresh(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    """Rotate a refresh token.

    The token is read from ``Authorization: Bearer`` or, failing that, the
    ``refresh_token`` cookie. The presented token is invalidated.
    """
    runtime = get_runtime()
    refresh_token = _refresh_token_from(request, authorization)
    if not refresh_token:
        raise ApiException(Failure(ErrorCodes.AUTH.INVALID_TOKEN, 401))
    tokens = _unwrap(await runtime.auth.refresh_tokens(refresh_token))
    _apply_auth_cookies(response, runtime.settings, tokens)
    return _tokens_out(tokens)


@router.post("/auth/logout", response_model=MessageOut, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    refresh_token = _refresh_token_from(request, authorization)
    message = None
    if refresh_token:
        message = _unwrap(await runtime.auth.logout(refresh_token))
    _clear_auth_cookies(response, runtime.settings)
    return MessageOut(message=message or LOGGED_OUT_MESSAGE)


@router.post("/auth/logout-all", response_model=MessageOut, tags=["auth"])
async def logout_all(response: Response, user: SafeUser = Depends(get_current_user)):
    runtime = get_runtime()
    message = _unwrap(await runtime.auth.logout_all(user.id))
    _clear_auth_cookies(response, runtime.settings)
    return MessageOut(message=message)


@router.post("/auth/forgot-password", response_model=MessageOut, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    message = _unwrap(await runtime.auth.request_password_reset(body.email))
    return MessageOut(message=message)


@router.post("/auth/reset-password", response_model=MessageOut, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    message = _unwrap(await get_runtime().auth.reset_password(body.token, body.password))
    return MessageOut(message=message)


@router.put("/auth/password", response_model=MessageOut, tags=["auth"])
async def update_password(
    body: UpdatePasswordRequest, user: SafeUser = Depends(get_current_user)
):
    message = _unwrap(
        await get_runtime().auth.update_password(user.id, body.current_password, body.new_password)
    )
    return MessageOut(message=message)


@router.get("/auth/google", tags=["auth"])
async def google_login():
    """Redirect to Google's consent screen."""
    url = await get_runtime().oauth.authorization_url()
    return RedirectResponse(url, status_code=307)


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(code: Optional[str] = None, state: Optional[str] = None):
    """Finish Google sign-in and hand the tokens to the frontend."""
    runtime = get_runtime()
    frontend_url = runtime.settings.frontend_url.rstrip("/")
    failure_url = f"{frontend_url}/auth/error?message={quote(OAUTH_ERROR_MESSAGE)}"
    if not code or not state:
        logger.warning("oauth_callback_missing_params", provider="google")
        return RedirectResponse(failure_url, status_code=302)

    identity = await runtime.oauth.complete(code, state)
    if identity is None:
        return RedirectResponse(failure_url, status_code=302)
    signed_in = await runtime.auth.sign_in_external(identity)
    if not signed_in.ok:
        logger.warning("oauth_sign_in_failed", provider="google", error_code=signed_in.failure.code)
        return RedirectResponse(failure_url, status_code=302)

    tokens = signed_in.value
    query = urlencode(
        {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "provider": "google",
        }
    )
    return RedirectResponse(f"{frontend_url}/auth/callback?{query}", status_code=302)


# users


@router.get("/users/whoami", response_model=UserOut, tags=["users"])
async def whoami(user: SafeUser = Depends(get_current_user)):
    return _user_out(user)


@router.get("/users", response_model=List[UserOut], tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500), user: SafeUser = Depends(get_current_user)
):
    return [_user_out(u) for u in get_runtime().users.list_users(limit=limit)]


@router.post("/users", response_model=UserOut, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, user: SafeUser = Depends(get_current_user)):
    created = _unwrap(get_runtime().users.create_user(body.email, body.password, body.name))
    return _user_out(created)


@router.patch("/users/profile", response_model=UserOut, tags=["users"])
async def update_profile(body: UpdateNameRequest, user: SafeUser = Depends(get_current_user)):
    return _user_out(_unwrap(get_runtime().users.update_name(user.id, body.name)))


@router.post("/users/avatar", response_model=UserOut, tags=["users"])
async def upload_avatar(
    file: UploadFile = File(...), user: SafeUser = Depends(get_current_user)
):
    content = await file.read()
    updated = _unwrap(
        await get_runtime().users.upload_avatar(
            user.id, content, file.content_type, file.filename or "avatar"
        )
    )
    return _user_out(updated)


@router.get("/users/{user_id}", response_model=UserOut, tags=["users"])
async def get_user(user_id: str, user: SafeUser = Depends(get_current_user)):
    return _user_out(_unwrap(get_runtime().users.get_user(user_id)))


@router.put("/users/{user_id}", response_model=UserOut, tags=["users"])
async def update_user(
    user_id: str, body: UpdateUserRequest, user: SafeUser = Depends(get_current_user)
):
    updated = _unwrap(
        get_runtime().users.update_user(
            user.id, user_id, email=body.email, name=body.name, password=body.password
        )
    )
    return _user_out(updated)


@router.delete("/users/{user_id}", response_model=UserOut, tags=["users"])
async def delete_user(user_id: str, user: SafeUser = Depends(get_current_user)):
    return _user_out(_unwrap(get_runtime().users.delete_user(user.id, user_id)))


# development helpers


@router.get("/email/test", response_model=MessageOut, tags=["email"])
async def send_test_email(to: str = Query(..., min_length=3, max_length=254)):
    runtime = get_runtime()
    if not runtime.settings.is_development:
        raise ApiException(Failure(ErrorCodes.AUTH.FORBIDDEN, 403))
    sent = await asyncio.to_thread(runtime.email.send_test_email, to)
    if not sent:
        raise ApiException(Failure(ErrorCodes.SYSTEM.EMAIL_DELIVERY_FAILED, 500))
    return MessageOut(message=f"Test email sent to {to}")
