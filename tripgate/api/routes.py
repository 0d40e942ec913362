from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from tripgate.api.schemas import (
    MAX_TOKEN_LENGTH,
    EmailRequest,
    Envelope,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from tripgate.config import Settings
from tripgate.logging import get_logger
from tripgate.service.auth import AuthContext, public_user
from tripgate.service.errors import ServiceError, UnauthorizedError
from tripgate.service.rate_limit import RateLimitDecision
from tripgate.service.runtime import get_runtime
from tripgate.service.tokens import SessionCredential
from tripgate.storage.errors import StorageError
from tripgate.storage.models import User

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with that email, a password reset link will be sent."
)


def _client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Resolve the session cookie or bearer token, if any, onto ``request.state.auth``."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name) or _bearer_token(
        authorization
    )
    ctx = await runtime.auth.resolve_session(token) if token else None
    request.state.auth = ctx
    return ctx


async def get_current_user(
    ctx: Optional[AuthContext] = Depends(get_optional_user),
) -> AuthContext:
    if ctx is None:
        raise UnauthorizedError("Please authenticate")
    return ctx


def rate_limit(policy: str):
    """Dependency that records one hit against ``policy`` for the client IP."""

    async def _enforce_rate_limit(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime()
        decision = await runtime.rate_limiter.hit(
            policy, _client_ip(request, runtime.settings)
        )
        decision.apply_headers(response)
        return decision

    return _enforce_rate_limit


def _apply_session_cookie(
    response: Response, credential: SessionCredential, settings: Settings
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        credential.token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.session_ttl_hours * 3600,
        path="/",
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(**public_user(user))


router = APIRouter(
    prefix="/api/users",
    tags=["users"],
    dependencies=[Depends(get_optional_user)],
)

_envelope = {"response_model": Envelope, "response_model_exclude_none": True}


@router.post(
    "/register",
    status_code=201,
    dependencies=[Depends(rate_limit("register"))],
    **_envelope,
)
async def register(body: RegisterRequest):
    """Create an unverified account and send the verification email."""
    runtime = get_runtime()
    user = await runtime.auth.register(body.username, body.email, body.password)
    return Envelope(
        success=True,
        message="Registration successful. Please check your email to verify your account.",
        user=_user_response(user),
    )


@router.post("/login", dependencies=[Depends(rate_limit("login"))], **_envelope)
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for a session cookie.

    Unknown accounts, unverified accounts and wrong passwords all produce the
    same 401 body.
    """
    runtime = get_runtime()
    user, credential = await runtime.auth.login(body.email, body.password)
    _apply_session_cookie(response, credential, runtime.settings)
    return Envelope(success=True, user=_user_response(user))


@router.get("/verify-email", **_envelope)
async def verify_email(
    token: Optional[str] = Query(None, max_length=MAX_TOKEN_LENGTH),
):
    runtime = get_runtime()
    await runtime.auth.verify_email(token or "")
    return Envelope(success=True, message="Email verified successfully. You can now log in.")


@router.post(
    "/resend-verification", dependencies=[Depends(rate_limit("login"))], **_envelope
)
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return Envelope(success=True, message="Verification email sent successfully")


@router.post("/forgot-password", dependencies=[Depends(rate_limit("login"))], **_envelope)
async def forgot_password(body: EmailRequest):
    """Always answers with the same body whether or not the account exists."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(success=True, message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", dependencies=[Depends(rate_limit("login"))], **_envelope)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(
        success=True,
        message="Password has been reset successfully. You can now log in with your new password.",
    )


@router.get("/profile", **_envelope)
async def get_profile(ctx: AuthContext = Depends(get_current_user)):
    return Envelope(success=True, user=_user_response(ctx.user))


@router.patch("/profile", **_envelope)
async def update_profile(
    body: ProfileUpdateRequest, ctx: AuthContext = Depends(get_current_user)
):
    """Apply username and/or email changes; any other key rejects the whole update."""
    runtime = get_runtime()
    fields = {name: getattr(body, name) for name in body.model_fields_set}
    fields.update(body.model_extra or {})
    user = await runtime.auth.update_profile(ctx.user_id, fields)
    return Envelope(success=True, user=_user_response(user))


@router.post("/logout", **_envelope)
async def logout(response: Response, ctx: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    runtime.auth.logout(ctx)
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="strict",
    )
    return Envelope(success=True, message="Logged out successfully")


@router.get("/auth/{provider}")
async def oauth_start(provider: str = Path(..., max_length=32)):
    """Redirect the browser to the provider's consent screen."""
    runtime = get_runtime()
    authorization_url = await runtime.auth.start_federated_login(provider)
    return RedirectResponse(authorization_url, status_code=302)


@router.get("/auth/{provider}/callback")
async def oauth_callback(
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish federated sign-in and bounce back to the frontend with a status flag."""
    runtime = get_runtime()
    frontend = runtime.settings.frontend_url.rstrip("/")
    failure = RedirectResponse(f"{frontend}/?error={provider}-auth-failed", status_code=302)
    if error:
        logger.warning("oauth_provider_denied", provider=provider, error=error)
        return failure
    try:
        _, credential = await runtime.auth.complete_federated_login(
            provider, code or "", state or ""
        )
    except (ServiceError, StorageError) as exc:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            error_type=type(exc).__name__,
            message=getattr(exc, "message", str(exc)),
        )
        return failure
    success = RedirectResponse(f"{frontend}/?success={provider}-auth-success", status_code=302)
    _apply_session_cookie(success, credential, runtime.settings)
    return success
