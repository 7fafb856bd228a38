from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from authkeep.api.dependencies import (
    get_current_account,
    require_admin,
    require_owner_or_admin,
)
from authkeep.api.schemas import (
    AccountListResponse,
    AccountResponse,
    AuthResponse,
    DeleteAccountRequest,
    EmailOTPRequest,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OAuthIdentityResponse,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    RoleUpdateRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from authkeep.logging import get_logger
from authkeep.service.auth import AuthContext
from authkeep.service.errors import RateLimitedError
from authkeep.service.runtime import check_rate_limit, get_runtime
from authkeep.service.tokens import TokenPair
from authkeep.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with a Retry-After header."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "too many requests, please try again later", retry_after=reset_seconds
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        full_name=account.full_name,
        role=account.role,
        is_active=account.is_active,
        is_email_verified=account.is_email_verified,
        auth_provider=account.auth_provider,
        profile_image=account.effective_profile_image,
        oauth_profiles=[
            OAuthIdentityResponse(
                provider=identity.provider,
                provider_id=identity.provider_id,
                email=identity.email,
                linked_at=identity.linked_at,
            )
            for identity in account.oauth_profiles
        ],
        last_login=account.last_login,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _tokens_to_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_envelope(account: Account, tokens: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_to_response(account),
            tokens=_tokens_to_response(tokens),
        ),
    )


def _message(message: str, count: Optional[int] = None) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=message, count=count))


# public endpoints
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a local account and send the verification code and link.

    No session is issued: the caller signs in after verifying the address.

    Raises:
        409: If an account already exists for this email
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    account = await runtime.auth.register(
        body.email, body.password, body.first_name, body.last_name
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(account=_account_to_response(account)),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is inactive
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    account, tokens = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _auth_envelope(account, tokens)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token for a new pair; the presented token is retired."""
    runtime = get_runtime()
    account, tokens = await runtime.auth.refresh_token(
        body.refresh_token,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _auth_envelope(account, tokens)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    account, tokens = await runtime.auth.verify_email(body.token)
    return _auth_envelope(account, tokens)


@router.post("/auth/verify-email-otp", response_model=Envelope, tags=["auth"])
async def verify_email_otp(body: EmailOTPRequest, response: Response):
    """Verify an address with the six-digit code and sign the account in."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-otp:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    account, tokens = await runtime.auth.verify_email_with_otp(body.email, body.code)
    return _auth_envelope(account, tokens)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.resend_verification(body.email)
    return _message("verification email sent")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.generate_reset_token(body.email)
    return _message("password reset email sent")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    """Set a new password from a reset token; every session is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.reset_password(body.token, body.new_password)
    return _message("password has been reset; please sign in again")


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github, facebook)"),
):
    """Return the provider authorization URL and the single-use state."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:start:{provider}", limit=20, window_seconds=60)
    start = await runtime.auth.start_oauth(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from the provider"),
    state: str = Query(..., max_length=128, description="State issued by the start endpoint"),
):
    """Exchange the code, resolve it to one account and issue a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{provider}", limit=10, window_seconds=60)
    account, tokens = await runtime.auth.complete_oauth(
        provider,
        code,
        state,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _auth_envelope(account, tokens)


# authenticated endpoints
@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_current_account),
):
    runtime = get_runtime()
    if body is not None:
        await runtime.auth.logout(body.refresh_token)
    logger.info("logout", account_id=principal.account_id)
    return _message("logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_current_account)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.account_id)
    return _message("logged out from all devices", count=revoked)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_account),
):
    """Change password after re-checking the current one; all sessions end."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change-password:{principal.account_id}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return _message("password changed; please sign in again")


@router.post("/auth/delete-account", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: Optional[DeleteAccountRequest] = None,
    principal: AuthContext = Depends(get_current_account),
):
    runtime = get_runtime()
    await runtime.auth.delete_account(
        principal.account_id, body.current_password if body else None
    )
    return _message("account deleted")


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_current_account)):
    runtime = get_runtime()
    account = await runtime.auth.get_profile(principal.account_id)
    return Envelope(status="ok", data=_account_to_response(account))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_current_account),
):
    """Update names or the profile image; an empty ``profile_image`` removes it."""
    runtime = get_runtime()
    account = await runtime.auth.update_profile(
        principal.account_id,
        first_name=body.first_name,
        last_name=body.last_name,
        profile_image=body.profile_image,
    )
    return Envelope(status="ok", data=_account_to_response(account))


@router.get("/accounts/{account_id}", response_model=Envelope, tags=["accounts"])
async def get_account(
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_owner_or_admin),
):
    runtime = get_runtime()
    account = await runtime.auth.get_profile(account_id)
    return Envelope(status="ok", data=_account_to_response(account))


# admin endpoints
@router.get("/admin/accounts", response_model=Envelope, tags=["admin"])
async def admin_list_accounts(
    limit: int = Query(100, ge=1, le=500, description="Maximum accounts to return"),
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    accounts = await runtime.auth.list_accounts(limit)
    return Envelope(
        status="ok",
        data=AccountListResponse(items=[_account_to_response(a) for a in accounts]),
    )


@router.post("/admin/accounts/{account_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_admin),
):
    """Grant or revoke the admin role.

    Tokens already issued keep their old ``role`` claim, but every gate reads
    the role from the stored account, so the change applies immediately.
    """
    runtime = get_runtime()
    account = await runtime.auth.set_role(account_id, body.role)
    logger.info(
        "admin_role_changed", account_id=principal.account_id, target_account_id=account_id
    )
    return Envelope(status="ok", data=_account_to_response(account))
