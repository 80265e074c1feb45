from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from dealflow.api.guards import (
    REFRESH_COOKIE,
    apply_auth_cookies,
    clear_auth_cookies,
    client_ip,
    get_tier_config,
    optional_auth,
    require_2fa,
    require_admin,
    require_auth,
)
from dealflow.api.schemas import (
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    TierChangeRequest,
    TwoFactorVerifyRequest,
    account_to_response,
)
from dealflow.logging import get_logger
from dealflow.service.audit import AuditAction
from dealflow.service.errors import RateLimitedError
from dealflow.service.runtime import check_rate_limit, get_runtime
from dealflow.service.tiers import TierConfig
from dealflow.service.tokens import Principal

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
tiers_router = APIRouter(prefix="/tiers", tags=["tiers"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def _request_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": client_ip(request),
    }


async def _enforce_rate_limit(
    runtime, request: Request, scope: str, limit: int, window_seconds: int
) -> None:
    """Per-IP token bucket for unauthenticated auth endpoints.

    Raises:
        RateLimitedError: When the bucket for this IP is empty
    """
    ip = client_ip(request) or "unknown"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, f"{scope}:{ip}", limit, window_seconds, return_remaining=True
    )
    if allowed:
        return
    runtime.audit.emit(
        AuditAction.RATE_LIMIT,
        status="failure",
        resource=request.url.path,
        details={"scope": scope, "limit": limit, "window_seconds": window_seconds},
        **_request_meta(request),
    )
    raise RateLimitedError(
        "too many requests, try again later",
        detail={"retry_after": reset_seconds},
    )


@auth_router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a basic-tier user account and sign it in.

    Raises:
        400: Malformed email, names or weak password
        409: Email already registered
        429: Per-IP registration limit exceeded
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "register",
        settings.register_rate_limit,
        settings.auth_rate_limit_window_seconds,
    )
    account, tokens = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        access_code=body.access_code,
        **_request_meta(request),
    )
    apply_auth_cookies(response, tokens.access_token, tokens.refresh_token, settings=settings)
    return Envelope(status="ok", data={"user": account_to_response(account)})


@auth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for session cookies.

    When the account has two-factor enabled the issued session is pending
    until ``/auth/2fa/verify`` succeeds; ``requires2FA`` tells the client to
    prompt for a code.

    Raises:
        401: Unknown email or wrong password (same message for both)
        429: Account locked or per-IP login limit exceeded
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "login",
        settings.login_rate_limit,
        settings.auth_rate_limit_window_seconds,
    )
    result = await runtime.auth.login(body.email, body.password, **_request_meta(request))
    apply_auth_cookies(
        response,
        result.tokens.access_token,
        result.tokens.refresh_token,
        settings=settings,
    )
    return Envelope(
        status="ok",
        data={
            "user": account_to_response(result.account),
            "requires2FA": result.requires_2fa,
        },
    )


@auth_router.post("/2fa/setup", response_model=Envelope)
async def two_factor_setup(request: Request, principal: Principal = Depends(require_auth)):
    runtime = get_runtime()
    enrollment = await runtime.auth.setup_two_factor(principal, **_request_meta(request))
    return Envelope(
        status="ok",
        data={
            "secret": enrollment["secret"],
            "otpauthUrl": enrollment["otpauth_uri"],
            "qrCodeDataUrl": enrollment["qr_code_data_url"],
        },
    )


@auth_router.post("/2fa/verify", response_model=Envelope)
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_auth),
):
    """Verify a TOTP code, enabling two-factor on first success.

    Raises:
        400: Two-factor has not been set up
        401: Code did not match
        429: Too many wrong codes; verification is throttled
    """
    runtime = get_runtime()
    account, tokens = await runtime.auth.verify_two_factor(
        principal,
        body.token,
        current_refresh_token=request.cookies.get(REFRESH_COOKIE),
        **_request_meta(request),
    )
    apply_auth_cookies(
        response, tokens.access_token, tokens.refresh_token, settings=runtime.settings
    )
    return Envelope(
        status="ok",
        data={"user": account_to_response(account), "is2FAVerified": True},
    )


@auth_router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(require_auth)):
    runtime = get_runtime()
    account = runtime.auth.load_account(principal)
    return Envelope(
        status="ok",
        data={
            "user": account_to_response(account),
            "is2FAVerified": principal.is_2fa_verified,
        },
    )


@auth_router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(request.cookies.get(REFRESH_COOKIE), **_request_meta(request))
    clear_auth_cookies(response, settings=runtime.settings)
    return Envelope(status="ok", data={"message": "Logged out"})


@auth_router.post("/change-password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_2fa),
):
    """Change the password and sign out every other session.

    Raises:
        400: Current password is wrong or the new password is too weak
        403: Session has not completed two-factor verification
    """
    runtime = get_runtime()
    account, tokens = await runtime.auth.change_password(
        principal,
        body.current_password,
        body.new_password,
        **_request_meta(request),
    )
    apply_auth_cookies(
        response, tokens.access_token, tokens.refresh_token, settings=runtime.settings
    )
    return Envelope(status="ok", data={"user": account_to_response(account)})


@tiers_router.get("", response_model=Envelope)
async def list_tiers(
    principal: Optional[Principal] = Depends(optional_auth),
    tiers: TierConfig = Depends(get_tier_config),
):
    """Tier table for client-side gating; advisory only, the server re-checks."""
    current = principal.subscription_tier if principal else None
    data = tiers.to_dict()
    data["currentTier"] = current
    data["upgradeOptions"] = (
        [t.to_dict() for t in tiers.upgrade_options(current)] if principal else []
    )
    return Envelope(status="ok", data=data)


@tiers_router.get("/access/{feature}", response_model=Envelope)
async def feature_access(
    feature: str,
    principal: Principal = Depends(require_auth),
    tiers: TierConfig = Depends(get_tier_config),
):
    required = tiers.required_tier(feature)
    allowed = tiers.has_access(
        principal.subscription_tier,
        feature,
        internal_account=principal.internal_account,
    )
    return Envelope(
        status="ok",
        data={
            "feature": feature,
            "allowed": allowed,
            "requiredTier": required.to_dict() if required else None,
            "upgradeOptions": [
                t.to_dict() for t in tiers.upgrade_options(principal.subscription_tier)
            ],
        },
    )


@admin_router.post("/accounts/{account_id}/tier", response_model=Envelope)
async def admin_set_tier(
    account_id: str,
    body: TierChangeRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    """Change an account's subscription tier.

    Existing sessions see the new tier once their access token is refreshed.
    """
    runtime = get_runtime()
    account = await runtime.auth.set_tier(
        principal, account_id, body.subscription_tier, **_request_meta(request)
    )
    return Envelope(status="ok", data={"user": account_to_response(account)})


@admin_router.post("/accounts/{account_id}/revoke-sessions", response_model=Envelope)
async def admin_revoke_sessions(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime()
    account, revoked = await runtime.auth.revoke_sessions(
        principal, account_id, **_request_meta(request)
    )
    return Envelope(
        status="ok",
        data={"tokenVersion": account.token_version, "revoked": revoked},
    )
