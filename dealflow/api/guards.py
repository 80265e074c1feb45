"""FastAPI dependencies that authenticate requests and gate features.

``require_auth`` resolves the caller from the ``accessToken`` cookie or a
bearer header and silently refreshes an expired access token from the
``refreshToken`` cookie. The other guards build on it:

    @router.get("/analytics", dependencies=[Depends(require_feature("analytics"))])

Tier checks always go through the ``TierConfig`` held by the runtime, which
tests can swap via ``app.dependency_overrides[get_tier_config]``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request, Response

from dealflow.config import Settings, get_settings
from dealflow.logging import get_logger
from dealflow.service.audit import AuditAction
from dealflow.service.errors import (
    AuthenticationError,
    ForbiddenError,
    TierRestrictedError,
    TwoFactorRequiredError,
)
from dealflow.service.runtime import get_runtime
from dealflow.service.tiers import TierConfig
from dealflow.service.tokens import Principal

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def apply_auth_cookies(
    response: Response,
    access_token: str,
    refresh_token: Optional[str],
    *,
    settings: Optional[Settings] = None,
) -> None:
    settings = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            max_age=settings.refresh_token_ttl_minutes * 60,
            path="/",
        )


def clear_auth_cookies(response: Response, *, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.is_production,
            httponly=True,
            samesite="lax",
        )


def get_tier_config() -> TierConfig:
    return get_runtime().tiers


async def require_auth(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Principal:
    runtime = get_runtime()
    access_token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    resolved = await runtime.auth.resolve_principal(
        access_token,
        request.cookies.get(REFRESH_COOKIE),
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    )
    if resolved.refreshed:
        apply_auth_cookies(
            response,
            resolved.access_token,
            resolved.refresh_token,
            settings=runtime.settings,
        )
        # error handlers build a fresh response and re-apply these
        request.state.refreshed_tokens = (resolved.access_token, resolved.refresh_token)
    request.state.principal = resolved.principal
    return resolved.principal


async def optional_auth(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Optional[Principal]:
    try:
        return await require_auth(request, response, authorization)
    except AuthenticationError:
        return None


async def require_2fa(principal: Principal = Depends(require_auth)) -> Principal:
    if not principal.is_2fa_verified:
        raise TwoFactorRequiredError()
    return principal


async def require_admin(principal: Principal = Depends(require_2fa)) -> Principal:
    if not principal.is_admin:
        logger.warning("admin_access_denied", account_id=principal.account_id)
        raise ForbiddenError("admin access required")
    return principal


def _deny_tier(request: Request, principal: Principal, required, *, feature: Optional[str]):
    get_runtime().audit.emit(
        AuditAction.TIER_DENIED,
        status="failure",
        account_id=principal.account_id,
        resource=feature or request.url.path,
        details={"tier": principal.subscription_tier, "required": required.id},
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    logger.info(
        "tier_access_denied",
        account_id=principal.account_id,
        tier=principal.subscription_tier,
        required=required.id,
    )
    return TierRestrictedError(required.to_dict())


def require_subscription(tier: str):
    """Dependency factory: the caller's tier must be at least ``tier``."""

    async def _require_subscription(
        request: Request,
        principal: Principal = Depends(require_2fa),
        tiers: TierConfig = Depends(get_tier_config),
    ) -> Principal:
        required = tiers.tier(tier)
        if required is None:
            raise ValueError(f"unknown tier '{tier}'")
        if not tiers.meets(
            principal.subscription_tier, tier, internal_account=principal.internal_account
        ):
            raise _deny_tier(request, principal, required, feature=None)
        return principal

    return _require_subscription


def require_feature(feature: str):
    """Dependency factory gating a route on the tier table's feature map."""

    async def _require_feature(
        request: Request,
        principal: Principal = Depends(require_2fa),
        tiers: TierConfig = Depends(get_tier_config),
    ) -> Principal:
        if not tiers.has_access(
            principal.subscription_tier,
            feature,
            internal_account=principal.internal_account,
        ):
            required = tiers.required_tier(feature) or tiers.lowest
            raise _deny_tier(request, principal, required, feature=feature)
        return principal

    return _require_feature
