from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from adminauth.api.error_handling import error_envelope
from adminauth.api.schemas import (
    BackupCodesResponse,
    DeactivateResponse,
    Envelope,
    InvitationResponse,
    InviteRequest,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PasswordResetRequest,
    PrincipalResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    TokenPasswordRequest,
    TOTPCodeRequest,
    TOTPReverifyRequest,
    TOTPSetupResponse,
    TOTPStatusResponse,
)
from adminauth.logging import get_logger
from adminauth.service.engine import AuthContext
from adminauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidToken,
    NotFoundError,
)
from adminauth.service.runtime import get_runtime
from adminauth.service.tokens import TokenPair
from adminauth.storage.models import ClientMeta

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin")


def _client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_current_admin(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise InvalidToken("Access token required")
    return await get_runtime().engine.authenticate(token)


def require_permission(permission: str):
    async def _dependency(ctx: AuthContext = Depends(get_current_admin)) -> AuthContext:
        if permission not in ctx.permissions:
            raise ForbiddenError(
                "insufficient permissions", detail={"required": permission}
            )
        return ctx

    return _dependency


def _apply_refresh_cookie(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=True,
        httponly=True,
        samesite="strict",
    )


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate an administrator.

    The access token is returned in the body; the refresh token is only ever
    sent as an HttpOnly, Secure, SameSite=Strict cookie.

    Raises:
        401: Invalid credentials, or a missing/wrong second factor
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.engine.login(
        body.email,
        body.password,
        totp_code=body.totp_token,
        backup_code=body.backup_code,
        client=_client_meta(request),
    )
    _apply_refresh_cookie(response, result.tokens)
    token_data = _token_response(result.tokens)
    return Envelope(
        success=True,
        message="Login successful",
        data=LoginResponse(
            **token_data.model_dump(),
            principal=PrincipalResponse(**result.principal.public_view()),
            used_backup_code=result.used_backup_code,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    runtime = get_runtime()
    refresh_token = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not refresh_token:
        raise InvalidToken("Refresh token required")
    try:
        tokens = await runtime.engine.refresh(refresh_token, client=_client_meta(request))
    except AuthenticationError as exc:
        # a rejected refresh token never becomes valid again
        logger.warning("refresh_rejected", error_code=exc.error_code)
        failure = error_envelope(exc.status_code, exc.message, exc.detail, exc.error_code)
        _clear_refresh_cookie(failure)
        return failure
    _apply_refresh_cookie(response, tokens)
    return Envelope(
        success=True, message="Token refreshed", data=_token_response(tokens)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_current_admin),
):
    runtime = get_runtime()
    await runtime.engine.logout(
        ctx.principal_id, ctx.correlation_id, client=_client_meta(request)
    )
    _clear_refresh_cookie(response)
    return Envelope(success=True, message="Logged out")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_current_admin)):
    principal = get_runtime().store.find_by_id(ctx.principal_id)
    if principal is None:
        raise NotFoundError("principal not found")
    return Envelope(
        success=True, data=PrincipalResponse(**principal.public_view())
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(ctx: AuthContext = Depends(get_current_admin)):
    sessions = await get_runtime().engine.list_sessions(ctx.principal_id)
    return Envelope(
        success=True,
        data=SessionListResponse(
            sessions=[
                SessionResponse(
                    correlation_id=s.correlation_id,
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                    last_activity_at=s.last_activity_at,
                    ip_address=s.ip_address,
                    user_agent=s.user_agent,
                    current=s.correlation_id == ctx.correlation_id,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{correlation_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    correlation_id: str, request: Request, ctx: AuthContext = Depends(get_current_admin)
):
    removed = await get_runtime().engine.logout(
        ctx.principal_id, correlation_id, client=_client_meta(request)
    )
    if not removed:
        raise NotFoundError("session not found")
    return Envelope(success=True, message="Session revoked")


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_current_admin),
):
    revoked = await get_runtime().engine.change_password(
        ctx.principal_id,
        body.current_password,
        body.new_password,
        keep_correlation_id=ctx.correlation_id,
        client=_client_meta(request),
    )
    return Envelope(
        success=True,
        message="Password changed",
        data=PasswordChangeResponse(sessions_revoked=revoked),
    )


_RESET_REQUESTED = "If an account exists with this email, a password reset link will be sent"


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    # one answer whether or not the account exists
    await get_runtime().engine.request_password_reset(
        body.email, client=_client_meta(request)
    )
    return Envelope(success=True, message=_RESET_REQUESTED)


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: TokenPasswordRequest, request: Request):
    revoked = await get_runtime().engine.reset_password(
        body.token, body.new_password, client=_client_meta(request)
    )
    return Envelope(
        success=True,
        message="Password reset successfully. You can now log in with your new password.",
        data=PasswordChangeResponse(sessions_revoked=revoked),
    )


@router.post("/auth/invitations/accept", response_model=Envelope, tags=["auth"])
async def accept_invitation(body: TokenPasswordRequest, request: Request):
    principal = await get_runtime().engine.accept_invitation(
        body.token, body.new_password, client=_client_meta(request)
    )
    return Envelope(
        success=True,
        message="Invitation accepted. You can now log in with your new password.",
        data=PrincipalResponse(**principal.public_view()),
    )


@router.post("/auth/totp/setup", response_model=Envelope, tags=["totp"])
async def totp_setup(request: Request, ctx: AuthContext = Depends(get_current_admin)):
    enrollment = await get_runtime().engine.begin_mfa_enrollment(
        ctx.principal_id, client=_client_meta(request)
    )
    return Envelope(
        success=True,
        message="Scan the QR code with your authenticator app",
        data=TOTPSetupResponse(
            secret=enrollment.secret,
            otpauth_url=enrollment.provisioning_uri,
            issuer=enrollment.issuer,
        ),
    )


@router.post("/auth/totp/enable", response_model=Envelope, tags=["totp"])
async def totp_enable(
    body: TOTPCodeRequest, request: Request, ctx: AuthContext = Depends(get_current_admin)
):
    codes = await get_runtime().engine.confirm_mfa_enrollment(
        ctx.principal_id, body.token, client=_client_meta(request)
    )
    return Envelope(
        success=True,
        message="TOTP enabled. Store these backup codes safely; they are shown once.",
        data=BackupCodesResponse(backup_codes=codes),
    )


@router.post("/auth/totp/disable", response_model=Envelope, tags=["totp"])
async def totp_disable(
    body: TOTPReverifyRequest,
    request: Request,
    ctx: AuthContext = Depends(get_current_admin),
):
    await get_runtime().engine.disable_mfa(
        ctx.principal_id,
        body.current_password,
        body.totp_token,
        client=_client_meta(request),
    )
    return Envelope(success=True, message="TOTP disabled")


@router.post("/auth/totp/backup-codes", response_model=Envelope, tags=["totp"])
async def totp_regenerate_backup_codes(
    body: TOTPReverifyRequest,
    request: Request,
    ctx: AuthContext = Depends(get_current_admin),
):
    codes = await get_runtime().engine.regenerate_backup_codes(
        ctx.principal_id,
        body.current_password,
        body.totp_token,
        client=_client_meta(request),
    )
    return Envelope(
        success=True,
        message="Backup codes regenerated",
        data=BackupCodesResponse(backup_codes=codes),
    )


@router.get("/auth/totp/status", response_model=Envelope, tags=["totp"])
async def totp_status(ctx: AuthContext = Depends(get_current_admin)):
    status = await get_runtime().engine.mfa_status(ctx.principal_id)
    return Envelope(
        success=True,
        data=TOTPStatusResponse(
            totp_enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
            setup_pending=status.setup_pending,
        ),
    )


@router.post(
    "/principals/{principal_id}/deactivate", response_model=Envelope, tags=["management"]
)
async def deactivate_principal(
    principal_id: str, ctx: AuthContext = Depends(require_permission("admins.manage"))
):
    removed = await get_runtime().engine.deactivate(principal_id, actor_id=ctx.principal_id)
    return Envelope(
        success=True,
        message="Administrator deactivated",
        data=DeactivateResponse(principal_id=principal_id, sessions_removed=removed),
    )


@router.post(
    "/principals/{principal_id}/unlock", response_model=Envelope, tags=["management"]
)
async def unlock_principal(
    principal_id: str, ctx: AuthContext = Depends(require_permission("admins.manage"))
):
    await get_runtime().engine.unlock(principal_id, actor_id=ctx.principal_id)
    return Envelope(success=True, message="Administrator unlocked")


@router.post(
    "/principals/invite",
    response_model=Envelope,
    status_code=201,
    tags=["management"],
)
async def invite_principal(
    body: InviteRequest,
    request: Request,
    ctx: AuthContext = Depends(require_permission("admins.manage")),
):
    """Create an administrator and email them a single-use invitation token.

    The token itself is never part of the response.
    """
    invitation = await get_runtime().engine.invite_principal(
        body.email,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
        actor_id=ctx.principal_id,
        client=_client_meta(request),
    )
    return Envelope(
        success=True,
        message="Administrator created. Invitation sent.",
        data=InvitationResponse(
            principal=PrincipalResponse(**invitation.principal.public_view()),
            invitation_expires_at=invitation.expires_at,
        ),
    )
