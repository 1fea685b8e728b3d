from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from sessionguard.api.schemas import (
    Envelope,
    KickRequest,
    KickResponse,
    LoginEventInfo,
    LoginRequest,
    LoginResponse,
    MeResponse,
    SessionInfo,
    SessionListResponse,
    SignupRequest,
    SignupResponse,
)
from sessionguard.logging import bind_request_context, get_logger
from sessionguard.service.errors import (
    InvalidCredentialsError,
    UserBannedError,
    ValidationError,
)
from sessionguard.service.runtime import get_runtime
from sessionguard.service.sessions import AuthContext, LoginFailure
from sessionguard.storage.models import ClientMeta

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


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    # SessionInvalidError is rendered by the service error handler
    auth = await runtime.engine.authenticate(_bearer_token(authorization))
    bind_request_context(user_id=auth.user_id, session_id=auth.session_id)
    return auth


async def require_admin(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        raise _http_error("forbidden", "admin API disabled", status_code=403)
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise _http_error("forbidden", "admin access required", status_code=403)


@router.post(
    "/auth/signup",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def signup(body: SignupRequest):
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    pwd_hash, algo = runtime.verifier.hash(body.password)
    # ConstraintViolation on duplicate username maps to 409
    user = runtime.store.create_user(body.username, pwd_hash, password_algo=algo)
    logger.info("user_signed_up", user_id=user.id)
    return Envelope(
        status="ok", data=SignupResponse(user_id=user.id, username=user.username)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username and password and open a session.

    Raises:
        401: unknown username or wrong password (indistinguishable)
        403: the account is banned
    """
    runtime = get_runtime()
    result = await runtime.engine.login(body.username, body.password, _client_meta(request))
    if not result.ok:
        if result.failure is LoginFailure.USER_BANNED:
            raise UserBannedError("account is banned")
        raise InvalidCredentialsError("invalid credentials")
    expires_in = int(runtime.engine.policy.session_ttl.total_seconds())
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user.id,
            session_id=result.session_id,
            access_token=result.token,
            expires_at=result.expires_at,
            expires_in=expires_in,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = get_runtime().store.get_user(principal.user_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            username=user.username if user else None,
            session_id=principal.session_id,
            expires_at=principal.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.engine.logout(principal.user_id, principal.session_id)
    return Envelope(status="ok", data={"ok": True})


@router.get(
    "/admin/users/{user_id}/sessions",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def list_sessions(user_id: str):
    sessions = await get_runtime().engine.list_active_sessions(user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            user_id=user_id,
            sessions=[
                SessionInfo(
                    session_id=live.session_id,
                    created_at=live.created_at,
                    expires_at=live.expires_at,
                    ip=live.ip,
                    user_agent=live.user_agent,
                )
                for live in sessions
            ],
        ),
    )


@router.post(
    "/admin/users/{user_id}/kick",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def kick(user_id: str, body: KickRequest):
    engine = get_runtime().engine
    if body.all:
        report = await engine.kick_all_sessions(user_id)
        data = KickResponse(user_id=user_id, kicked=report.kicked, failed=report.failed)
    elif body.session_id:
        await engine.kick_session(user_id, body.session_id)
        data = KickResponse(user_id=user_id, kicked=[body.session_id])
    else:
        raise ValidationError("session_id or all=true is required")
    return Envelope(status="ok", data=data)


@router.post(
    "/admin/users/{user_id}/ban",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def ban(user_id: str):
    report = await get_runtime().engine.ban_user(user_id)
    return Envelope(
        status="ok",
        data=KickResponse(user_id=user_id, kicked=report.kicked, failed=report.failed),
    )


@router.post(
    "/admin/users/{user_id}/unban",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def unban(user_id: str):
    await get_runtime().engine.unban_user(user_id)
    return Envelope(status="ok", data={"user_id": user_id, "banned": False})


@router.get(
    "/admin/users/{user_id}/login-events",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def login_events(user_id: str, limit: int = Query(50, ge=1, le=500)):
    events = get_runtime().store.list_login_events(user_id=user_id, limit=limit)
    return Envelope(
        status="ok",
        data=[
            LoginEventInfo(
                id=event.id,
                user_id=event.user_id,
                username=event.username,
                success=event.success,
                reason=event.reason,
                ip=event.ip,
                user_agent=event.user_agent,
                created_at=event.created_at,
            )
            for event in events
        ],
    )
