from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from taskgate.api.schemas import (
    AuthResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
)
from taskgate.logging import get_logger
from taskgate.service.auth import AuthResult
from taskgate.service.authorization import AuthContext, AuthRequest, RoutePolicy
from taskgate.service.errors import NotFoundError
from taskgate.service.fingerprint import ClientFingerprint
from taskgate.service.runtime import get_runtime
from taskgate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _fingerprint(request: Request) -> ClientFingerprint:
    return ClientFingerprint.from_request_parts(
        request.headers.get("user-agent"),
        request.headers.get("x-forwarded-for"),
        request.client.host if request.client else None,
    )


async def _json_body(request: Request) -> Optional[dict]:
    if request.method not in _BODY_METHODS:
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


async def enforce_request_rate(request: Request, response: Response) -> None:
    """Per-client request ceiling for the unauthenticated auth routes."""
    runtime = get_runtime()
    info = await runtime.request_guard.check(_fingerprint(request))
    info.apply_headers(response.headers)


def require(policy: Optional[RoutePolicy] = None) -> Callable[..., Awaitable[AuthContext]]:
    """Build a dependency that runs the authorization pipeline for ``policy``."""
    policy = policy or RoutePolicy()

    async def _authorize(
        request: Request,
        response: Response,
        authorization: Optional[str] = Header(None),
    ) -> AuthContext:
        route = request.scope.get("route")
        route_path = getattr(route, "path", request.url.path)
        ctx = await get_runtime().pipeline.authorize(
            AuthRequest(
                authorization=authorization,
                method=request.method,
                route_path=route_path,
                path_params=dict(request.path_params),
                body=await _json_body(request),
            ),
            policy,
        )
        if ctx.rate_limit is not None:
            ctx.rate_limit.apply_headers(response.headers)
        return ctx

    return _authorize


get_user = require()


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            user=UserResponse(**result.user),
        ),
    )


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(enforce_request_rate)],
)
async def register(body: RegisterRequest, request: Request):
    """Create an account and start a session for it.

    Raises:
        400: If the password fails a strength rule (the first failing rule is named)
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, _fingerprint(request), name=body.name
    )
    return _auth_envelope(result)


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_request_rate)],
)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is temporarily locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _fingerprint(request))
    return _auth_envelope(result)


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_request_rate)],
)
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, principal.token)
    return Envelope(status="ok", data=MessageResponse(message="Successfully logged out"))


@router.delete("/sessions/current", response_model=Envelope, tags=["auth"])
async def revoke_current_session(principal: AuthContext = Depends(get_user)):
    """End the session the presented token belongs to.

    Every access token carrying this session id stops working immediately.
    """
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, principal.session_id)
    return Envelope(status="ok", data=MessageResponse(message="Session revoked"))


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=IdentityResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            permissions=principal.permissions,
            session_id=principal.session_id,
        ),
    )


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    principal: AuthContext = Depends(require(RoutePolicy(permissions=("users:read",)))),
):
    runtime = get_runtime()
    users = runtime.store.list_users()
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse(**u.public()) for u in users]),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_profile(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(
        require(RoutePolicy(check_owner=True, owner_param="user_id"))
    ),
):
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return Envelope(status="ok", data=UserResponse(**user.public()))


@router.patch("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(
        require(RoutePolicy(roles=(Role.ADMIN.value,), permissions=("users:write",)))
    ),
):
    runtime = get_runtime()
    user = await runtime.auth.change_role(user_id, body.role)
    logger.info("admin_role_change", actor=principal.user_id, target=user_id, role=body.role)
    return Envelope(status="ok", data=UserResponse(**user.public()))
