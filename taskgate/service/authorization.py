from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitExceededError,
    ServiceError,
)
from taskgate.service.permissions import PermissionResolver
from taskgate.service.rate_limit import FixedWindowRateLimiter, RateLimitInfo, endpoint_limit
from taskgate.service.tokens import ACCESS, TokenCodec
from taskgate.storage.cache import (
    Cache,
    blacklist_key,
    endpoint_rate_key,
    ownership_key,
    session_key,
)
from taskgate.storage.errors import CacheUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutePolicy:
    """Access requirements declared next to a route.

    Empty ``roles``/``permissions`` and ``check_owner=False`` skip the
    corresponding check. The owned resource id is read from the path
    parameter ``owner_param`` or, failing that, the body field
    ``owner_body_field``.
    """

    roles: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    check_owner: bool = False
    owner_param: str = "id"
    owner_body_field: str = "user_id"
    rate_limit: Optional[int] = None


@dataclass
class AuthRequest:
    authorization: Optional[str]
    method: str
    route_path: str
    path_params: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    permissions: List[str]
    session_id: str
    token: Optional[str] = None
    rate_limit: Optional[RateLimitInfo] = None


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthorizationPipeline:
    """Per-request guard run in a fixed order; the first failing check wins.

    1. bearer token present
    2. signature, expiry, type and blacklist
    3. live session for (sub, sid)
    4. user still exists
    5. role, 6. permissions, 7. ownership (when the policy asks)
    8. per-user endpoint rate limit

    A cache failure during any check is reported as that check failing.
    """

    def __init__(
        self,
        store,
        cache: Cache,
        settings: Settings,
        *,
        tokens: TokenCodec,
        permissions: PermissionResolver,
        limiter: FixedWindowRateLimiter,
        endpoint_limits: Optional[Dict[str, int]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.permissions = permissions
        self.limiter = limiter
        self.endpoint_limits = endpoint_limits

    async def authorize(
        self, request: AuthRequest, policy: Optional[RoutePolicy] = None
    ) -> AuthContext:
        policy = policy or RoutePolicy()
        try:
            return await self._authorize(request, policy)
        except ServiceError as exc:
            logger.warning(
                "authorization_denied",
                method=request.method,
                route=request.route_path,
                status_code=exc.status_code,
                reason=exc.message,
            )
            raise

    async def _authorize(self, request: AuthRequest, policy: RoutePolicy) -> AuthContext:
        token = extract_bearer(request.authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")

        payload = self.tokens.decode(token, ACCESS)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        try:
            revoked = await self.cache.exists(blacklist_key(token))
        except CacheUnavailableError as exc:
            raise AuthenticationError("Unable to verify token") from exc
        if revoked:
            raise AuthenticationError("Token has been revoked")

        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id or not session_id:
            raise AuthenticationError("Invalid session")
        try:
            live = await self.cache.exists(session_key(user_id, session_id))
        except CacheUnavailableError as exc:
            raise AuthenticationError("Invalid session") from exc
        if not live:
            raise AuthenticationError("Invalid session")

        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")

        if policy.roles and user.role not in policy.roles:
            raise ForbiddenError(
                "Insufficient role", detail={"required_roles": list(policy.roles)}
            )

        try:
            permissions = await self.permissions.resolve(user.id, user.role)
        except CacheUnavailableError as exc:
            raise ForbiddenError("Unable to resolve permissions") from exc
        missing = [p for p in policy.permissions if p not in permissions]
        if missing:
            raise ForbiddenError(
                "Insufficient permissions", detail={"missing_permissions": missing}
            )

        if policy.check_owner:
            await self._check_ownership(request, policy, user.id)

        info = await self._check_rate_limit(request, policy, user.id)

        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=permissions,
            session_id=session_id,
            token=token,
            rate_limit=info,
        )

    def _resource_id(self, request: AuthRequest, policy: RoutePolicy) -> Optional[str]:
        value = request.path_params.get(policy.owner_param)
        if not value and request.body:
            value = request.body.get(policy.owner_body_field)
        return str(value) if value else None

    async def _check_ownership(
        self, request: AuthRequest, policy: RoutePolicy, user_id: str
    ) -> None:
        resource_id = self._resource_id(request, policy)
        if not resource_id:
            return
        key = ownership_key(resource_id)
        try:
            owner_id = await self.cache.get(key)
            if owner_id is None:
                # Cache miss: ask the directory and remember the answer
                owner_id = self.store.get_resource_owner(resource_id)
                if owner_id is not None:
                    await self.cache.set(
                        key, owner_id, self.settings.ownership_cache_ttl_seconds
                    )
        except CacheUnavailableError as exc:
            raise ForbiddenError("Unable to verify resource ownership") from exc
        # Unknown resources fall through; the handler answers 404
        if owner_id is not None and owner_id != user_id:
            raise ForbiddenError("Access to this resource is not allowed")

    async def _check_rate_limit(
        self, request: AuthRequest, policy: RoutePolicy, user_id: str
    ) -> RateLimitInfo:
        limit = policy.rate_limit
        if limit is None:
            kwargs = {"table": self.endpoint_limits} if self.endpoint_limits is not None else {}
            limit = endpoint_limit(
                request.method,
                request.route_path,
                default=self.settings.endpoint_rate_limit_default,
                **kwargs,
            )
        try:
            info = await self.limiter.hit(
                endpoint_rate_key(user_id, request.method, request.route_path),
                limit,
                self.settings.endpoint_rate_limit_window_seconds,
            )
        except CacheUnavailableError as exc:
            raise ForbiddenError("Unable to verify rate limit") from exc
        if not info.allowed:
            raise RateLimitExceededError(
                limit=limit,
                retry_after=info.retry_after,
                reset_at=info.reset_iso,
                headers=info.headers(),
            )
        return info
