from __future__ import annotations

import contextlib
import math
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.service.errors import (
    AccountLockedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    ServiceUnavailableError,
    ValidationError,
    WeakPasswordError,
)
from taskgate.service.fingerprint import ClientFingerprint
from taskgate.service.permissions import PermissionResolver
from taskgate.service.tokens import ACCESS, REFRESH, TokenCodec, TokenPair
from taskgate.storage.cache import (
    Cache,
    LockoutState,
    RefreshConsumeResult,
    blacklist_key,
    decode_lockout,
    lockout_key,
    refresh_flag_key,
    refresh_hash_key,
    session_key,
    sha256_hex,
)
from taskgate.storage.errors import CacheUnavailableError, ConstraintViolation
from taskgate.storage.models import Role, User

logger = get_logger(__name__)

_SPECIAL_CHARACTERS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

# Checked in order; the first failing rule is reported
_PASSWORD_RULES = (
    (lambda p: len(p) >= 8, "Password must be at least 8 characters long"),
    (lambda p: re.search(r"[A-Z]", p), "Password must contain at least one uppercase letter"),
    (lambda p: re.search(r"[a-z]", p), "Password must contain at least one lowercase letter"),
    (lambda p: re.search(r"\d", p), "Password must contain at least one number"),
    (lambda p: _SPECIAL_CHARACTERS.search(p), "Password must contain at least one special character"),
)


def validate_password_strength(password: str) -> None:
    """Raise ``WeakPasswordError`` naming the first rule ``password`` breaks."""
    for check, reason in _PASSWORD_RULES:
        if not check(password):
            raise WeakPasswordError(reason)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = Role.USER.value,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def get_resource_owner(self, resource_id: str) -> Optional[str]: ...


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int


class AuthService:
    """Login, registration, lockout bookkeeping and refresh-token rotation.

    All mutable security state (sessions, lockouts, refresh records,
    blacklist) lives in the shared cache; nothing is held in process.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Cache,
        settings: Settings,
        *,
        tokens: Optional[TokenCodec] = None,
        permissions: Optional[PermissionResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.tokens = tokens or TokenCodec(settings, clock=clock)
        self.permissions = permissions or PermissionResolver(
            cache, ttl_seconds=settings.permission_cache_ttl_seconds
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    @contextlib.contextmanager
    def _cache_required(self, operation: str):
        """Turn a cache outage into a 503 instead of a partial auth decision."""
        try:
            yield
        except CacheUnavailableError as exc:
            self.logger.error(
                "auth_cache_unavailable", operation=operation, error=str(exc.cause or exc)
            )
            raise ServiceUnavailableError(
                "Authentication service temporarily unavailable"
            ) from exc

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Constant-effort check; a missing user is verified against a throwaway hash."""
        if user is None:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            stored_hash = self._dummy_hash
        else:
            stored_hash = user.password_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False
        return bool(matched) and user is not None

    # ------------------------------------------------------------------
    # Login / registration
    # ------------------------------------------------------------------

    async def login(
        self, email: str, password: str, fingerprint: ClientFingerprint
    ) -> AuthResult:
        email = normalize_email(email)
        with self._cache_required("login"):
            lockout = decode_lockout(await self.cache.get(lockout_key(email)))
            now_ms = self._now_ms()
            if lockout and lockout.is_locked(now_ms, self.settings.max_login_attempts):
                remaining = math.ceil((lockout.locked_until_ms - now_ms) / 60000)
                self.logger.warning(
                    "login_rejected_locked", email=email, remaining_minutes=remaining
                )
                raise AccountLockedError(remaining)

            user = self.store.get_user_by_email(email)
            if not self.verify_password(user, password):
                await self.record_failed_attempt(email)
                raise InvalidCredentialsError()

            result = await self._start_session(user, fingerprint)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def register(
        self,
        email: str,
        password: str,
        fingerprint: ClientFingerprint,
        *,
        name: Optional[str] = None,
    ) -> AuthResult:
        validate_password_strength(password)
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise EmailAlreadyExistsError()
        try:
            user = self.store.create_user(
                email, self.hash_password(password), name=name, role=Role.USER.value
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise EmailAlreadyExistsError() from exc
        self.logger.info("user_registered", user_id=user.id)
        with self._cache_required("register"):
            return await self._start_session(user, fingerprint)

    async def record_failed_attempt(self, email: str) -> LockoutState:
        """Count a failed login for ``email`` and lock it at the threshold.

        Once a lock has run out, the next failure starts a fresh budget.
        """
        state = await self.cache.record_failed_login(
            lockout_key(email),
            max_attempts=self.settings.max_login_attempts,
            lockout_seconds=self.settings.lockout_duration_seconds,
            now_ms=self._now_ms(),
        )
        self.logger.warning("login_failed", email=email, attempts=state.attempts)
        if state.attempts == self.settings.max_login_attempts:
            self.logger.warning(
                "account_locked", email=email, locked_until_ms=state.locked_until_ms
            )
        return state

    async def _start_session(
        self, user: User, fingerprint: ClientFingerprint
    ) -> AuthResult:
        # Any authenticated entry, login or registration, clears the lockout
        await self.cache.delete(lockout_key(user.email))
        session_id = fingerprint.session_id()
        await self.cache.set(
            session_key(user.id, session_id), "1", self.settings.session_ttl_seconds
        )
        pair = self.generate_tokens(user, session_id)
        await self._store_refresh_record(user.id, pair.refresh_token)
        return AuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
            user=user.public(),
        )

    def generate_tokens(self, user: User, session_id: str) -> TokenPair:
        return self.tokens.issue_pair(user, session_id)

    async def _store_refresh_record(self, user_id: str, refresh_token: str) -> None:
        ttl = self.settings.refresh_token_ttl_seconds
        await self.cache.set(refresh_flag_key(user_id), "valid", ttl)
        await self.cache.set(refresh_hash_key(user_id), sha256_hex(refresh_token), ttl)

    # ------------------------------------------------------------------
    # Refresh rotation
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Exchange a refresh token for a new pair; each token works once.

        Every rejection reaches the caller as the same generic
        ``InvalidRefreshTokenError``; the specific reason is only logged.
        """
        try:
            return await self._rotate_refresh_token(refresh_token)
        except InvalidRefreshTokenError as exc:
            self.logger.warning("refresh_rejected", reason=exc.reason)
            raise InvalidRefreshTokenError() from None

    async def _rotate_refresh_token(self, refresh_token: str) -> RefreshResult:
        payload = self.tokens.decode(refresh_token, REFRESH)
        if not payload:
            raise InvalidRefreshTokenError()
        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id or not session_id:
            raise InvalidRefreshTokenError()
        user = self.store.get_user(user_id)
        if not user:
            raise InvalidRefreshTokenError()

        with self._cache_required("refresh"):
            # Flag check, hash comparison and invalidation happen as one step
            outcome = await self.cache.consume_refresh_token(
                refresh_flag_key(user_id),
                refresh_hash_key(user_id),
                sha256_hex(refresh_token),
            )
            if outcome is RefreshConsumeResult.MISSING:
                raise RefreshTokenRevokedError()
            if outcome is RefreshConsumeResult.MISMATCH:
                raise InvalidRefreshTokenError()
            # Tokens inside the verification leeway are caught here; the
            # record is already gone so the user must log in again.
            if float(payload["exp"]) * 1000 < self._now_ms():
                raise RefreshTokenExpiredError()

            # The session id is stable across rotations
            pair = self.generate_tokens(user, session_id)
            await self._store_refresh_record(user.id, pair.refresh_token)
        self.logger.info("refresh_rotated", user_id=user.id)
        return RefreshResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def logout(self, user_id: str, access_token: Optional[str] = None) -> None:
        """Drop the user's refresh record; the session itself is left alone."""
        with self._cache_required("logout"):
            await self.cache.delete(refresh_flag_key(user_id), refresh_hash_key(user_id))
            if access_token:
                await self.revoke_access_token(access_token)
        self.logger.info("logout", user_id=user_id)

    async def revoke_access_token(self, access_token: str) -> None:
        """Blacklist a still-valid access token until it would have expired."""
        payload = self.tokens.decode(access_token, ACCESS)
        if not payload:
            return
        ttl = int(float(payload["exp"]) - self.clock())
        if ttl > 0:
            await self.cache.set(blacklist_key(access_token), "1", ttl)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        with self._cache_required("revoke_session"):
            await self.cache.delete(session_key(user_id, session_id))
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def change_role(self, user_id: str, role: str) -> User:
        try:
            role = Role(role).value
        except ValueError:
            raise ValidationError(
                f"Unknown role '{role}'", detail={"allowed": [r.value for r in Role]}
            )
        user = self.store.update_user_role(user_id, role)
        if not user:
            raise NotFoundError("User not found")
        with self._cache_required("change_role"):
            await self.permissions.invalidate(user_id)
        self.logger.info("user_role_updated", user_id=user_id, new_role=role)
        return user
