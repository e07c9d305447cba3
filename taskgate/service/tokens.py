from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from taskgate.config import Settings
from taskgate.logging import get_logger
from taskgate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


class TokenCodec:
    """HS256 JWT signing with one secret per token class.

    Access tokens are signed with ``jwt_secret`` and refresh tokens with
    ``jwt_refresh_secret``; a token of one class never verifies under the
    other's secret.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 30,
    ) -> None:
        self.settings = settings
        self.clock = clock
        # Allowance for small clock skew across nodes
        self.leeway_seconds = leeway_seconds

    def _secret(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_refresh_secret
            if token_type == REFRESH
            else self.settings.jwt_secret
        )
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret(payload.get("type", ACCESS)),
            signing_input.encode(),
            hashlib.sha256,
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def decode(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        """Verify ``token`` as ``token_type`` and return its payload, or None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        # compare_digest refuses non-ASCII str input, so compare bytes
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock() - self.leeway_seconds:
            return None
        return payload

    def _payload(self, user: User, session_id: str, token_type: str, ttl: int) -> dict[str, Any]:
        now = int(self.clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "type": token_type,
            "sid": session_id,
            # Distinguishes tokens minted within the same second
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }

    def issue_pair(self, user: User, session_id: str) -> TokenPair:
        access = self._payload(
            user, session_id, ACCESS, self.settings.access_token_ttl_seconds
        )
        refresh = self._payload(
            user, session_id, REFRESH, self.settings.refresh_token_ttl_seconds
        )
        return TokenPair(
            access_token=self.encode(access),
            refresh_token=self.encode(refresh),
            access_expires_at=access["exp"],
            refresh_expires_at=refresh["exp"],
        )
