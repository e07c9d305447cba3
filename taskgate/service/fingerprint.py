from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

_IPV4_MAPPED_PREFIX = "::ffff:"


def normalize_ip(forwarded_for: Optional[str], remote_addr: Optional[str]) -> str:
    """Pick the originating client address.

    The first ``X-Forwarded-For`` hop wins over the socket peer, and
    IPv4-mapped IPv6 addresses are reduced to plain IPv4.
    """
    candidate = ""
    if forwarded_for:
        candidate = forwarded_for.split(",")[0].strip()
    if not candidate:
        candidate = (remote_addr or "").strip()
    if candidate.lower().startswith(_IPV4_MAPPED_PREFIX):
        candidate = candidate[len(_IPV4_MAPPED_PREFIX):]
    return candidate or "unknown"


@dataclass(frozen=True)
class ClientFingerprint:
    user_agent: str
    ip: str

    @classmethod
    def from_request_parts(
        cls,
        user_agent: Optional[str],
        forwarded_for: Optional[str],
        remote_addr: Optional[str],
    ) -> "ClientFingerprint":
        return cls(
            user_agent=user_agent or "unknown",
            ip=normalize_ip(forwarded_for, remote_addr),
        )

    def session_id(self) -> str:
        """Stable 16 hex char id; the same device and address map to one session."""
        digest = hashlib.sha256(f"{self.user_agent}:{self.ip}".encode()).hexdigest()
        return digest[:16]

    def rate_subject(self, user_id: Optional[str] = None) -> str:
        return f"{self.ip}:{self.user_agent}:{user_id or 'anonymous'}"
