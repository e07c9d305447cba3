from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class Role(str, Enum):
    """Roles known to the permission table."""

    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    role: str = Role.USER.value
    created_at: datetime = field(default_factory=datetime.utcnow)

    def public(self) -> Dict[str, Optional[str]]:
        """Projection safe to return to clients; never includes the hash."""
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}
