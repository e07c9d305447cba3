from __future__ import annotations

import json
from typing import Dict, List, Optional, Tuple

from taskgate.logging import get_logger
from taskgate.storage.cache import Cache, permissions_key
from taskgate.storage.models import Role

logger = get_logger(__name__)

ROLE_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    Role.ADMIN.value: ("users:read", "users:write", "tasks:read", "tasks:write"),
    Role.MANAGER.value: ("users:read", "tasks:read", "tasks:write"),
    Role.USER.value: ("tasks:read", "tasks:write:own"),
}


def permissions_for_role(role: str) -> List[str]:
    """Static role table lookup; unknown roles get no permissions."""
    return list(ROLE_PERMISSIONS.get(role, ()))


class PermissionResolver:
    """Memoizes role-derived permission sets in the cache.

    The cached list is never a source of truth: a miss or an unreadable
    entry is recomputed from ``ROLE_PERMISSIONS``.
    """

    def __init__(self, cache: Cache, *, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def resolve(self, user_id: str, role: str) -> List[str]:
        key = permissions_key(user_id)
        cached = await self.cache.get(key)
        parsed = self._parse(cached)
        if parsed is not None:
            return parsed
        permissions = permissions_for_role(role)
        await self.cache.set(key, json.dumps(permissions), self.ttl_seconds)
        return permissions

    async def invalidate(self, user_id: str) -> None:
        await self.cache.delete(permissions_key(user_id))

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[List[str]]:
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("permission_cache_malformed")
            return None
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            return None
        return value
