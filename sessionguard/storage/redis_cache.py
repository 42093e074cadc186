from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis


class RedisCache:
    """Read-through cache of derived principal data.

    Entries are never consulted for token validity; the session service only
    reads them for profile lookups and evicts them whenever credentials or
    authorization-relevant state change.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    PRINCIPAL_TTL_SECONDS = 300

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _principal_key(user_id: str) -> str:
        return f"auth:principal:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        from redis import Redis

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_principal(
        self, user_id: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None
    ) -> None:
        await self.client.set(
            self._principal_key(user_id),
            json.dumps(data, default=str),
            ex=max(1, ttl_seconds or self.PRINCIPAL_TTL_SECONDS),
        )

    async def get_principal(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(self._principal_key(user_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            await self.client.delete(self._principal_key(user_id))
            return None
        return data if isinstance(data, dict) else None

    async def invalidate_principal(self, user_id: str) -> None:
        await self.client.delete(self._principal_key(user_id))

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
