from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed session store and notification queues.

    Sessions are stored under the bearer token itself with a native expiry.
    Notifications are JSON documents pushed onto one list per topic, for a
    separate worker to deliver.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        queue_prefix: str = "notify:",
    ):
        self.redis_url = redis_url
        self.queue_prefix = queue_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_session(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))

    async def get_session(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, TypeError):
            return {}
        return data if isinstance(data, dict) else {}

    async def session_ttl(self, key: str) -> int:
        """Remaining lifetime in seconds, -2 when the key does not exist."""
        return int(await self.client.ttl(key))

    async def publish(self, recipient: str, body: str, topic: str) -> None:
        message = json.dumps({"email": recipient, "message": body})
        await self.client.lpush(f"{self.queue_prefix}{topic}", message)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
