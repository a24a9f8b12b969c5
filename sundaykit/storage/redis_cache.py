from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Optional

import redis.asyncio as aioredis

from sundaykit.storage.models import MonitorClaim


class RedisCache:
    """Redis leases guarding one active monitor per user across processes."""

    # Delete the lease only while the caller still owns it
    _RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local claim = cjson.decode(raw)
if claim['owner'] == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    @staticmethod
    def _key(kind: str, user_id: str) -> str:
        return f"monitor:{kind}:{user_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on it for leases."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_monitor(
        self, kind: str, user_id: str, owner: str, ttl_seconds: float
    ) -> bool:
        key = self._key(kind, user_id)
        claim = MonitorClaim.new(kind, user_id, owner, ttl_seconds)
        payload = json.dumps(
            {
                "owner": owner,
                "claimed_at": claim.claimed_at.isoformat(),
                "expires_at": claim.expires_at.isoformat(),
            }
        )
        ttl = max(1, int(ttl_seconds))
        if await self.client.set(key, payload, nx=True, ex=ttl):
            return True
        current = await self.get_monitor_claim(kind, user_id)
        if current and current.owner == owner:
            await self.client.set(key, payload, ex=ttl)
            return True
        return False

    async def release_monitor(self, kind: str, user_id: str, owner: str) -> None:
        await self._release(keys=[self._key(kind, user_id)], args=[owner])

    async def get_monitor_claim(self, kind: str, user_id: str) -> Optional[MonitorClaim]:
        raw = await self.client.get(self._key(kind, user_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            claimed_at = datetime.fromisoformat(data["claimed_at"])
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (ValueError, KeyError, TypeError):
            # Unreadable lease; treat as held until Redis expires it
            claimed_at = datetime.utcnow()
            expires_at = claimed_at + timedelta(seconds=1)
            data = {"owner": "unknown"}
        return MonitorClaim(
            kind=kind,
            user_id=user_id,
            owner=data.get("owner", "unknown"),
            claimed_at=claimed_at,
            expires_at=expires_at,
        )

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
