from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_evt(evt_id: str) -> str: return f"whevt:{evt_id}"


class EventLogStore:
    """Webhook event ids as NX keys with a TTL (default one week)."""

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def has_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        return bool(await self.r.exists(k_evt(evt_id)))

    async def mark_seen(self, evt_id: Optional[str], evt_type: str) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(
            k_evt(evt_id), evt_type or "1", nx=True, ex=self.ttl
        )
        return bool(ok)
