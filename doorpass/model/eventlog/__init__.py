# model/eventlog/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

from ...infra.sql import Gated
from sqlalchemy.ext.asyncio import AsyncSession

BACKEND = os.getenv("EVENTLOG_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import EventLogStore as _EventLogStore
else:
    from ._sql import EventLogStore as _EventLogStore


# picks the store class chosen by EVENTLOG_BACKEND
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None,
              ttl_seconds: int = 7 * 24 * 3600):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "EventLogStore(redis) requires r=redis.Redis"
            )
        return _EventLogStore(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("EventLogStore(sql) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("EventLogStore(sql) requires gated=Gated")
    return _EventLogStore(db=db, gated=gated)


EventLogStore = _EventLogStore
__all__ = ["EventLogStore", "new_store", "BACKEND"]
