from __future__ import annotations
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


class EventLogStore:
    """Webhook event ids in the `webhook_events` table (id is the PK)."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def has_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return False
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT 1 FROM webhook_events WHERE id = :id
                """), {"id": evt_id})).first()
        return row is not None

    async def mark_seen(self, evt_id: Optional[str], evt_type: str) -> bool:
        """True if the id was new, False if it was already recorded."""
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events(id, type, received_at)
                  VALUES (:id, :type, :at)
                  ON CONFLICT (id) DO NOTHING
                  RETURNING id
                """), {
                    "id": evt_id, "type": evt_type or "", "at": now_ts()
                })).first()
        return row is not None
