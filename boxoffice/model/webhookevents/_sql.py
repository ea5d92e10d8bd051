from __future__ import annotations
from typing import Callable, AsyncContextManager, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import WebhookEventSeen
from ...helpers import now_ts


class WebhookEventStore:
    """Remembers processed gateway events in the orders database."""

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True if this is the first time we see ``evt_id``."""
        if not evt_id:
            return True
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(WebhookEventSeen(
                        idempotency_key=evt_id, created_at=now_ts(),
                    ))
        except IntegrityError:
            return False
        return True

    async def forget_event(self, evt_id: Optional[str]) -> None:
        # lets the gateway redeliver an event we failed to process
        if not evt_id:
            return
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    delete(WebhookEventSeen).where(
                        WebhookEventSeen.idempotency_key == evt_id
                    )
                )
