# boxoffice/orders/waitlist.py
"""
Waiting list cascade.

When capacity frees up (refund, sweep of expired offers, a purchase that
left units unclaimed) the oldest WAITING entries are OFFERED a time-boxed
chance to buy. An offer is a notification, not a hold: whoever completes a
purchase first gets the units.

Each run offers as many WAITING entries as there are units in stock.
Offers already out are not counted against stock.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, func, text

from ..errors import EventUnavailable, AlreadyWaiting
from ..helpers import now_ts, to_iso
from ..model.db import (
    Event, TicketType, WaitingListEntry, WaitingStatus, PUBLISHED,
)
from ..notify import NotificationKind
from ..office import BoxOffice

LIVE_ENTRY_STATUSES = (WaitingStatus.WAITING.value,
                       WaitingStatus.OFFERED.value)


def entry_view(e: WaitingListEntry) -> Dict[str, Any]:
    return {
        "id": e.id,
        "event_id": e.event_id,
        "user_id": e.user_id,
        "status": e.status,
        "created_at": to_iso(e.created_at),
        "offer_expires_at": to_iso(e.offer_expires_at),
    }


async def join_waiting_list(office: BoxOffice, event_id: str,
                            user_id: str) -> Dict[str, Any]:
    async with office.gated():
        async with office.sessions() as db:
            event = await db.get(Event, event_id)
            if event is None:
                raise EventUnavailable(event_id, "event not found")
            if event.published_status != PUBLISHED or event.is_cancelled:
                raise EventUnavailable(event_id, "event is not open")
            live = await db.scalar(
                select(func.count(WaitingListEntry.id)).where(
                    WaitingListEntry.event_id == event_id,
                    WaitingListEntry.user_id == user_id,
                    WaitingListEntry.status.in_(LIVE_ENTRY_STATUSES),
                )
            )
    if live:
        raise AlreadyWaiting(event_id, user_id)

    entry = WaitingListEntry(
        event_id=event_id,
        user_id=user_id,
        status=WaitingStatus.WAITING.value,
        created_at=now_ts(),
    )
    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                db.add(entry)
    logger.info("user {} joined waiting list for event {} (#{})",
                user_id, event_id, entry.id)
    return entry_view(entry)


async def process_waiting_list(
    office: BoxOffice, event_id: str, now: Optional[float] = None
) -> List[Dict[str, Any]]:
    """Offer freed capacity to the head of the queue. Returns the offers."""
    now = now_ts() if now is None else now
    expires = now + office.offer_window_seconds

    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                # stale offers first; this is also the write that takes the
                # lock before we count
                await db.execute(text("""
                    UPDATE waiting_list SET status = :expired
                    WHERE event_id = :eid AND status = :offered
                      AND offer_expires_at < :now
                """), {
                    "expired": WaitingStatus.EXPIRED.value,
                    "offered": WaitingStatus.OFFERED.value,
                    "eid": event_id,
                    "now": now,
                })

                available = await db.scalar(
                    select(func.coalesce(func.sum(TicketType.quantity), 0))
                    .where(TicketType.event_id == event_id,
                           TicketType.quantity > 0)
                )
                slots = int(available or 0)
                if slots <= 0:
                    return []

                head = (await db.scalars(
                    select(WaitingListEntry)
                    .where(WaitingListEntry.event_id == event_id,
                           WaitingListEntry.status ==
                           WaitingStatus.WAITING.value)
                    .order_by(WaitingListEntry.id)
                    .limit(slots)
                )).all()

                offered: List[WaitingListEntry] = []
                for entry in head:
                    res = await db.execute(text("""
                        UPDATE waiting_list
                        SET status = :offered, offer_expires_at = :exp
                        WHERE id = :id AND status = :waiting
                    """), {
                        "offered": WaitingStatus.OFFERED.value,
                        "waiting": WaitingStatus.WAITING.value,
                        "exp": expires,
                        "id": entry.id,
                    })
                    if res.rowcount == 1:
                        entry.status = WaitingStatus.OFFERED.value
                        entry.offer_expires_at = expires
                        offered.append(entry)

    if offered:
        logger.info("event {}: offered {} slot(s) to waiting list",
                    event_id, len(offered))
    for entry in offered:
        try:
            await office.notifier.notify(
                NotificationKind.TICKET_AVAILABLE,
                user_id=entry.user_id, event_id=event_id,
            )
        except Exception:
            logger.exception("notify failed for waiting entry {}", entry.id)
    return [entry_view(e) for e in offered]


async def expire_offers(office: BoxOffice,
                        now: Optional[float] = None) -> Dict[str, Any]:
    """
    Scheduled sweep: lapse every overdue offer, then re-run the cascade for
    each event that had one.
    """
    now = now_ts() if now is None else now
    async with office.gated():
        async with office.sessions() as db:
            events = (await db.scalars(
                select(WaitingListEntry.event_id)
                .where(WaitingListEntry.status ==
                       WaitingStatus.OFFERED.value,
                       WaitingListEntry.offer_expires_at < now)
                .distinct()
            )).all()
    if not events:
        return {"expired": 0, "events": [], "offered": 0}

    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                res = await db.execute(text("""
                    UPDATE waiting_list SET status = :expired
                    WHERE status = :offered AND offer_expires_at < :now
                """), {
                    "expired": WaitingStatus.EXPIRED.value,
                    "offered": WaitingStatus.OFFERED.value,
                    "now": now,
                })
                expired = res.rowcount

    offered = 0
    for event_id in events:
        offered += len(await process_waiting_list(office, event_id, now=now))
    if expired:
        logger.info("expired {} offer(s) across {} event(s), re-offered {}",
                    expired, len(events), offered)
    return {"expired": expired, "events": list(events), "offered": offered}
