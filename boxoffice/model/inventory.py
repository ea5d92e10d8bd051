# model/inventory.py
"""
Inventory ledger over ``ticket_types.quantity``.

The remaining-units counter is the single hot shared resource. It is only
ever moved by guarded single-statement updates:

- take:    quantity = quantity - n  WHERE quantity >= n
- restore: quantity = quantity + n

Both run on the caller's session, inside the caller's transaction, so the
decrement commits or rolls back together with the tickets it pays for. A
guarded UPDATE holds the row lock (PostgreSQL) or the write lock (SQLite)
until commit, which is what keeps two buyers from both taking the last unit.
"""

from __future__ import annotations
import time
from typing import Any, Dict, List

from sqlalchemy import text, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .db import TicketType, Ticket, LIVE_TICKET_STATUSES
from ..helpers import to_iso


async def take_units(
    db: AsyncSession, ticket_type_id: str, event_id: str, qty: int
) -> bool:
    """
    Atomically decrement remaining units if enough are left.
    Returns False (and changes nothing) when fewer than ``qty`` remain.
    """
    res = await db.execute(text("""
        UPDATE ticket_types
        SET quantity = quantity - :q
        WHERE id = :id AND event_id = :eid AND quantity >= :q
    """), {"id": ticket_type_id, "eid": event_id, "q": qty})
    return res.rowcount == 1


async def restore_units(
    db: AsyncSession, ticket_type_id: str, qty: int
) -> None:
    if qty <= 0:
        return
    await db.execute(text("""
        UPDATE ticket_types
        SET quantity = quantity + :q
        WHERE id = :id
    """), {"id": ticket_type_id, "q": qty})


async def ticket_types_for_event(
    db: AsyncSession, event_id: str
) -> List[TicketType]:
    # catalogue order: creation time, then id for ties
    rows = await db.scalars(
        select(TicketType)
        .where(TicketType.event_id == event_id)
        .order_by(TicketType.created_at, TicketType.id)
    )
    return list(rows.all())


async def issued_count(db: AsyncSession, event_id: str) -> int:
    """Tickets currently holding a seat (UNUSED or USED)."""
    n = await db.scalar(
        select(func.count(Ticket.id)).where(
            Ticket.event_id == event_id,
            Ticket.status.in_(LIVE_TICKET_STATUSES),
        )
    )
    return int(n or 0)


async def compute_inventory(
    db: AsyncSession, event_id: str
) -> Dict[str, Any]:
    """
    Returns:
      {
        "event_id": ...,
        "types": {
          <ticket_type_id>: {"name": ..., "price": ..., "available": ...,
                             "sold": ..., "sold_out": ...},
        },
        "available": <sum>, "sold": <sum>, "timestamp": ...
      }
    """
    types = await ticket_types_for_event(db, event_id)
    sold_rows = (await db.execute(
        select(Ticket.ticket_type_id, func.count(Ticket.id))
        .where(
            Ticket.event_id == event_id,
            Ticket.status.in_(LIVE_TICKET_STATUSES),
        )
        .group_by(Ticket.ticket_type_id)
    )).all()
    sold = {tt_id: int(n) for tt_id, n in sold_rows}

    out: Dict[str, Any] = {}
    for tt in types:
        out[tt.id] = {
            "name": tt.name,
            "price": tt.price,
            "available": tt.quantity,
            "sold": sold.get(tt.id, 0),
            "sold_out": tt.quantity <= 0,
        }
    return {
        "event_id": event_id,
        "types": out,
        "available": sum(v["available"] for v in out.values()),
        "sold": sum(v["sold"] for v in out.values()),
        "timestamp": to_iso(time.time()),
    }
