# boxoffice/orders/fulfillment.py
"""
Fulfillment: turn a verified order into tickets, exactly once.

Shape of a call:

1. read the order, its event and the event's ticket types (short read);
2. for paid orders ask the gateway whether the money arrived. This is the
   only slow step and it finishes before any transaction opens;
3. decide which ticket types the order is for and plan one ticket per unit;
4. one short write transaction: flip the order to COMPLETED (guarded, so a
   concurrent fulfillment makes this one a no-op), take inventory with
   guarded decrements, insert the tickets, convert the buyer's waitlist
   offer;
5. after commit, best effort: notify, deliver, run the waitlist cascade.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    OrderNotFound, OrderStateConflict, InsufficientInventory,
    TicketCountMismatch, PaymentVerificationFailed, PaymentAmountMismatch,
)
from ..gateway import GatewayError, Verification
from ..helpers import now_ts, new_id, to_iso
from ..infra.timings import timeit
from ..model.db import (
    Event, Order, OrderSelection, Ticket, TicketType,
    PaymentStatus, TicketStatus, WaitingStatus,
)
from ..model.inventory import take_units, ticket_types_for_event
from ..notify import NotificationKind
from ..office import BoxOffice
from ..ticket_codes import new_ticket_id
from .distribution import fallback_distribution
from .selections import (
    Selection, parse_selections, check_selections, totals_by_type,
)
from .waitlist import process_waiting_list


@dataclass
class Fulfillment:
    order_id: str
    completed: bool
    already_completed: bool
    # order | callback | gateway | fallback | existing
    source: str
    tickets: List[Dict[str, Any]] = field(default_factory=list)


class _LostRace(Exception):
    """Another fulfillment flipped the order first."""


def ticket_view(t: Ticket) -> Dict[str, Any]:
    return {
        "ticket_id": t.ticket_id,
        "ticket_type_id": t.ticket_type_id,
        "event_id": t.event_id,
        "user_id": t.user_id,
        "seq": t.seq,
        "status": t.status,
        "purchased_at": to_iso(t.purchased_at),
        "payload": t.payload,
    }


async def load_tickets(db: AsyncSession, order_id: str) -> List[Ticket]:
    rows = await db.scalars(
        select(Ticket).where(Ticket.order_id == order_id).order_by(Ticket.seq)
    )
    return list(rows.all())


async def find_order_id(office: BoxOffice, reference: str) -> Optional[str]:
    async with office.gated():
        async with office.sessions() as db:
            return await db.scalar(
                select(Order.id).where(Order.payment_reference == reference)
            )


def is_paid_order(order: Order, event: Event) -> bool:
    return not event.is_free and order.total_amount > 0


async def _existing(office: BoxOffice, order_id: str) -> Fulfillment:
    async with office.gated():
        async with office.sessions() as db:
            tickets = await load_tickets(db, order_id)
    return Fulfillment(
        order_id=order_id,
        completed=True,
        already_completed=True,
        source="existing",
        tickets=[ticket_view(t) for t in tickets],
    )


async def _verify_payment(office: BoxOffice, order: Order,
                          payment_reference: Optional[str]) -> Verification:
    ref = payment_reference or order.payment_reference
    if not ref or ref != order.payment_reference:
        raise PaymentVerificationFailed(
            ref, "Payment reference does not belong to this order"
        )
    try:
        async with timeit("gateway.verify"):
            verification = await office.gateway.verify(ref)
    except GatewayError as e:
        logger.warning("verify {} failed: {}", ref, e)
        raise PaymentVerificationFailed(ref) from e

    if verification["status"] != "success":
        raise PaymentVerificationFailed(
            ref, f"Payment not successful: {verification['status']}"
        )
    if int(verification["paid_amount"]) != int(order.total_amount):
        raise PaymentAmountMismatch(order.total_amount,
                                    int(verification["paid_amount"]))
    return verification


def _resolve_selections(
    order: Order,
    types: List[TicketType],
    callback_selections: Any,
    verification: Optional[Verification],
) -> tuple[List[Selection], str]:
    type_ids = [tt.id for tt in types]

    if order.selections:
        return [Selection(s.ticket_type_id, s.quantity)
                for s in order.selections], "order"

    if callback_selections:
        sels = parse_selections(callback_selections)
        check_selections(sels, type_ids)
        return sels, "callback"

    meta = (verification or {}).get("metadata") or {}
    if meta.get("selections"):
        sels = parse_selections(meta["selections"])
        check_selections(sels, type_ids)
        return sels, "gateway"

    return fallback_distribution(order.id, order.quantity, types), "fallback"


async def complete_order(
    office: BoxOffice,
    order_id: str,
    payment_reference: Optional[str] = None,
    *,
    selections: Any = None,
) -> Fulfillment:
    # ---- 1. read
    async with office.gated():
        async with office.sessions() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            event = await db.get(Event, order.event_id)
            types = await ticket_types_for_event(db, order.event_id)

    if order.payment_status == PaymentStatus.COMPLETED.value:
        return await _existing(office, order_id)
    if order.payment_status == PaymentStatus.REFUNDED.value:
        raise OrderStateConflict(order_id, "Order has been refunded")

    # ---- 2. gateway, outside any transaction
    verification = None
    if is_paid_order(order, event):
        verification = await _verify_payment(office, order, payment_reference)

    # ---- 3. plan
    sels, source = _resolve_selections(order, types, selections, verification)
    names = {tt.id: tt.name for tt in types}
    now = now_ts()
    plan: List[Ticket] = []
    for sel in sels:
        for _ in range(sel.quantity):
            ticket_id = new_ticket_id()
            plan.append(Ticket(
                id=new_id(),
                ticket_id=ticket_id,
                order_id=order.id,
                ticket_type_id=sel.ticket_type_id,
                event_id=order.event_id,
                user_id=order.buyer_id,
                seq=len(plan),
                status=TicketStatus.UNUSED.value,
                purchased_at=now,
                payload=office.signer.sign(ticket_id, order.event_id,
                                           order.buyer_id, now),
            ))
    if len(plan) != order.quantity:
        raise TicketCountMismatch(order.quantity, len(plan))

    # ---- 4. one short transaction
    try:
        async with timeit("db.fulfill"):
            async with office.gated():
                async with office.sessions() as db:
                    async with db.begin():
                        res = await db.execute(text("""
                            UPDATE orders
                            SET payment_status = :done, paid_at = :now
                            WHERE id = :id
                              AND payment_status IN (:pending, :failed)
                        """), {
                            "done": PaymentStatus.COMPLETED.value,
                            "pending": PaymentStatus.PENDING.value,
                            "failed": PaymentStatus.FAILED.value,
                            "now": now,
                            "id": order.id,
                        })
                        if res.rowcount != 1:
                            raise _LostRace()

                        # fixed row order so concurrent orders lock alike
                        per_type = sorted(totals_by_type(sels).items())
                        for tt_id, qty in per_type:
                            if not await take_units(db, tt_id,
                                                    order.event_id, qty):
                                raise InsufficientInventory(
                                    tt_id, names.get(tt_id), qty
                                )

                        if source != "order":
                            # persist what we settled on
                            for pos, sel in enumerate(sels):
                                db.add(OrderSelection(
                                    order_id=order.id,
                                    position=pos,
                                    ticket_type_id=sel.ticket_type_id,
                                    quantity=sel.quantity,
                                ))
                        db.add_all(plan)

                        await db.execute(text("""
                            UPDATE waiting_list SET status = :converted
                            WHERE event_id = :eid AND user_id = :uid
                              AND status = :offered
                        """), {
                            "converted": WaitingStatus.CONVERTED.value,
                            "offered": WaitingStatus.OFFERED.value,
                            "eid": order.event_id,
                            "uid": order.buyer_id,
                        })
    except _LostRace:
        current = await _current_status(office, order_id)
        if current == PaymentStatus.COMPLETED.value:
            logger.info("order {} completed concurrently", order_id)
            return await _existing(office, order_id)
        raise OrderStateConflict(
            order_id, f"Order cannot be completed from {current}"
        )
    except InsufficientInventory as e:
        logger.warning("order {} sold out on {}: {}", order_id,
                       e.ticket_type_id, e.message)
        raise

    logger.info("order {} fulfilled with {} ticket(s) ({})",
                order_id, len(plan), source)
    tickets = [ticket_view(t) for t in plan]

    # ---- 5. side effects, never rolled back
    await _after_fulfillment(office, order, tickets)

    return Fulfillment(
        order_id=order_id,
        completed=True,
        already_completed=False,
        source=source,
        tickets=tickets,
    )


async def _current_status(office: BoxOffice, order_id: str) -> Optional[str]:
    async with office.gated():
        async with office.sessions() as db:
            return await db.scalar(
                select(Order.payment_status).where(Order.id == order_id)
            )


async def _after_fulfillment(office: BoxOffice, order: Order,
                             tickets: List[Dict[str, Any]]) -> None:
    try:
        await office.notifier.notify(
            NotificationKind.TICKET_PURCHASED,
            order_id=order.id, user_id=order.buyer_id,
            event_id=order.event_id,
        )
    except Exception:
        logger.exception("notify failed for order {}", order.id)
    try:
        await office.delivery.deliver(order.id, order.buyer_email, tickets)
    except Exception:
        logger.exception("ticket delivery failed for order {}", order.id)
    try:
        await process_waiting_list(office, order.event_id)
    except Exception:
        logger.exception("waitlist cascade failed for event {}",
                         order.event_id)


async def mark_order_failed(office: BoxOffice, order_id: str) -> bool:
    """PENDING -> FAILED after the gateway reports a failed charge."""
    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                res = await db.execute(text("""
                    UPDATE orders SET payment_status = :failed
                    WHERE id = :id AND payment_status = :pending
                """), {
                    "failed": PaymentStatus.FAILED.value,
                    "pending": PaymentStatus.PENDING.value,
                    "id": order_id,
                })
    changed = res.rowcount == 1
    if changed:
        logger.info("order {} marked FAILED", order_id)
    return changed
