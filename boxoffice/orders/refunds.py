from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger
from sqlalchemy import select, func, text

from ..errors import (
    OrderNotFound, OrderStateConflict, PermissionDenied, RefundGatewayFailed,
)
from ..gateway import GatewayError
from ..helpers import now_ts
from ..infra.timings import timeit
from ..model.db import (
    Event, Order, Ticket, PaymentStatus, RefundStatus, TicketStatus,
    LIVE_TICKET_STATUSES,
)
from ..model.inventory import restore_units
from ..notify import NotificationKind
from ..office import BoxOffice, Actor
from .fulfillment import is_paid_order
from .waitlist import process_waiting_list


@dataclass
class RefundState:
    order_id: str
    payment_status: str
    refund_status: Optional[str]
    refunded_tickets: int = 0


async def _load(office: BoxOffice, order_id: str) -> tuple[Order, Event]:
    async with office.gated():
        async with office.sessions() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            event = await db.get(Event, order.event_id)
    return order, event


async def _notify(office: BoxOffice, kind: NotificationKind,
                  order: Order) -> None:
    try:
        await office.notifier.notify(kind, order_id=order.id,
                                     user_id=order.buyer_id,
                                     event_id=order.event_id)
    except Exception:
        logger.exception("notify {} failed for order {}", kind.value,
                         order.id)


async def initiate_refund(office: BoxOffice, order_id: str, actor: Actor,
                          reason: Optional[str] = None) -> RefundState:
    order, event = await _load(office, order_id)
    if not actor.is_admin and actor.user_id != event.organizer_id:
        raise PermissionDenied("Only the event organizer or an admin can "
                               "request a refund")
    if order.payment_status != PaymentStatus.COMPLETED.value:
        raise OrderStateConflict(order_id, "Only completed orders can be "
                                           "refunded")
    if order.refund_status is not None:
        raise OrderStateConflict(
            order_id, f"Refund already {order.refund_status.lower()}"
        )

    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                res = await db.execute(text("""
                    UPDATE orders
                    SET refund_status = :initiated, refund_reason = :reason
                    WHERE id = :id AND payment_status = :completed
                      AND refund_status IS NULL
                """), {
                    "initiated": RefundStatus.INITIATED.value,
                    "completed": PaymentStatus.COMPLETED.value,
                    "reason": reason,
                    "id": order_id,
                })
    if res.rowcount != 1:
        raise OrderStateConflict(order_id, "Order changed concurrently")

    logger.info("refund requested for order {} by {}", order_id,
                actor.user_id)
    await _notify(office, NotificationKind.REFUND_REQUESTED, order)
    return RefundState(order_id, order.payment_status,
                       RefundStatus.INITIATED.value)


async def process_refund(office: BoxOffice, order_id: str, actor: Actor,
                         approve: bool,
                         notes: Optional[str] = None) -> RefundState:
    """
    Approve or reject an INITIATED refund.

    Approval asks the gateway first; if it refuses nothing changes locally.
    Otherwise the order, its tickets and the ticket type counters move
    together in one transaction and the waitlist gets a chance at the
    freed seats.
    """
    if not actor.is_admin:
        raise PermissionDenied("Only admins can process refunds")

    order, event = await _load(office, order_id)
    if order.refund_status != RefundStatus.INITIATED.value:
        raise OrderStateConflict(order_id, "No pending refund request")

    if not approve:
        async with office.gated():
            async with office.sessions() as db:
                async with db.begin():
                    res = await db.execute(text("""
                        UPDATE orders SET refund_status = NULL
                        WHERE id = :id AND refund_status = :initiated
                    """), {
                        "initiated": RefundStatus.INITIATED.value,
                        "id": order_id,
                    })
        if res.rowcount != 1:
            raise OrderStateConflict(order_id, "Order changed concurrently")
        logger.info("refund for order {} rejected by {}: {}", order_id,
                    actor.user_id, notes or "-")
        return RefundState(order_id, order.payment_status, None)

    if is_paid_order(order, event) and order.payment_reference:
        try:
            async with timeit("gateway.refund"):
                result = await office.gateway.refund(
                    order.payment_reference, order.total_amount
                )
        except GatewayError as e:
            logger.warning("gateway refund failed for order {}: {}",
                           order_id, e)
            raise RefundGatewayFailed() from e
        if result.get("status") != "success":
            logger.warning("gateway refused refund for order {}: {}",
                           order_id, result)
            raise RefundGatewayFailed()

    async with timeit("db.refund"):
        async with office.gated():
            async with office.sessions() as db:
                async with db.begin():
                    res = await db.execute(text("""
                        UPDATE orders
                        SET payment_status = :refunded,
                            refund_status = :processed,
                            refunded_at = :now
                        WHERE id = :id AND payment_status = :completed
                          AND refund_status = :initiated
                    """), {
                        "refunded": PaymentStatus.REFUNDED.value,
                        "processed": RefundStatus.PROCESSED.value,
                        "completed": PaymentStatus.COMPLETED.value,
                        "initiated": RefundStatus.INITIATED.value,
                        "now": now_ts(),
                        "id": order_id,
                    })
                    if res.rowcount != 1:
                        raise OrderStateConflict(order_id,
                                                 "Order changed concurrently")

                    rows = (await db.execute(
                        select(Ticket.ticket_type_id, func.count(Ticket.id))
                        .where(Ticket.order_id == order_id,
                               Ticket.status.in_(LIVE_TICKET_STATUSES))
                        .group_by(Ticket.ticket_type_id)
                    )).all()
                    per_type: Dict[str, int] = {tt: int(n) for tt, n in rows}

                    await db.execute(text("""
                        UPDATE tickets SET status = :refunded
                        WHERE order_id = :id AND status IN (:unused, :used)
                    """), {
                        "refunded": TicketStatus.REFUNDED.value,
                        "unused": TicketStatus.UNUSED.value,
                        "used": TicketStatus.USED.value,
                        "id": order_id,
                    })
                    for tt_id, n in sorted(per_type.items()):
                        await restore_units(db, tt_id, n)

    refunded = sum(per_type.values())
    logger.info("refund for order {} processed: {} ticket(s) released",
                order_id, refunded)

    await _notify(office, NotificationKind.REFUND_PROCESSED, order)
    try:
        await process_waiting_list(office, order.event_id)
    except Exception:
        logger.exception("waitlist cascade failed for event {}",
                         order.event_id)

    return RefundState(order_id, PaymentStatus.REFUNDED.value,
                       RefundStatus.PROCESSED.value, refunded)
