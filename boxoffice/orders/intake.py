from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Union

from loguru import logger
from sqlalchemy import delete

from ..errors import (
    EventUnavailable, InsufficientInventory, CapacityExceeded,
    PurchasesDisabled, PaymentInitializationFailed,
)
from ..gateway import GatewayError
from ..helpers import now_ts, new_id
from ..infra.timings import timeit
from ..model.db import (
    Event, Order, OrderSelection, PaymentStatus, PUBLISHED,
)
from ..model.inventory import ticket_types_for_event, issued_count
from ..office import BoxOffice, Buyer
from .fulfillment import Fulfillment, complete_order
from .selections import (
    parse_selections, check_selections, totals_by_type, to_metadata,
)


@dataclass
class Checkout:
    order_id: str
    reference: str
    authorization_url: str
    amount: int
    platform_fee: int
    currency: str


def _check_event(event: Optional[Event], event_id: str) -> Event:
    if event is None:
        raise EventUnavailable(event_id, "event not found")
    if event.published_status != PUBLISHED:
        raise EventUnavailable(event_id, "event is not published")
    if event.is_cancelled:
        raise EventUnavailable(event_id, "event is cancelled")
    if event.start_at < now_ts():
        raise EventUnavailable(event_id, "event has already started")
    return event


async def initiate_order(
    office: BoxOffice,
    buyer: Buyer,
    event_id: str,
    selections: Any,
    notes: Optional[str] = None,
    callback_url: Optional[str] = None,
) -> Union[Checkout, Fulfillment]:
    """
    Validate a purchase and open an order for it.

    Free events are fulfilled on the spot and return a ``Fulfillment``.
    Paid ones open a gateway charge and return a ``Checkout`` whose
    ``authorization_url`` the buyer is sent to.
    """
    if not office.sales_enabled:
        raise PurchasesDisabled()

    sels = parse_selections(selections)

    async with office.gated():
        async with office.sessions() as db:
            event = _check_event(await db.get(Event, event_id), event_id)
            types = await ticket_types_for_event(db, event_id)
            check_selections(sels, [tt.id for tt in types])
            by_id = {tt.id: tt for tt in types}
            wanted = totals_by_type(sels)

            # optimistic: the guarded decrement at fulfillment is the real check
            for tt_id, qty in wanted.items():
                tt = by_id[tt_id]
                if qty > tt.quantity:
                    raise InsufficientInventory(tt.id, tt.name, qty,
                                                tt.quantity)

            quantity = sum(wanted.values())
            if event.attendee_limit is not None:
                issued = await issued_count(db, event_id)
                if issued + quantity > event.attendee_limit:
                    raise CapacityExceeded(event.attendee_limit, issued,
                                           quantity)

    if event.is_free:
        total = 0
    else:
        total = sum(by_id[tt_id].price * qty for tt_id, qty in wanted.items())
    fee = await office.fees.platform_fee(event.organizer_id, total)

    order = Order(
        id=new_id(),
        event_id=event_id,
        buyer_id=buyer.user_id,
        buyer_email=buyer.email,
        payment_reference=f"order_{new_id()}",
        total_amount=total,
        platform_fee=fee,
        quantity=quantity,
        currency=event.currency,
        payment_status=PaymentStatus.PENDING.value,
        notes=notes,
        created_at=now_ts(),
    )
    order.selections = [
        OrderSelection(position=pos, ticket_type_id=s.ticket_type_id,
                       quantity=s.quantity)
        for pos, s in enumerate(sels)
    ]
    async with timeit("db.add_order"):
        async with office.gated():
            async with office.sessions() as db:
                async with db.begin():
                    db.add(order)
    logger.info("order {} opened: event={} buyer={} qty={} total={}",
                order.id, event_id, buyer.user_id, quantity, total)

    if total == 0:
        return await complete_order(office, order.id)

    try:
        async with timeit("gateway.initialize"):
            charge = await office.gateway.initialize(
                total,
                order.payment_reference,
                callback_url or office.callback_url,
                {
                    "order_id": order.id,
                    "event_id": event_id,
                    "buyer_id": buyer.user_id,
                    "selections": to_metadata(sels),
                },
                email=buyer.email,
            )
    except GatewayError as e:
        logger.warning("payment init failed for order {}: {}", order.id, e)
        await _discard_order(office, order.id)
        raise PaymentInitializationFailed() from e

    return Checkout(
        order_id=order.id,
        reference=order.payment_reference,
        authorization_url=charge["authorization_url"],
        amount=total,
        platform_fee=fee,
        currency=order.currency,
    )


async def _discard_order(office: BoxOffice, order_id: str) -> None:
    # compensating action: the order never reached the gateway
    async with office.gated():
        async with office.sessions() as db:
            async with db.begin():
                await db.execute(delete(OrderSelection).where(
                    OrderSelection.order_id == order_id))
                await db.execute(delete(Order).where(Order.id == order_id))
