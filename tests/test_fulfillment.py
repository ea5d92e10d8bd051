import asyncio

import pytest

from boxoffice.errors import (
    InsufficientInventory, OrderNotFound, PaymentAmountMismatch,
    PaymentVerificationFailed, TicketCountMismatch, TicketTypeNotFound,
)
from boxoffice.gateway import GatewayError, MockPay
from boxoffice.helpers import new_id, now_ts
from boxoffice.model.db import Order, OrderSelection, PaymentStatus
from boxoffice.office import Buyer
from boxoffice.orders import fulfillment
from boxoffice.orders.fulfillment import complete_order, mark_order_failed
from boxoffice.orders.intake import initiate_order

pytestmark = pytest.mark.anyio


async def _checkout(office, ev, selections, user="buyer-1"):
    return await initiate_order(
        office, Buyer(user_id=user, email=f"{user}@example.com"), ev.id,
        selections,
    )


async def _bare_order(database, ev, quantity, selections=(), total=0):
    """An order row written by hand, e.g. one that predates selections."""
    order_id = new_id()
    async with database.sessions() as db:
        async with db.begin():
            order = Order(
                id=order_id, event_id=ev.id, buyer_id="legacy-buyer",
                buyer_email="legacy@example.com",
                payment_reference=f"order_{new_id()}",
                total_amount=total, platform_fee=0, quantity=quantity,
                currency="ngn", payment_status=PaymentStatus.PENDING.value,
                created_at=now_ts(),
            )
            order.selections = [
                OrderSelection(position=i, ticket_type_id=tt, quantity=q)
                for i, (tt, q) in enumerate(selections)
            ]
            db.add(order)
    return order_id


async def test_paid_order_completes_after_verification(
        office, gateway, seed_event, fetch, notifier, delivery):
    ev = await seed_event([("A", 2500, 5), ("B", 1000, 5)])
    checkout = await _checkout(office, ev,
                               [(ev.types["A"], 2), (ev.types["B"], 1)])
    gateway.settle(checkout.reference, "succeeded")

    result = await complete_order(office, checkout.order_id,
                                  checkout.reference)

    assert result.completed and not result.already_completed
    assert result.source == "order"
    assert len(result.tickets) == 3
    assert [t["seq"] for t in result.tickets] == [0, 1, 2]
    assert len({t["ticket_id"] for t in result.tickets}) == 3
    for t in result.tickets:
        claims = office.signer.verify(t["payload"])
        assert claims["ticketId"] == t["ticket_id"]
        assert claims["eventId"] == ev.id
        assert claims["userId"] == "buyer-1"

    assert await fetch.remaining(ev.types["A"]) == 3
    assert await fetch.remaining(ev.types["B"]) == 4
    order = await fetch.order(checkout.order_id)
    assert order.payment_status == PaymentStatus.COMPLETED.value
    assert order.paid_at is not None
    assert len(await fetch.tickets(checkout.order_id)) == order.quantity

    assert "TICKET_PURCHASED" in notifier.kinds()
    assert delivery.deliveries == [
        (checkout.order_id, "buyer-1@example.com", 3)
    ]


async def test_second_completion_is_a_no_op(office, gateway, seed_event,
                                            fetch):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 2)])
    gateway.settle(checkout.reference, "succeeded")

    first = await complete_order(office, checkout.order_id)
    again = await complete_order(office, checkout.order_id)

    assert again.already_completed
    assert again.source == "existing"
    assert [t["ticket_id"] for t in again.tickets] == \
        [t["ticket_id"] for t in first.tickets]
    assert await fetch.remaining(ev.types["A"]) == 3


async def test_concurrent_completions_issue_one_ticket_set(
        office, gateway, seed_event, fetch):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 2)])
    gateway.settle(checkout.reference, "succeeded")

    results = await asyncio.gather(*[
        complete_order(office, checkout.order_id) for _ in range(4)
    ])

    assert sum(1 for r in results if not r.already_completed) == 1
    assert len(await fetch.tickets(checkout.order_id)) == 2
    assert await fetch.remaining(ev.types["A"]) == 3


async def test_underpayment_is_rejected(office, gateway, seed_event, fetch):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 2)])
    assert checkout.amount == 5000
    gateway.settle(checkout.reference, "succeeded", paid_amount=4999)

    with pytest.raises(PaymentAmountMismatch) as exc:
        await complete_order(office, checkout.order_id)

    assert (exc.value.expected, exc.value.paid) == (5000, 4999)
    order = await fetch.order(checkout.order_id)
    assert order.payment_status == PaymentStatus.PENDING.value
    assert await fetch.tickets(checkout.order_id) == []
    assert await fetch.remaining(ev.types["A"]) == 5


@pytest.mark.parametrize("outcome", [None, "failed", "canceled"])
async def test_unpaid_charge_is_not_verified(office, gateway, seed_event,
                                             fetch, outcome):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 1)])
    if outcome:
        gateway.settle(checkout.reference, outcome)

    with pytest.raises(PaymentVerificationFailed):
        await complete_order(office, checkout.order_id)
    assert await fetch.remaining(ev.types["A"]) == 5


async def test_foreign_reference_is_rejected(office, gateway, seed_event):
    ev = await seed_event([("A", 2500, 5)])
    mine = await _checkout(office, ev, [(ev.types["A"], 1)], user="me")
    theirs = await _checkout(office, ev, [(ev.types["A"], 1)], user="them")
    gateway.settle(theirs.reference, "succeeded")

    with pytest.raises(PaymentVerificationFailed):
        await complete_order(office, mine.order_id, theirs.reference)


class TimeoutPay(MockPay):
    async def verify(self, reference):
        raise GatewayError("read timeout")


async def test_gateway_timeout_means_not_verified(office, gateway,
                                                  seed_event, fetch):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 1)])
    office.gateway = TimeoutPay(secret="x")

    with pytest.raises(PaymentVerificationFailed):
        await complete_order(office, checkout.order_id)
    order = await fetch.order(checkout.order_id)
    assert order.payment_status == PaymentStatus.PENDING.value


async def test_unknown_order(office):
    with pytest.raises(OrderNotFound):
        await complete_order(office, "missing")


async def test_failed_order_can_complete_on_late_success(
        office, gateway, seed_event, fetch):
    ev = await seed_event([("A", 2500, 5)])
    checkout = await _checkout(office, ev, [(ev.types["A"], 1)])
    assert await mark_order_failed(office, checkout.order_id)
    assert not await mark_order_failed(office, checkout.order_id)

    gateway.settle(checkout.reference, "succeeded")
    result = await complete_order(office, checkout.order_id)

    assert result.completed
    order = await fetch.order(checkout.order_id)
    assert order.payment_status == PaymentStatus.COMPLETED.value


async def test_no_oversell_under_concurrency(office, gateway, seed_event,
                                             fetch):
    ev = await seed_event([("A", 2500, 3)])
    checkouts = [
        await _checkout(office, ev, [(ev.types["A"], 1)], user=f"u{i}")
        for i in range(5)
    ]
    for c in checkouts:
        gateway.settle(c.reference, "succeeded")

    results = await asyncio.gather(
        *[complete_order(office, c.order_id) for c in checkouts],
        return_exceptions=True,
    )

    won = [r for r in results if not isinstance(r, BaseException)]
    lost = [r for r in results if isinstance(r, BaseException)]
    assert len(won) == 3
    assert len(lost) == 2
    assert all(isinstance(e, InsufficientInventory) for e in lost)
    assert await fetch.remaining(ev.types["A"]) == 0
    issued = sum([len(await fetch.tickets(c.order_id)) for c in checkouts])
    assert issued == 3

    # losers stay PENDING and can be retried or refunded by the operator
    for c, r in zip(checkouts, results):
        order = await fetch.order(c.order_id)
        expected = (PaymentStatus.PENDING if isinstance(r, BaseException)
                    else PaymentStatus.COMPLETED)
        assert order.payment_status == expected.value


async def test_quantity_must_match_selections(office, database, seed_event,
                                              fetch):
    ev = await seed_event([("A", 0, 5)], is_free=True)
    order_id = await _bare_order(database, ev, quantity=3,
                                 selections=[(ev.types["A"], 2)])

    with pytest.raises(TicketCountMismatch) as exc:
        await complete_order(office, order_id)

    assert (exc.value.expected, exc.value.actual) == (3, 2)
    assert await fetch.tickets(order_id) == []
    assert await fetch.remaining(ev.types["A"]) == 5


async def test_fallback_distribution_fills_in_catalogue_order(
        office, database, seed_event, fetch):
    ev = await seed_event([("A", 0, 2), ("B", 0, 5)], is_free=True)
    order_id = await _bare_order(database, ev, quantity=3)

    result = await complete_order(office, order_id)

    assert result.source == "fallback"
    assert [t["ticket_type_id"] for t in result.tickets] == [
        ev.types["A"], ev.types["A"], ev.types["B"],
    ]
    assert await fetch.remaining(ev.types["A"]) == 0
    assert await fetch.remaining(ev.types["B"]) == 4
    # the settled distribution is recorded on the order
    order = await fetch.order(order_id)
    assert [(s.ticket_type_id, s.quantity) for s in order.selections] == [
        (ev.types["A"], 2), (ev.types["B"], 1),
    ]


async def test_callback_selections_beat_the_fallback(office, database,
                                                     seed_event, fetch):
    ev = await seed_event([("A", 0, 5), ("B", 0, 5)], is_free=True)
    order_id = await _bare_order(database, ev, quantity=2)

    result = await complete_order(
        office, order_id,
        selections=[{"ticketTypeId": ev.types["B"], "quantity": 2}],
    )

    assert result.source == "callback"
    assert await fetch.remaining(ev.types["A"]) == 5
    assert await fetch.remaining(ev.types["B"]) == 3


async def test_callback_selections_are_validated(office, database,
                                                 seed_event):
    ev = await seed_event([("A", 0, 5)], is_free=True)
    order_id = await _bare_order(database, ev, quantity=1)

    with pytest.raises(TicketTypeNotFound):
        await complete_order(office, order_id,
                             selections=[("not-a-type", 1)])


async def test_stock_rows_are_taken_in_id_order(office, gateway, seed_event,
                                                monkeypatch):
    ev = await seed_event([("A", 1000, 5), ("B", 1000, 5), ("C", 1000, 5)])
    taken = []
    real_take_units = fulfillment.take_units

    async def recording_take_units(db, tt_id, event_id, qty):
        taken.append(tt_id)
        return await real_take_units(db, tt_id, event_id, qty)

    monkeypatch.setattr(fulfillment, "take_units", recording_take_units)
    picks = sorted(ev.types.values(), reverse=True)
    checkout = await _checkout(office, ev, [(tt, 1) for tt in picks])
    gateway.settle(checkout.reference, "succeeded")

    await complete_order(office, checkout.order_id)

    assert taken == sorted(picks)
