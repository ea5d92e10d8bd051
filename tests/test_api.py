from http import HTTPStatus

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.anyio


def _order_body(ev, *selections, user="buyer-1"):
    return {
        "event_id": ev.id,
        "user_id": user,
        "email": f"{user}@example.com",
        "selections": [{"ticket_type_id": ev.types[name], "quantity": qty}
                       for name, qty in selections],
    }


async def _login(client: AsyncClient):
    response = await client.post(
        "/admin/login",
        data={"username": "admin", "password": "supasecret",
              "next": "/api/timings"},
    )
    assert response.status_code == HTTPStatus.OK


async def test_mockpay_checkout_end_to_end(async_client, seed_event, fetch):
    ev = await seed_event([("A", 2500, 4), ("B", 1000, 4)])

    response = await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 2), ("B", 1)))
    assert response.status_code == HTTPStatus.OK
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["amount"] == 6000
    assert body["platform_fee"] == 300

    page = await async_client.get(f"/mockpay/{body['reference']}")
    assert page.status_code == HTTPStatus.OK
    assert body["order_id"] in page.text

    # pay: webhook fires, then the buyer lands on the callback
    response = await async_client.post(
        f"/mockpay/{body['reference']}/emit", data={"t": "succeeded"})
    assert response.status_code == HTTPStatus.OK
    order = response.json()
    assert order["order_id"] == body["order_id"]
    assert order["payment_status"] == "COMPLETED"
    assert len(order["tickets"]) == 3

    inv = (await async_client.get(f"/api/events/{ev.id}/inventory")).json()
    assert inv["types"][ev.types["A"]]["available"] == 2
    assert inv["types"][ev.types["A"]]["sold"] == 2
    assert inv["types"][ev.types["B"]]["available"] == 3
    assert (inv["available"], inv["sold"]) == (5, 3)


async def test_failed_payment_marks_order_failed(async_client, seed_event):
    ev = await seed_event([("A", 2500, 4)])
    body = (await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 1)))).json()

    response = await async_client.post(
        f"/mockpay/{body['reference']}/emit", data={"t": "failed"})

    assert response.json()["payment_status"] == "FAILED"
    assert response.json()["tickets"] == []


async def test_webhook_replay_is_idempotent(async_client, gateway,
                                            seed_event, fetch):
    ev = await seed_event([("A", 2500, 4)])
    body = (await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 2)))).json()
    gateway.settle(body["reference"], "succeeded")
    payload = gateway.build_event(body["reference"], "succeeded")
    headers = {"x-mockpay-signature": gateway.sign(payload),
               "content-type": "application/json"}

    first = await async_client.post("/payments/webhook", content=payload,
                                    headers=headers)
    replay = await async_client.post("/payments/webhook", content=payload,
                                     headers=headers)

    assert first.json() == {"ok": True, "order_status": "COMPLETED",
                            "idempotent": False}
    assert replay.json() == {"ok": True, "idempotent": True}
    assert len(await fetch.tickets(body["order_id"])) == 2
    assert await fetch.remaining(ev.types["A"]) == 2

    # a fresh event for the same charge is a no-op too
    again = gateway.build_event(body["reference"], "succeeded")
    response = await async_client.post(
        "/payments/webhook", content=again,
        headers={"x-mockpay-signature": gateway.sign(again)})
    assert response.json()["idempotent"] is True
    assert len(await fetch.tickets(body["order_id"])) == 2


async def test_webhook_rejects_bad_signature(async_client, gateway,
                                             seed_event):
    ev = await seed_event([("A", 2500, 4)])
    body = (await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 1)))).json()
    payload = gateway.build_event(body["reference"], "succeeded")

    response = await async_client.post(
        "/payments/webhook", content=payload,
        headers={"x-mockpay-signature": "forged"})

    assert response.status_code == HTTPStatus.BAD_REQUEST


async def test_errors_map_to_status_codes(async_client, seed_event):
    ev = await seed_event([("A", 2500, 1)])

    sold_out = await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 2)))
    assert sold_out.status_code == HTTPStatus.CONFLICT
    assert sold_out.json()["error"] == "INSUFFICIENT_INVENTORY"
    assert sold_out.json()["kind"] == "inventory"

    bad_qty = await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 0)))
    assert bad_qty.status_code == HTTPStatus.BAD_REQUEST
    assert bad_qty.json()["error"] == "INVALID_QUANTITY"

    no_email = _order_body(ev, ("A", 1))
    no_email["email"] = "nope"
    response = await async_client.post("/api/orders", json=no_email)
    assert response.status_code == HTTPStatus.BAD_REQUEST

    missing = await async_client.get("/api/orders/does-not-exist")
    assert missing.status_code == HTTPStatus.NOT_FOUND

    unpaid = (await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 1)))).json()
    response = await async_client.get(
        "/payments/callback", params={"reference": unpaid["reference"]})
    assert response.status_code == HTTPStatus.BAD_GATEWAY
    assert response.json()["error"] == "PAYMENT_VERIFICATION_FAILED"


async def test_refund_flow_over_http(async_client, gateway, seed_event,
                                     fetch):
    ev = await seed_event([("A", 2500, 4)])
    body = (await async_client.post(
        "/api/orders", json=_order_body(ev, ("A", 2)))).json()
    await async_client.post(f"/mockpay/{body['reference']}/emit",
                            data={"t": "succeeded"})

    denied = await async_client.post(
        f"/api/orders/{body['order_id']}/refund",
        json={"user_id": "buyer-1", "reason": "cannot attend"})
    assert denied.status_code == HTTPStatus.FORBIDDEN

    response = await async_client.post(
        f"/api/orders/{body['order_id']}/refund",
        json={"user_id": ev.organizer_id, "reason": "cannot attend"})
    assert response.json()["refund_status"] == "INITIATED"

    not_admin = await async_client.post(
        f"/admin/orders/{body['order_id']}/refund", json={"approve": True})
    assert not_admin.status_code == HTTPStatus.FORBIDDEN

    await _login(async_client)
    response = await async_client.post(
        f"/admin/orders/{body['order_id']}/refund", json={"approve": True})

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {
        "order_id": body["order_id"],
        "payment_status": "REFUNDED",
        "refund_status": "PROCESSED",
        "refunded_tickets": 2,
    }
    assert await fetch.remaining(ev.types["A"]) == 4


async def test_waitlist_endpoints(async_client, seed_event):
    ev = await seed_event([("A", 2500, 1)])

    joined = await async_client.post(f"/api/events/{ev.id}/waitlist",
                                     json={"user_id": "w1"})
    assert joined.status_code == HTTPStatus.OK
    assert joined.json()["status"] == "WAITING"

    twice = await async_client.post(f"/api/events/{ev.id}/waitlist",
                                    json={"user_id": "w1"})
    assert twice.status_code == HTTPStatus.BAD_REQUEST
    assert twice.json()["error"] == "ALREADY_WAITING"

    sweep = await async_client.post("/admin/waitlist/sweep")
    assert sweep.status_code == HTTPStatus.FORBIDDEN
    await _login(async_client)
    sweep = await async_client.post("/admin/waitlist/sweep")
    assert sweep.json() == {"expired": 0, "events": [], "offered": 0}


async def test_admin_login_rejects_bad_password(async_client):
    response = await async_client.post(
        "/admin/login", data={"username": "admin", "password": "wrong"})
    assert response.status_code == HTTPStatus.UNAUTHORIZED
    assert "Invalid credentials." in response.text


async def test_timings_are_collected(async_client, seed_event):
    ev = await seed_event([("A", 2500, 1)])
    await async_client.post("/api/orders", json=_order_body(ev, ("A", 1)))

    timings = (await async_client.get("/api/timings")).json()

    assert timings["gateway.initialize"]["n"] >= 1
    assert timings["db.add_order"]["max"] >= 0
