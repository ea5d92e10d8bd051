from __future__ import annotations

import httpx
import os
from dataclasses import asdict
from typing import Any, Dict, Optional

from .errors import BoxOfficeError, ErrorKind
from .helpers import to_iso, is_valid_email, ct_equal
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import timeit, snapshot
from .model.db import Order, create_schema
from .model.inventory import compute_inventory
from .model.webhookevents import (
    WebhookEventStore, new_store, BACKEND as WEBHOOK_BACKEND
)
from .gateway import GatewayError, MockPay, new_gateway, BACKEND as GW_BACKEND
from .office import BoxOffice, Buyer, Actor
from .orders.fulfillment import (
    Fulfillment, complete_order, mark_order_failed, find_order_id,
    load_tickets, ticket_view,
)
from .orders.intake import initiate_order
from .orders.refunds import initiate_refund, process_refund
from .orders.waitlist import join_waiting_list, expire_offers

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi import Form
from fastapi.templating import Jinja2Templates

from loguru import logger
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

import redis.asyncio as redis

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

# ----------------------------
# Config & Constants
# ----------------------------
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

# error kind -> HTTP status
ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVENTORY: 409,
    ErrorKind.EXTERNAL: 502,
    ErrorKind.STATE: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION: 403,
}


database = make_async_engine(DATABASE_URL)

app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_office(request: Request) -> BoxOffice:
    office = getattr(request.app.state, "office", None)
    if office is None:
        raise RuntimeError("BoxOffice not initialized")
    return office


async def webhook_events() -> WebhookEventStore:
    if WEBHOOK_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with database.sessions() as session:
            yield new_store(db=session, gated=database.gated)


@app.exception_handler(BoxOfficeError)
async def _boxoffice_error(request: Request, exc: BoxOfficeError):
    return ORJSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, 400),
        content={
            "error": exc.code.value,
            "kind": exc.kind.value,
            "message": exc.message,
        },
    )


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    logger.info("BoxOffice is starting up: gateway={} webhook store={}",
                GW_BACKEND, WEBHOOK_BACKEND)


@app.on_event("startup")
async def _db_init():
    async with database.engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if WEBHOOK_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _office_start():
    app.state.office = BoxOffice.from_database(database, new_gateway())


@app.on_event("shutdown")
async def _office_stop():
    office = getattr(app.state, "office", None)
    if office is not None:
        await office.gateway.aclose()
        app.state.office = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await database.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def acting_user(request: Request, user_id: Optional[str]) -> Actor:
    if is_admin(request):
        return Actor(user_id=request.session["admin_user"], is_admin=True)
    if not user_id:
        raise HTTPException(400, detail="user_id is required")
    return Actor(user_id=user_id)


def fulfillment_view(f: Fulfillment) -> Dict[str, Any]:
    return {
        "order_id": f.order_id,
        "status": "COMPLETED",
        "already_completed": f.already_completed,
        "source": f.source,
        "tickets": f.tickets,
    }


def _event_metadata(event: dict) -> Dict[str, Any]:
    # mockpay puts metadata at the top level, paystack under "data"
    meta = event.get("metadata")
    if meta is None:
        meta = (event.get("data") or {}).get("metadata")
    return meta if isinstance(meta, dict) else {}


# ----------------------------
# API: orders
# ----------------------------
@app.post("/api/orders")
async def create_order(payload: dict,
                       office: BoxOffice = Depends(get_office)):
    user_id = (payload.get("user_id") or "").strip()
    email = (payload.get("email") or "").strip()
    event_id = payload.get("event_id")
    if not user_id:
        raise HTTPException(400, detail="user_id is required")
    if not event_id:
        raise HTTPException(400, detail="event_id is required")
    if not is_valid_email(email):
        raise HTTPException(
            400,
            detail="email is required and must be a valid email address"
        )

    result = await initiate_order(
        office,
        Buyer(user_id=user_id, email=email),
        event_id,
        payload.get("selections"),
        notes=payload.get("notes"),
        callback_url=payload.get("callback_url"),
    )
    if isinstance(result, Fulfillment):
        return fulfillment_view(result)
    return {
        "order_id": result.order_id,
        "status": "PENDING",
        "reference": result.reference,
        "authorization_url": result.authorization_url,
        "amount": result.amount,
        "platform_fee": result.platform_fee,
        "currency": result.currency,
    }


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, office: BoxOffice = Depends(get_office)):
    async with timeit("db.get_order"):
        async with office.gated():
            async with office.sessions() as db:
                order = await db.get(Order, order_id)
                tickets = await load_tickets(db, order_id) if order else []
    if order is None:
        raise HTTPException(404, detail="order not found")
    return {
        "order_id": order.id,
        "event_id": order.event_id,
        "buyer_id": order.buyer_id,
        "payment_status": order.payment_status,
        "refund_status": order.refund_status,
        "quantity": order.quantity,
        "amount": order.total_amount,
        "platform_fee": order.platform_fee,
        "currency": order.currency,
        "reference": order.payment_reference,
        "selections": [
            {"ticket_type_id": s.ticket_type_id, "quantity": s.quantity}
            for s in order.selections
        ],
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "refunded_at": to_iso(order.refunded_at),
        "tickets": [ticket_view(t) for t in tickets],
    }


# ----------------------------
# Payments: buyer redirect + gateway webhook
# ----------------------------
@app.get("/payments/callback")
async def payments_callback(reference: str,
                            office: BoxOffice = Depends(get_office)):
    order_id = await find_order_id(office, reference)
    if order_id is None:
        raise HTTPException(404, detail="order not found")
    await complete_order(office, order_id, reference)
    return RedirectResponse(url=f"/api/orders/{order_id}",
                            status_code=HTTP_303_SEE_OTHER)


@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    office: BoxOffice = Depends(get_office),
    seen: WebhookEventStore = Depends(webhook_events),
):
    payload = await request.body()
    headers = dict(request.headers)

    gateway = office.gateway
    try:
        event = gateway.verify_webhook(payload, headers)
    except GatewayError as e:
        raise HTTPException(400, detail=str(e))
    kind = gateway.event_kind(event)  # succeeded | failed | canceled
    reference, idem = gateway.event_ids(event)
    if not reference:
        raise HTTPException(400, detail="missing payment reference")

    async with timeit("webhook.mark_seen"):
        first = await seen.mark_event_seen(idem)
    if not first:
        return {"ok": True, "idempotent": True}

    order_id = await find_order_id(office, reference)
    if order_id is None:
        await seen.forget_event(idem)
        raise HTTPException(404, detail="order not found")

    if kind == "succeeded":
        try:
            result = await complete_order(
                office, order_id, reference,
                selections=_event_metadata(event).get("selections"),
            )
        except BoxOfficeError as e:
            if e.kind is ErrorKind.EXTERNAL:
                # let the gateway redeliver once it can vouch for the charge
                await seen.forget_event(idem)
            raise
        except Exception:
            await seen.forget_event(idem)
            raise
        return {"ok": True, "order_status": "COMPLETED",
                "idempotent": result.already_completed}
    if kind in ("failed", "canceled"):
        await mark_order_failed(office, order_id)
        return {"ok": True, "order_status": "FAILED"}

    logger.info("ignoring gateway event {} for {}", kind, reference)
    return {"ok": True, "ignored": kind}


# ----------------------------
# Refunds
# ----------------------------
@app.post("/api/orders/{order_id}/refund")
async def request_refund(order_id: str, payload: dict, request: Request,
                         office: BoxOffice = Depends(get_office)):
    actor = acting_user(request, payload.get("user_id"))
    state = await initiate_refund(office, order_id, actor,
                                  payload.get("reason"))
    return asdict(state)


@app.post("/admin/orders/{order_id}/refund")
async def admin_process_refund(order_id: str, payload: dict,
                               request: Request,
                               office: BoxOffice = Depends(get_office)):
    actor = Actor(user_id=request.session.get("admin_user") or "",
                  is_admin=is_admin(request))
    state = await process_refund(office, order_id, actor,
                                 bool(payload.get("approve")),
                                 payload.get("notes"))
    return asdict(state)


# ----------------------------
# Events: inventory + waiting list
# ----------------------------
@app.get("/api/events/{event_id}/inventory")
async def get_inventory(event_id: str,
                        office: BoxOffice = Depends(get_office)):
    async with office.gated():
        async with office.sessions() as db:
            return await compute_inventory(db, event_id)


@app.post("/api/events/{event_id}/waitlist")
async def join_waitlist(event_id: str, payload: dict,
                        office: BoxOffice = Depends(get_office)):
    user_id = (payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(400, detail="user_id is required")
    return await join_waiting_list(office, event_id, user_id)


@app.post("/admin/waitlist/sweep")
async def admin_sweep_waitlist(request: Request,
                               office: BoxOffice = Depends(get_office)):
    if not is_admin(request):
        raise HTTPException(403, detail="admin login required")
    return await expire_offers(office)


@app.get("/api/timings")
async def api_timings():
    return snapshot()


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
def _mockpay(office: BoxOffice) -> MockPay:
    if not isinstance(office.gateway, MockPay):
        raise HTTPException(404, detail="mock payments disabled")
    return office.gateway


@app.get("/mockpay/{reference}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, reference: str,
                         office: BoxOffice = Depends(get_office)):
    charge = _mockpay(office).charge(reference)
    if not charge:
        raise HTTPException(404, "payment not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "reference": reference,
        "order_id": charge["metadata"].get("order_id"),
        "status": charge["status"],
        "amount": f"{int(charge['amount'])/100:.2f}",
        "email": charge.get("email") or "",
    })


@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(reference: str, request: Request,
                       office: BoxOffice = Depends(get_office)):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")

    mockpay = _mockpay(office)
    try:
        charge = mockpay.settle(reference, kind)
    except GatewayError:
        raise HTTPException(404, "payment not found")

    payload = mockpay.build_event(reference, kind)
    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": mockpay.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the callback redirect below still completes the order
        logger.warning("webhook delivery failed: {!r}", e)

    order_id = charge["metadata"].get("order_id")
    if kind == "succeeded" and charge.get("callback_url"):
        return RedirectResponse(
            url=f"{charge['callback_url']}?reference={reference}",
            status_code=303
        )
    return RedirectResponse(
        url=f"/api/orders/{order_id}",
        status_code=303
    )


# ----------------------------
# Admin login
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = "/api/timings"):
    return templates.TemplateResponse(
        request, "login.html", {"next": next, "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/timings"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/api/timings"),
            status_code=HTTP_303_SEE_OTHER
        )
    return templates.TemplateResponse(
        request,
        "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/admin/login", status_code=HTTP_303_SEE_OTHER)
