import typing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from boxoffice.fees import StaticFees
from boxoffice.gateway import MockPay
from boxoffice.helpers import now_ts, new_id
from boxoffice.infra.sql import Database, make_async_engine
from boxoffice.model.db import (
    Event, Order, Ticket, TicketType, WaitingListEntry, PUBLISHED,
    create_schema,
)
from boxoffice.model.webhookevents._sql import WebhookEventStore
from boxoffice.notify import Notifier, TicketDelivery
from boxoffice.office import BoxOffice
from boxoffice.server import app, get_office, webhook_events
from boxoffice.ticket_codes import TicketSigner


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, kind, *, order_id=None, user_id=None,
                     event_id=None) -> None:
        self.sent.append((kind.value, {"order_id": order_id,
                                       "user_id": user_id,
                                       "event_id": event_id}))

    def kinds(self) -> List[str]:
        return [k for k, _ in self.sent]


class RecordingDelivery(TicketDelivery):
    def __init__(self) -> None:
        self.deliveries: List[Tuple[str, Optional[str], int]] = []

    async def deliver(self, order_id, email, tickets) -> None:
        self.deliveries.append((order_id, email, len(tickets)))


@dataclass
class SeededEvent:
    id: str
    organizer_id: str
    types: Dict[str, str] = field(default_factory=dict)  # name -> id


@pytest.fixture(scope='session')
def anyio_backend() -> str:
    return 'asyncio'


@pytest.fixture
async def database(tmp_path) -> typing.AsyncGenerator[Database, None]:
    db = make_async_engine(f"sqlite:///{tmp_path / 'boxoffice.db'}")
    async with db.engine.begin() as conn:
        await create_schema(conn)
    yield db
    await db.dispose()


@pytest.fixture
def gateway() -> MockPay:
    return MockPay(secret="test-secret", base_url="http://test")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def office(database, gateway, notifier, delivery) -> BoxOffice:
    return BoxOffice.from_database(
        database,
        gateway,
        notifier=notifier,
        delivery=delivery,
        fees=StaticFees(default=5),
        signer=TicketSigner("test-ticket-secret-long-enough-for-hs256"),
        sales_enabled=True,
        offer_window_seconds=3600,
        callback_url="http://test/payments/callback",
    )


@pytest.fixture
def seed_event(database):
    """
    Factory: await seed_event(types=[("A", price, qty), ...], ...) creates a
    published future event and returns a SeededEvent.
    """
    async def _seed(
        types=(("A", 2500, 10),),
        *,
        is_free: bool = False,
        published: bool = True,
        cancelled: bool = False,
        starts_in: float = 7 * 24 * 3600,
        attendee_limit: Optional[int] = None,
    ) -> SeededEvent:
        now = now_ts()
        seeded = SeededEvent(id=new_id(), organizer_id="organizer-1")
        async with database.sessions() as db:
            async with db.begin():
                db.add(Event(
                    id=seeded.id,
                    title="Test Event",
                    organizer_id=seeded.organizer_id,
                    is_free=is_free,
                    start_at=now + starts_in,
                    published_status=PUBLISHED if published else "DRAFT",
                    is_cancelled=cancelled,
                    attendee_limit=attendee_limit,
                    currency="ngn",
                ))
                await db.flush()
                for i, (name, price, qty) in enumerate(types):
                    tt_id = new_id()
                    seeded.types[name] = tt_id
                    db.add(TicketType(
                        id=tt_id, event_id=seeded.id, name=name,
                        price=price, quantity=qty, created_at=now + i,
                    ))
        return seeded
    return _seed


@pytest.fixture
def fetch(database):
    """Small read helpers so tests can look at rows directly."""
    class _Fetch:
        async def order(self, order_id: str) -> Optional[Order]:
            async with database.sessions() as db:
                return await db.get(Order, order_id)

        async def remaining(self, ticket_type_id: str) -> int:
            async with database.sessions() as db:
                return (await db.get(TicketType, ticket_type_id)).quantity

        async def tickets(self, order_id: str) -> List[Ticket]:
            async with database.sessions() as db:
                rows = await db.scalars(
                    select(Ticket).where(Ticket.order_id == order_id)
                    .order_by(Ticket.seq)
                )
                return list(rows.all())

        async def waiting(self, event_id: str) -> List[WaitingListEntry]:
            async with database.sessions() as db:
                rows = await db.scalars(
                    select(WaitingListEntry)
                    .where(WaitingListEntry.event_id == event_id)
                    .order_by(WaitingListEntry.id)
                )
                return list(rows.all())

        async def order_count(self) -> int:
            async with database.sessions() as db:
                return len((await db.scalars(select(Order.id))).all())
    return _Fetch()


@pytest.fixture
async def async_client(
    office: BoxOffice, database: Database
) -> typing.AsyncGenerator[AsyncClient, None]:
    async def _webhook_events():
        async with database.sessions() as session:
            yield WebhookEventStore(db=session, gated=database.gated)

    app.dependency_overrides[get_office] = lambda: office
    app.dependency_overrides[webhook_events] = _webhook_events
    _transport = ASGITransport(app=app)
    # mockpay posts its webhook through this client
    app.state.http = AsyncClient(transport=_transport, base_url='http://test')

    async with AsyncClient(
        transport=_transport, base_url='http://test', follow_redirects=True
    ) as client:
        yield client

    await app.state.http.aclose()
    app.state.http = None
    app.dependency_overrides.clear()
