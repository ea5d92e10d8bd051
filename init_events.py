import os
import asyncio
import argparse

from boxoffice.helpers import now_ts
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.db import Event, TicketType, PUBLISHED, create_schema

# Demo catalogue
DEMO_EVENT_ID = "demo-conf"
DEMO_TICKET_TYPES = [
    # id, name, price (minor units), quantity
    ("demo-conf-a", "Class A", 6500, 1_000),
    ("demo-conf-b", "Class B", 3500, 10_000),
]


async def seed(database_url: str, days_ahead: int) -> None:
    database = make_async_engine(database_url)
    async with database.engine.begin() as conn:
        await create_schema(conn)
    print('✅ schema created')

    async with database.sessions() as db:
        async with db.begin():
            if await db.get(Event, DEMO_EVENT_ID) is not None:
                print(f'event {DEMO_EVENT_ID} already exists, leaving it')
            else:
                now = now_ts()
                db.add(Event(
                    id=DEMO_EVENT_ID,
                    title="BoxOffice Demo Conference",
                    organizer_id="organizer-1",
                    is_free=False,
                    start_at=now + days_ahead * 24 * 3600,
                    published_status=PUBLISHED,
                    is_cancelled=False,
                    attendee_limit=None,
                    currency="ngn",
                ))
                await db.flush()
                for i, (tt_id, name, price, qty) in enumerate(
                        DEMO_TICKET_TYPES):
                    db.add(TicketType(
                        id=tt_id, event_id=DEMO_EVENT_ID, name=name,
                        price=price, quantity=qty, created_at=now + i,
                    ))
                print(f'✅ event {DEMO_EVENT_ID} created')
    await database.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="Seed the BoxOffice demo event")
    ap.add_argument("--database-url",
                    default=os.getenv("DATABASE_URL",
                                      "sqlite:///./boxoffice.db"))
    ap.add_argument("--days-ahead", type=int, default=30)
    args = ap.parse_args()
    asyncio.run(seed(args.database_url, args.days_ahead))
