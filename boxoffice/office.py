import os
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .fees import FeeCalculator, StaticFees
from .gateway import PaymentGateway
from .helpers import env_flag
from .infra.sql import Database, Gated
from .notify import Notifier, TicketDelivery, LogNotifier, LogDelivery
from .ticket_codes import TicketSigner

TICKET_SALES_ENABLED = env_flag(os.environ.get("TICKET_SALES_ENABLED"))
WAITLIST_OFFER_SECONDS = int(os.environ.get("WAITLIST_OFFER_SECONDS",
                                            str(24 * 3600)))
PAYMENT_CALLBACK_URL = os.environ.get(
    "PAYMENT_CALLBACK_URL",
    "http://localhost:8000/payments/callback"
)


@dataclass
class Buyer:
    user_id: str
    email: Optional[str] = None


@dataclass
class Actor:
    user_id: str
    is_admin: bool = False


@dataclass
class BoxOffice:
    """
    Everything the order engine needs from the outside world.

    The engine functions in ``boxoffice.orders`` take one of these as their
    first argument instead of reaching for module globals, so the server,
    the seeding script and the tests can each wire their own.
    """
    sessions: async_sessionmaker[AsyncSession]
    gated: Gated
    gateway: PaymentGateway
    notifier: Notifier = field(default_factory=LogNotifier)
    delivery: TicketDelivery = field(default_factory=LogDelivery)
    fees: FeeCalculator = field(default_factory=StaticFees)
    signer: TicketSigner = field(default_factory=TicketSigner)
    sales_enabled: bool = TICKET_SALES_ENABLED
    offer_window_seconds: int = WAITLIST_OFFER_SECONDS
    callback_url: Optional[str] = PAYMENT_CALLBACK_URL

    @classmethod
    def from_database(cls, database: Database, gateway: PaymentGateway,
                      **kw) -> "BoxOffice":
        return cls(sessions=database.sessions, gated=database.gated,
                   gateway=gateway, **kw)
