from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger


class NotificationKind(str, Enum):
    TICKET_PURCHASED = "TICKET_PURCHASED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    TICKET_AVAILABLE = "TICKET_AVAILABLE"


class Notifier(ABC):
    @abstractmethod
    async def notify(
        self,
        kind: NotificationKind,
        *,
        order_id: Optional[str] = None,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None: ...


class TicketDelivery(ABC):
    # tickets: [{"ticket_id", "ticket_type_id", "payload", ...}]
    @abstractmethod
    async def deliver(self, order_id: str, email: Optional[str],
                      tickets: List[Dict[str, Any]]) -> None: ...


class LogNotifier(Notifier):
    async def notify(self, kind, *, order_id=None, user_id=None,
                     event_id=None) -> None:
        logger.info(
            "notify {} order={} user={} event={}",
            NotificationKind(kind).value, order_id, user_id, event_id,
        )


class LogDelivery(TicketDelivery):
    async def deliver(self, order_id, email, tickets) -> None:
        logger.info(
            "deliver {} ticket(s) for order {} to {}",
            len(tickets), order_id, email or "<no email>",
        )
