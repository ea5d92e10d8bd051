from enum import Enum

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    PrimaryKeyConstraint,
)


Base = declarative_base()


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class RefundStatus(str, Enum):
    INITIATED = "INITIATED"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class TicketStatus(str, Enum):
    UNUSED = "UNUSED"
    USED = "USED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class WaitingStatus(str, Enum):
    WAITING = "WAITING"
    OFFERED = "OFFERED"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


PUBLISHED = "PUBLISHED"

# tickets that hold a unit of inventory
LIVE_TICKET_STATUSES = (TicketStatus.UNUSED.value, TicketStatus.USED.value)


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    # owned by the event catalogue; read-only for the engine
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    organizer_id = Column(String, nullable=True)
    is_free = Column(Boolean, nullable=False, default=False)
    start_at = Column(Float, nullable=False)
    # DRAFT | PUBLISHED | ...
    published_status = Column(String, nullable=False, default="DRAFT")
    is_cancelled = Column(Boolean, nullable=False, default=False)
    attendee_limit = Column(Integer, nullable=True)
    currency = Column(String, nullable=False, default="ngn")


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_ticket_types_quantity"),
        Index("ix_ticket_types_event", "event_id"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    # remaining unsold units
    quantity = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_event", "event_id"),
        Index("ix_orders_created_at", "created_at"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    buyer_id = Column(String, nullable=False)
    buyer_email = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True, unique=True)
    total_amount = Column(Integer, nullable=False)  # minor units
    platform_fee = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="ngn")

    # PENDING | COMPLETED | FAILED | REFUNDED
    payment_status = Column(String, nullable=False,
                            default=PaymentStatus.PENDING.value)
    # NULL | INITIATED | PROCESSED | REJECTED | FAILED
    refund_status = Column(String, nullable=True)
    refund_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)

    selections = relationship(
        "OrderSelection",
        order_by="OrderSelection.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class OrderSelection(Base):
    __tablename__ = "order_selections"
    __table_args__ = (
        PrimaryKeyConstraint("order_id", "position"),
        CheckConstraint("quantity > 0", name="ck_order_selections_quantity"),
    )
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False)
    position = Column(Integer, nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_order", "order_id"),
        Index("ix_tickets_event_status", "event_id", "status"),
    )
    id = Column(String, primary_key=True)
    ticket_id = Column(String, nullable=False, unique=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False)
    # unit index within the order, keeps issuance order stable
    seq = Column(Integer, nullable=False)
    # UNUSED | USED | CANCELLED | REFUNDED
    status = Column(String, nullable=False,
                    default=TicketStatus.UNUSED.value)
    purchased_at = Column(Float, nullable=False)
    payload = Column(Text, nullable=False)


class WaitingListEntry(Base):
    __tablename__ = "waiting_list"
    __table_args__ = (
        Index("ix_waiting_list_event_status", "event_id", "status"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False)
    # WAITING | OFFERED | EXPIRED | CONVERTED
    status = Column(String, nullable=False,
                    default=WaitingStatus.WAITING.value)
    created_at = Column(Float, nullable=False)
    offer_expires_at = Column(Float, nullable=True)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
