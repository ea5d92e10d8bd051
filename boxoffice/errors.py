"""Error taxonomy for the box office engine.

Every failure the engine reports is a ``BoxOfficeError`` carrying a stable
``code`` and a ``kind``. The kind tells callers how to react:

- VALIDATION: the request was wrong; never retried.
- INVENTORY: capacity moved under the caller; re-fetch and retry the order.
- EXTERNAL: the payment processor failed or disagreed; money may be in limbo.
- STATE / NOT_FOUND / PERMISSION: the order cannot take this transition.
"""

from enum import Enum


class ErrorKind(Enum):
    VALIDATION = "validation"
    INVENTORY = "inventory"
    EXTERNAL = "external"
    STATE = "state"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"


class ErrorCode(Enum):
    EVENT_UNAVAILABLE = "EVENT_UNAVAILABLE"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    PURCHASES_DISABLED = "PURCHASES_DISABLED"
    ALREADY_WAITING = "ALREADY_WAITING"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    TICKET_COUNT_MISMATCH = "TICKET_COUNT_MISMATCH"
    PAYMENT_INITIALIZATION_FAILED = "PAYMENT_INITIALIZATION_FAILED"
    PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    PAYMENT_AMOUNT_MISMATCH = "PAYMENT_AMOUNT_MISMATCH"
    REFUND_GATEWAY_FAILED = "REFUND_GATEWAY_FAILED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_STATE_CONFLICT = "ORDER_STATE_CONFLICT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_TICKET_PAYLOAD = "INVALID_TICKET_PAYLOAD"


class BoxOfficeError(Exception):
    """Base error with code, kind and a user-safe message."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


# ----------------------------
# validation
# ----------------------------
class EventUnavailable(BoxOfficeError):
    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(ErrorCode.EVENT_UNAVAILABLE,
                         f"Event not available for booking: {reason}")
        self.event_id = event_id
        self.reason = reason


class TicketTypeNotFound(BoxOfficeError):
    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(ErrorCode.TICKET_TYPE_NOT_FOUND,
                         "Ticket type not found")
        self.ticket_type_id = ticket_type_id


class InvalidQuantity(BoxOfficeError):
    def __init__(self, message: str = "Invalid quantity") -> None:
        super().__init__(ErrorCode.INVALID_QUANTITY, message)


class CapacityExceeded(BoxOfficeError):
    def __init__(self, limit: int, issued: int, requested: int) -> None:
        super().__init__(ErrorCode.CAPACITY_EXCEEDED,
                         "Event capacity exceeded")
        self.limit = limit
        self.issued = issued
        self.requested = requested


class PurchasesDisabled(BoxOfficeError):
    def __init__(self) -> None:
        super().__init__(ErrorCode.PURCHASES_DISABLED,
                         "New ticket purchases are currently disabled")


class AlreadyWaiting(BoxOfficeError):
    def __init__(self, event_id: str, user_id: str) -> None:
        super().__init__(ErrorCode.ALREADY_WAITING,
                         "Already on the waiting list for this event")
        self.event_id = event_id
        self.user_id = user_id


# ----------------------------
# inventory conflicts
# ----------------------------
class InsufficientInventory(BoxOfficeError):
    kind = ErrorKind.INVENTORY

    def __init__(self, ticket_type_id: str | None, name: str | None,
                 requested: int, available: int | None = None) -> None:
        label = name or "ticket"
        super().__init__(ErrorCode.INSUFFICIENT_INVENTORY,
                         f"Not enough {label} tickets available")
        self.ticket_type_id = ticket_type_id
        self.name = name
        self.requested = requested
        self.available = available


class TicketCountMismatch(BoxOfficeError):
    kind = ErrorKind.INVENTORY

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            ErrorCode.TICKET_COUNT_MISMATCH,
            f"Order expects {expected} tickets, selections yield {actual}",
        )
        self.expected = expected
        self.actual = actual


# ----------------------------
# external dependency
# ----------------------------
class PaymentInitializationFailed(BoxOfficeError):
    kind = ErrorKind.EXTERNAL

    def __init__(self, detail: str = "Failed to initialize payment") -> None:
        super().__init__(ErrorCode.PAYMENT_INITIALIZATION_FAILED, detail)


class PaymentVerificationFailed(BoxOfficeError):
    kind = ErrorKind.EXTERNAL

    def __init__(self, reference: str | None,
                 detail: str = "Payment verification failed") -> None:
        super().__init__(ErrorCode.PAYMENT_VERIFICATION_FAILED, detail)
        self.reference = reference


class PaymentAmountMismatch(BoxOfficeError):
    kind = ErrorKind.EXTERNAL

    def __init__(self, expected: int, paid: int) -> None:
        super().__init__(ErrorCode.PAYMENT_AMOUNT_MISMATCH,
                         "Payment amount mismatch")
        self.expected = expected
        self.paid = paid


class RefundGatewayFailed(BoxOfficeError):
    kind = ErrorKind.EXTERNAL

    def __init__(self, detail: str = "Failed to process refund with "
                                     "payment provider") -> None:
        super().__init__(ErrorCode.REFUND_GATEWAY_FAILED, detail)


# ----------------------------
# state / lookup / permission
# ----------------------------
class OrderNotFound(BoxOfficeError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, order_id: str) -> None:
        super().__init__(ErrorCode.ORDER_NOT_FOUND, "Order not found")
        self.order_id = order_id


class OrderStateConflict(BoxOfficeError):
    kind = ErrorKind.STATE

    def __init__(self, order_id: str, message: str) -> None:
        super().__init__(ErrorCode.ORDER_STATE_CONFLICT, message)
        self.order_id = order_id


class PermissionDenied(BoxOfficeError):
    kind = ErrorKind.PERMISSION

    def __init__(self, message: str = "Not allowed") -> None:
        super().__init__(ErrorCode.PERMISSION_DENIED, message)


class InvalidTicketPayload(BoxOfficeError):
    def __init__(self, message: str = "Invalid ticket payload") -> None:
        super().__init__(ErrorCode.INVALID_TICKET_PAYLOAD, message)
