from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict


class GatewayError(Exception):
    """The payment processor failed, timed out, or answered nonsense."""


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class Charge(TypedDict):
    reference: str
    authorization_url: str


class Verification(TypedDict):
    # "success" is the only status that counts as paid
    status: str
    paid_amount: int  # minor units
    metadata: Dict[str, Any]


class RefundResult(TypedDict):
    status: str


class PaymentGateway(ABC):
    @abstractmethod
    async def initialize(
        self,
        amount: int,
        reference: str,
        callback_url: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> Charge: ...

    # the sole source of truth for "was this actually paid"
    @abstractmethod
    async def verify(self, reference: str) -> Verification: ...

    @abstractmethod
    async def refund(
        self, transaction_reference: str, amount: int
    ) -> RefundResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | anything else is ignored
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment reference, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    async def aclose(self) -> None:
        return None
