from typing import Any, Dict, Optional, Tuple
import os
import hmac
import hashlib
import base64
import json
import time
import uuid

from .base import (
    PaymentGateway, GatewayError, Charge, Verification, RefundResult
)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# outcome on the pay page -> status reported by verify()
_OUTCOME_STATUS = {
    "succeeded": "success",
    "failed": "failed",
    "canceled": "abandoned",
}


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentGateway):
    """
    In-process stand-in for a hosted payment page.

    Charges live in memory: ``initialize`` opens one, the pay page (or a
    test) settles it with ``settle``, and ``verify`` reports what was
    settled. Webhooks are signed with HMAC-SHA256 over the raw body.
    """

    def __init__(self, secret: str = MOCK_SECRET, base_url: str = "") -> None:
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self._charges: Dict[str, Dict[str, Any]] = {}

    async def initialize(
        self,
        amount: int,
        reference: str,
        callback_url: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> Charge:
        if amount <= 0:
            raise GatewayError("amount must be positive")
        if reference in self._charges:
            raise GatewayError("duplicate reference")
        self._charges[reference] = {
            "reference": reference,
            "amount": int(amount),
            "paid_amount": 0,
            "status": "pending",
            "metadata": dict(metadata),
            "email": email,
            "callback_url": callback_url,
            "refunded": 0,
            "created_at": time.time(),
        }
        return {
            "reference": reference,
            "authorization_url": f"{self.base_url}/mockpay/{reference}",
        }

    def charge(self, reference: str) -> Optional[Dict[str, Any]]:
        return self._charges.get(reference)

    def settle(self, reference: str, outcome: str,
               paid_amount: Optional[int] = None) -> Dict[str, Any]:
        """Record what the buyer did on the pay page."""
        ch = self._charges.get(reference)
        if ch is None:
            raise GatewayError("unknown reference")
        if outcome not in _OUTCOME_STATUS:
            raise GatewayError(f"invalid outcome: {outcome}")
        ch["status"] = _OUTCOME_STATUS[outcome]
        if outcome == "succeeded":
            ch["paid_amount"] = (
                ch["amount"] if paid_amount is None else int(paid_amount)
            )
        return ch

    async def verify(self, reference: str) -> Verification:
        ch = self._charges.get(reference)
        if ch is None:
            raise GatewayError("unknown reference")
        return {
            "status": ch["status"],
            "paid_amount": ch["paid_amount"],
            "metadata": dict(ch["metadata"]),
        }

    async def refund(
        self, transaction_reference: str, amount: int
    ) -> RefundResult:
        ch = self._charges.get(transaction_reference)
        if ch is None:
            raise GatewayError("unknown transaction")
        refundable = ch["paid_amount"] - ch["refunded"]
        if ch["status"] != "success" or amount > refundable:
            return {"status": "failed"}
        ch["refunded"] += int(amount)
        return {"status": "success"}

    # ---- webhooks
    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, reference: str, kind: str) -> bytes:
        ch = self._charges.get(reference) or {}
        event = {
            "type": f"payment.{kind}",
            "reference": reference,
            "amount": ch.get("paid_amount", 0),
            "metadata": ch.get("metadata", {}),
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        return json.dumps(event).encode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise GatewayError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise GatewayError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("reference", ""),
                event.get("idempotency_key")
        )
