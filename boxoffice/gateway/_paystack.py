from typing import Any, Dict, Optional, Tuple
import os
import hmac
import hashlib
import json

import httpx

from .base import (
    PaymentGateway, GatewayError, Charge, Verification, RefundResult
)

PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")

_EVENT_KINDS = {
    "charge.success": "succeeded",
    "charge.failed": "failed",
}


class Paystack(PaymentGateway):
    """
    Paystack REST adapter. Amounts are passed through as minor units (kobo
    for NGN), which is what Paystack expects.
    """

    def __init__(
        self,
        secret_key: str = PAYSTACK_SECRET_KEY,
        *,
        http: Optional[httpx.AsyncClient] = None,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float = 10.0,
    ) -> None:
        if not secret_key:
            raise RuntimeError("Paystack requires PAYSTACK_SECRET_KEY")
        self.secret_key = secret_key
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            limits=httpx.Limits(max_connections=64,
                                max_keepalive_connections=64),
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _call(self, method: str, path: str,
                    body: Optional[dict] = None) -> Dict[str, Any]:
        try:
            r = await self.http.request(
                method,
                path,
                json=body,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # timeouts land here too: never an implicit success
            raise GatewayError(f"{method} {path} failed: {e!r}") from e
        try:
            data = r.json()
        except ValueError as e:
            raise GatewayError(
                f"{method} {path}: non-JSON response ({r.status_code})"
            ) from e
        if r.status_code >= 400 or not data.get("status"):
            raise GatewayError(data.get("message") or
                               f"{method} {path}: HTTP {r.status_code}")
        return data

    async def initialize(
        self,
        amount: int,
        reference: str,
        callback_url: Optional[str],
        metadata: Dict[str, Any],
        email: Optional[str] = None,
    ) -> Charge:
        if not email:
            raise GatewayError("Paystack requires a customer email")
        body = {
            "email": email,
            "amount": int(amount),
            "reference": reference,
            "metadata": metadata,
        }
        if callback_url:
            body["callback_url"] = callback_url
        data = await self._call("POST", "/transaction/initialize", body)
        return {
            "reference": data["data"].get("reference", reference),
            "authorization_url": data["data"]["authorization_url"],
        }

    async def verify(self, reference: str) -> Verification:
        data = await self._call("GET", f"/transaction/verify/{reference}")
        tx = data.get("data") or {}
        metadata = tx.get("metadata") or {}
        if isinstance(metadata, str):
            # Paystack echoes metadata back as a JSON string at times
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = {}
        return {
            "status": str(tx.get("status", "")),
            "paid_amount": int(tx.get("amount") or 0),
            "metadata": metadata if isinstance(metadata, dict) else {},
        }

    async def refund(
        self, transaction_reference: str, amount: int
    ) -> RefundResult:
        data = await self._call("POST", "/refund", {
            "transaction": transaction_reference,
            "amount": int(amount),
        })
        return {"status": "success" if data.get("status") else "failed"}

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-paystack-signature")
        expected = hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()
        if not sig or not hmac.compare_digest(expected, sig):
            raise GatewayError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise GatewayError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        name = event.get("event", "")
        return _EVENT_KINDS.get(name, name)

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        data = event.get("data") or {}
        ref = data.get("reference", "")
        evt_id = data.get("id")
        idem = f"{event.get('event', '')}:{evt_id}" if evt_id else None
        return ref, idem
