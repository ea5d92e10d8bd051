import os
from typing import Optional

import httpx

from .base import (
    PaymentGateway, GatewayError, Charge, Verification, RefundResult
)
from ._mock import MockPay, MOCK_SECRET
from ._paystack import Paystack

BACKEND = os.getenv("PAYMENT_GATEWAY", "mock").lower()  # 'mock' | 'paystack'


def new_gateway(*, http: Optional[httpx.AsyncClient] = None,
                base_url: str = "") -> PaymentGateway:
    if BACKEND == "paystack":
        return Paystack(http=http)
    return MockPay(base_url=base_url)


__all__ = [
    "PaymentGateway", "GatewayError", "Charge", "Verification",
    "RefundResult", "MockPay", "Paystack", "MOCK_SECRET", "new_gateway",
    "BACKEND",
]
