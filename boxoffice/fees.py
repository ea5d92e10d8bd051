import os
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .helpers import percent_of

PLATFORM_FEE_PERCENTAGE = float(os.environ.get("PLATFORM_FEE_PERCENTAGE", "5"))


class FeeCalculator(ABC):
    @abstractmethod
    async def fee_percentage(self, organizer_id: Optional[str]) -> float: ...

    async def platform_fee(self, organizer_id: Optional[str],
                           total_amount: int) -> int:
        if total_amount <= 0:
            return 0
        pct = await self.fee_percentage(organizer_id)
        return percent_of(total_amount, pct)


class StaticFees(FeeCalculator):
    """Platform default with optional per-organizer overrides."""

    def __init__(self, default: float = PLATFORM_FEE_PERCENTAGE,
                 overrides: Optional[Dict[str, float]] = None) -> None:
        self.default = float(default)
        self.overrides = dict(overrides or {})

    async def fee_percentage(self, organizer_id: Optional[str]) -> float:
        if organizer_id and organizer_id in self.overrides:
            return float(self.overrides[organizer_id])
        return self.default
