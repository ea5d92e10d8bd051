"""
Last-resort ticket distribution for orders that reach fulfillment without
any record of which ticket types were bought.

Orders created by intake always store their selections, so this only runs
for legacy or hand-made orders. Every use is audit-logged.
"""

from __future__ import annotations
from typing import List, Sequence

from loguru import logger

from ..errors import InsufficientInventory
from ..model.db import TicketType
from .selections import Selection


def fallback_distribution(order_id: str, quantity: int,
                          types: Sequence[TicketType]) -> List[Selection]:
    """
    Fill ``quantity`` units from ``types`` in catalogue order, each type up
    to its remaining units. With a single type in stock that type gets
    everything. Raises InsufficientInventory if the event cannot cover it.
    """
    need = quantity
    out: List[Selection] = []
    for tt in types:
        if need <= 0:
            break
        take = min(tt.quantity, need)
        if take <= 0:
            continue
        out.append(Selection(tt.id, take))
        need -= take

    if need > 0:
        available = sum(max(tt.quantity, 0) for tt in types)
        raise InsufficientInventory(None, None, quantity, available)

    logger.warning(
        "AUDIT fallback distribution for order {}: {}",
        order_id,
        ", ".join(f"{s.ticket_type_id}x{s.quantity}" for s in out),
    )
    return out
