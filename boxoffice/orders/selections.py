from __future__ import annotations
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple

from ..errors import InvalidQuantity, TicketTypeNotFound


class Selection(NamedTuple):
    ticket_type_id: str
    quantity: int


def parse_selections(raw: Any) -> List[Selection]:
    """
    Accepts ``[(type_id, qty), ...]``, ``[Selection, ...]`` or the dict form
    gateways echo back in metadata: ``[{"ticketTypeId"|"ticket_type_id":
    ..., "quantity": ...}, ...]``. Order is preserved.
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise InvalidQuantity("selections must be a list")
    out: List[Selection] = []
    for item in raw:
        if isinstance(item, Mapping):
            tt_id = item.get("ticket_type_id") or item.get("ticketTypeId")
            qty = item.get("quantity")
        else:
            try:
                tt_id, qty = item
            except (TypeError, ValueError):
                raise InvalidQuantity("malformed selection")
        if not tt_id:
            raise TicketTypeNotFound("")
        if isinstance(qty, bool) or not isinstance(qty, int):
            try:
                qty = int(qty)
            except (TypeError, ValueError):
                raise InvalidQuantity("quantity must be an integer")
        out.append(Selection(str(tt_id), qty))
    return out


def check_selections(selections: List[Selection],
                     known_type_ids: Iterable[str]) -> None:
    if not selections:
        raise InvalidQuantity("At least one ticket must be selected")
    known = set(known_type_ids)
    for sel in selections:
        if sel.quantity <= 0:
            raise InvalidQuantity("Quantity must be at least 1")
        if sel.ticket_type_id not in known:
            raise TicketTypeNotFound(sel.ticket_type_id)


def totals_by_type(selections: Iterable[Selection]) -> Dict[str, int]:
    # insertion order follows first appearance
    out: Dict[str, int] = {}
    for sel in selections:
        out[sel.ticket_type_id] = out.get(sel.ticket_type_id, 0) + sel.quantity
    return out


def to_metadata(selections: Iterable[Selection]) -> List[Dict[str, Any]]:
    return [{"ticket_type_id": s.ticket_type_id, "quantity": s.quantity}
            for s in selections]
