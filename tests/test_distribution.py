import pytest

from boxoffice.errors import InsufficientInventory, InvalidQuantity, TicketTypeNotFound
from boxoffice.model.db import TicketType
from boxoffice.orders.distribution import fallback_distribution
from boxoffice.orders.selections import (
    Selection, parse_selections, check_selections, totals_by_type,
)


def _types(*rows):
    return [TicketType(id=tt_id, event_id="e", name=tt_id, price=100,
                       quantity=qty, created_at=float(i))
            for i, (tt_id, qty) in enumerate(rows)]


def test_single_type_takes_every_unit():
    assert fallback_distribution("o1", 4, _types(("A", 10))) == [
        Selection("A", 4)
    ]


def test_multiple_types_fill_in_catalogue_order():
    sels = fallback_distribution("o1", 5, _types(("A", 2), ("B", 0), ("C", 9)))
    assert sels == [Selection("A", 2), Selection("C", 3)]
    assert sum(s.quantity for s in sels) == 5


def test_not_enough_units_anywhere():
    with pytest.raises(InsufficientInventory) as exc:
        fallback_distribution("o1", 5, _types(("A", 2), ("B", 2)))
    assert exc.value.available == 4
    assert exc.value.requested == 5


def test_parse_selections_accepts_metadata_shapes():
    raw = [
        {"ticketTypeId": "A", "quantity": "2"},
        {"ticket_type_id": "B", "quantity": 1},
        ("A", 1),
    ]
    sels = parse_selections(raw)
    assert sels == [Selection("A", 2), Selection("B", 1), Selection("A", 1)]
    assert totals_by_type(sels) == {"A": 3, "B": 1}


def test_check_selections_rejects_bad_input():
    with pytest.raises(InvalidQuantity):
        check_selections([], ["A"])
    with pytest.raises(InvalidQuantity):
        check_selections([Selection("A", 0)], ["A"])
    with pytest.raises(TicketTypeNotFound):
        check_selections([Selection("Z", 1)], ["A"])
    with pytest.raises(InvalidQuantity):
        parse_selections([{"ticket_type_id": "A", "quantity": "many"}])
