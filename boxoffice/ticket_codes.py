# boxoffice/ticket_codes.py
"""
Ticket identifiers and the signed payload printed into each ticket's QR code.

A ticket id looks like ``TKT-LZ3K9Q2A-5F0C1D9E8B7A``: base36 epoch millis
followed by 48 random bits. The unique constraint on ``tickets.ticket_id``
catches the (astronomically unlikely) collision.

The payload binds ticket id, event id and holder so a scanned code cannot be
moved to another event or person without breaking the signature.
"""

from __future__ import annotations
import os
import secrets
import time
from typing import Any, Dict

import jwt

from .errors import InvalidTicketPayload

TICKET_SECRET = os.environ.get("TICKET_SECRET", "dev-ticket-secret")

_B36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def new_ticket_id(now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"TKT-{_base36(now_ms)}-{secrets.token_hex(6).upper()}"


class TicketSigner:
    algorithm = "HS256"

    def __init__(self, secret: str = TICKET_SECRET) -> None:
        self.secret = secret

    def sign(self, ticket_id: str, event_id: str, user_id: str,
             issued_at: float) -> str:
        claims = {
            "ticketId": ticket_id,
            "eventId": event_id,
            "userId": user_id,
            "issuedAt": int(issued_at),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        """Returns the claims, or raises InvalidTicketPayload."""
        try:
            claims = jwt.decode(token, self.secret,
                                algorithms=[self.algorithm],
                                options={"require": ["ticketId"]})
        except jwt.PyJWTError as exc:
            raise InvalidTicketPayload(f"Invalid ticket payload: {exc}")
        return claims
