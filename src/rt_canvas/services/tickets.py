"""
Session tickets.

A ticket is ``rtcanvas1`` followed by unpadded base32 of a compact JSON body
and a CRC32 of that body, so truncated or mistyped tickets fail cleanly
instead of dialing garbage.
"""

from __future__ import annotations

import base64
import binascii
import json
import zlib
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rt_canvas.core.errors import TicketDecodeError

TICKET_PREFIX = "rtcanvas1"
TICKET_VERSION = 1


class Endpoint(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class Ticket(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str = Field(min_length=1)
    endpoints: Tuple[Endpoint, ...] = Field(min_length=1)

    def encode(self) -> str:
        return encode_ticket(self)

    @classmethod
    def decode(cls, raw: str) -> "Ticket":
        return decode_ticket(raw)


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")

    v: int
    doc: str = Field(min_length=1)
    eps: List[Endpoint] = Field(min_length=1)


def encode_ticket(ticket: Ticket) -> str:
    body = json.dumps(
        {"v": TICKET_VERSION, "doc": ticket.document_id, "eps": [e.model_dump() for e in ticket.endpoints]},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    blob = body + zlib.crc32(body).to_bytes(4, "big")
    return TICKET_PREFIX + base64.b32encode(blob).decode("ascii").rstrip("=").lower()


def decode_ticket(raw: str) -> Ticket:
    if not isinstance(raw, str):
        raise TicketDecodeError("ticket must be a string")
    text = raw.strip()
    if not text.startswith(TICKET_PREFIX):
        raise TicketDecodeError("missing prefix")
    data = text[len(TICKET_PREFIX):].upper()
    if not data:
        raise TicketDecodeError("empty ticket")
    padding = "=" * (-len(data) % 8)
    try:
        blob = base64.b32decode(data + padding)
    except (binascii.Error, ValueError) as exc:
        raise TicketDecodeError("bad encoding") from exc
    if len(blob) <= 4:
        raise TicketDecodeError("truncated")
    body, checksum = blob[:-4], blob[-4:]
    if zlib.crc32(body).to_bytes(4, "big") != checksum:
        raise TicketDecodeError("checksum mismatch")
    try:
        parsed = _Body.model_validate(json.loads(body.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise TicketDecodeError("bad payload") from exc
    if parsed.v != TICKET_VERSION:
        raise TicketDecodeError(f"unsupported version {parsed.v}")
    return Ticket(document_id=parsed.doc, endpoints=tuple(parsed.eps))
