# src/edgewire/edge/ticket.py
"""
Usage tickets

A device pays for relay service by periodically signing a ticket over its
accumulated usage counters. The server answers with one of three outcomes:

  "thanks!"   accepted; the ticket becomes void and counters reset
  "too_old"   the block referenced is stale; retry with a newer block,
              counters unchanged
  "too_low"   the server has seen more usage than claimed; counters are
              raised to the server's totals so the next ticket covers them

Any other reply is a TicketError and is never treated as acceptance.

Every outcome carries the ticket fields the server supplied so the caller
can audit them. Retrying is the caller's decision.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from edgewire.crypto.signer import Signer
from edgewire.edge import rlp
from edgewire.edge.codec import EdgeCodec, Envelope
from edgewire.edge.edge_logging import log_event
from edgewire.edge.messages import ADDRESS_SIZE, DeviceTicket, Method, TicketErrorKind, TicketRequest
from edgewire.errors import DecodeError, TicketError
from edgewire.metrics import inc_counter

log = logging.getLogger("edgewire.ticket")


@dataclass(frozen=True, slots=True)
class TicketParams:
    """Block the ticket is anchored to. Counters default to what the manager has recorded."""

    block_number: int
    block_hash: bytes
    total_connections: Optional[int] = None
    total_bytes: Optional[int] = None


class TicketOutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    TOO_OLD = "too_old"
    TOO_LOW = "too_low"


@dataclass(frozen=True, slots=True)
class TicketOutcome:
    kind: TicketOutcomeKind
    ticket: DeviceTicket

    @property
    def accepted(self) -> bool:
        return self.kind == TicketOutcomeKind.ACCEPTED

    @property
    def min_block(self) -> int:
        """For TOO_OLD: the oldest block the server will accept."""
        return self.ticket.block_number

    @property
    def required_connections(self) -> int:
        return self.ticket.total_connections

    @property
    def required_bytes(self) -> int:
        return self.ticket.total_bytes


def ticket_preimage(
    *,
    server_id: bytes,
    block_hash: bytes,
    fleet_addr: bytes,
    total_connections: int,
    total_bytes: int,
    local_addr: bytes,
) -> bytes:
    """Canonical bytes a device signs for a ticket."""
    return rlp.encode(
        [
            bytes(server_id),
            bytes(block_hash),
            bytes(fleet_addr),
            int(total_connections),
            int(total_bytes),
            bytes(local_addr),
        ]
    )


def _check_address(name: str, value: bytes) -> bytes:
    b = bytes(value)
    if len(b) != ADDRESS_SIZE:
        raise ValueError(f"{name} must be {ADDRESS_SIZE} bytes")
    return b


class TicketManager:
    def __init__(
        self,
        *,
        signer: Signer,
        codec: EdgeCodec,
        server_id: bytes,
        fleet_addr: bytes,
        local_addr: bytes = b"",
    ) -> None:
        self.signer = signer
        self.codec = codec
        self.server_id = _check_address("server_id", server_id)
        self.fleet_addr = _check_address("fleet_addr", fleet_addr)
        self.local_addr = bytes(local_addr)

        self._lock = threading.Lock()
        self._connections = 0
        self._bytes = 0
        self.pending: Optional[DeviceTicket] = None

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def record_usage(self, connections: int = 0, bytes_: int = 0) -> None:
        if connections < 0 or bytes_ < 0:
            raise ValueError("usage must be non-negative")
        with self._lock:
            self._connections += int(connections)
            self._bytes += int(bytes_)

    @property
    def counters(self) -> Tuple[int, int]:
        with self._lock:
            return self._connections, self._bytes

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def sign_ticket(self, params: TicketParams) -> DeviceTicket:
        conns, nbytes = self.counters
        if params.total_connections is not None:
            conns = int(params.total_connections)
        if params.total_bytes is not None:
            nbytes = int(params.total_bytes)

        preimage = ticket_preimage(
            server_id=self.server_id,
            block_hash=params.block_hash,
            fleet_addr=self.fleet_addr,
            total_connections=conns,
            total_bytes=nbytes,
            local_addr=self.local_addr,
        )
        return DeviceTicket(
            server_id=self.server_id,
            fleet_addr=self.fleet_addr,
            total_connections=conns,
            total_bytes=nbytes,
            local_addr=self.local_addr,
            device_sig=self.signer.sign(preimage),
            block_hash=bytes(params.block_hash),
            block_number=int(params.block_number),
        )

    def request_for(self, ticket: DeviceTicket) -> TicketRequest:
        return TicketRequest(
            block_number=ticket.block_number,
            fleet_addr=ticket.fleet_addr,
            total_connections=ticket.total_connections,
            total_bytes=ticket.total_bytes,
            local_addr=ticket.local_addr,
            device_sig=ticket.device_sig,
        )

    def build_ticket(self, params: TicketParams, *, request_id: int) -> bytes:
        """Sign the current counters and return the encoded ``ticket`` request."""
        ticket = self.sign_ticket(params)
        data, _ = self.codec.encode_request(request_id, self.request_for(ticket))
        with self._lock:
            self.pending = ticket
        inc_counter("edge_ticket_built")
        log_event(
            log,
            "ticket_built",
            request_id=request_id,
            block_number=ticket.block_number,
            total_connections=ticket.total_connections,
            total_bytes=ticket.total_bytes,
        )
        return data

    # ------------------------------------------------------------------
    # Interpret
    # ------------------------------------------------------------------

    def interpret(self, ticket: DeviceTicket) -> TicketOutcome:
        """Apply a decoded server reply to the manager's state."""
        if ticket.error is None:
            if not ticket.is_void:
                raise TicketError("accepted ticket must be void")
            with self._lock:
                self._connections = 0
                self._bytes = 0
                self.pending = None
            kind = TicketOutcomeKind.ACCEPTED

        elif ticket.error == TicketErrorKind.TOO_OLD:
            kind = TicketOutcomeKind.TOO_OLD

        elif ticket.error == TicketErrorKind.TOO_LOW:
            with self._lock:
                self._connections = max(self._connections, ticket.total_connections)
                self._bytes = max(self._bytes, ticket.total_bytes)
            kind = TicketOutcomeKind.TOO_LOW

        else:
            raise TicketError(details={"error": str(ticket.error)})

        inc_counter(f"edge_ticket_{kind.value}")
        log_event(
            log,
            "ticket_outcome",
            outcome=kind.value,
            block_number=ticket.block_number,
            total_connections=ticket.total_connections,
            total_bytes=ticket.total_bytes,
        )
        return TicketOutcome(kind=kind, ticket=ticket)

    def interpret_reply(self, reply: Union[bytes, Envelope, DeviceTicket]) -> TicketOutcome:
        if isinstance(reply, DeviceTicket):
            return self.interpret(reply)
        try:
            ticket = self.codec.decode_response(reply, Method.TICKET.value)
        except DecodeError as e:
            inc_counter("edge_ticket_unparsed")
            raise TicketError(details={"path": e.path, "reason": e.reason}) from e
        return self.interpret(ticket)
