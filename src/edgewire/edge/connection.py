# src/edgewire/edge/connection.py
"""
Edge connection engine

One instance per connection to one edge server. Owns the request id
sequence, a response correlator and a tunnel session engine; shares no
mutable state with other connections.

Send path:   call() -> encode -> register decoder -> transport.send
             (hello, portsend, portclose, goodbye register nothing)
Receive path: receive(bytes) -> classify ->
                response / error  -> correlator (registered decoder)
                inbound request   -> session engine (portopen is answered)

close() is idempotent: every PENDING/OPEN session is forced CLOSED, every
outstanding request fails with ConnectionClosed, the transport is closed.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from edgewire.config import EdgeConfig, default_edge_config
from edgewire.edge.codec import NO_REPLY_METHODS, EdgeCodec, Envelope
from edgewire.edge.correlator import ResponseCorrelator
from edgewire.edge.dispatch import Dispatcher, EnvelopeKind
from edgewire.edge.edge_logging import log_event
from edgewire.edge.messages import (
    EdgeRequest,
    Goodbye,
    HelloRequest,
    Method,
    PortOpen,
    PortOpenRequest,
)
from edgewire.edge.session import SessionEvent, TunnelSession, TunnelSessionEngine
from edgewire.edge.ticket import TicketManager, TicketOutcome, TicketParams
from edgewire.edge.transport import Transport
from edgewire.errors import ConnectionClosed, DecodeError, RemoteError, SessionError
from edgewire.metrics import inc_counter

log = logging.getLogger("edgewire.connection")


@dataclass(frozen=True, slots=True)
class InboundResult:
    kind: EnvelopeKind
    method: str
    request_id: int
    result: Any = None
    event: Optional[SessionEvent] = None


class EdgeConnection:
    def __init__(
        self,
        *,
        transport: Transport,
        codec: Optional[EdgeCodec] = None,
        config: Optional[EdgeConfig] = None,
        ticket_manager: Optional[TicketManager] = None,
    ) -> None:
        self.transport = transport
        self.config = config or default_edge_config()
        self.codec = codec or EdgeCodec()
        self.dispatcher = Dispatcher(self.codec, legacy_sniffing=self.config.legacy_dispatch)
        self.correlator = ResponseCorrelator(self.codec)
        self.sessions = TunnelSessionEngine(self.dispatcher)
        self.tickets = ticket_manager

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self.close_reason = ""

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def _next_id(self) -> int:
        with self._lock:
            if self._closed:
                raise ConnectionClosed(self.close_reason)
            return next(self._ids)

    def _send_registered(self, request_id: int, data: bytes, decoder: Any, method: str) -> "Future[Any]":
        if decoder is None:
            # Nothing to wait for: the future is done once the bytes are out.
            self.transport.send(data)
            inc_counter("edge_requests_sent")
            fut: "Future[Any]" = Future()
            fut.set_result(None)
            return fut

        fut = self.correlator.register(request_id, decoder, method)
        try:
            self.transport.send(data)
        except Exception as e:
            self.correlator.abandon(request_id, ConnectionClosed(f"send failed: {e}"))
            raise
        inc_counter("edge_requests_sent")
        return fut

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def call(self, request: EdgeRequest) -> "Future[Any]":
        rid = self._next_id()
        data, decoder = self.codec.encode_request(rid, request)
        return self._send_registered(rid, data, decoder, request.method_name)

    def hello(self) -> "Future[Any]":
        return self.call(HelloRequest(flag=self.config.hello_flag))

    def open_port(self, port: int, device_id: bytes) -> Tuple[TunnelSession, "Future[SessionEvent]"]:
        """Request a tunnel. The future resolves to the OPENED / OPEN_FAILED event."""
        rid = self._next_id()
        session = self.sessions.open(port, device_id, request_id=rid)
        try:
            data, decode = self.codec.encode_request(
                rid, PortOpenRequest(device_id=bytes(device_id), port=int(port), mode=self.config.port_mode)
            )

            def decode_and_apply(env: Envelope) -> SessionEvent:
                return self.sessions.apply(decode(env), request_id=rid)

            fut = self._send_registered(rid, data, decode_and_apply, Method.PORT_OPEN.value)
        except Exception as e:
            self.sessions.abandon(rid, f"open not sent: {e}")
            raise
        return session, fut

    def send_port(self, ref: int, data: bytes) -> "Future[Any]":
        return self.call(self.sessions.send(ref, data))

    def close_port(self, ref: int) -> "Future[Any]":
        return self.call(self.sessions.close(ref))

    def submit_ticket(self, params: TicketParams) -> "Future[TicketOutcome]":
        if self.tickets is None:
            raise SessionError("connection has no ticket manager", code="no_ticket_manager")
        tickets = self.tickets
        rid = self._next_id()
        data = tickets.build_ticket(params, request_id=rid)
        decode = self.codec.response_decoder(Method.TICKET.value)

        def decode_and_interpret(env: Envelope) -> TicketOutcome:
            return tickets.interpret(decode(env))

        return self._send_registered(rid, data, decode_and_interpret, Method.TICKET.value)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def receive(self, data: bytes) -> InboundResult:
        if self.closed:
            raise ConnectionClosed(self.close_reason)
        if len(data) > self.config.max_envelope_bytes:
            inc_counter("edge_envelope_too_large")
            raise DecodeError(f"envelope of {len(data)} bytes exceeds limit {self.config.max_envelope_bytes}")

        try:
            c = self.dispatcher.classify(data)
        except DecodeError as e:
            inc_counter("edge_decode_failed")
            log_event(log, "decode_failed", path=e.path, reason=e.reason, size=len(data))
            raise

        if c.kind == EnvelopeKind.REQUEST:
            return self._receive_control(c.request_id, c.method, self.dispatcher.decode_classified(c).record)

        if (
            c.kind == EnvelopeKind.RESPONSE
            and c.method in NO_REPLY_METHODS
            and not self.correlator.is_pending(c.request_id)
        ):
            inc_counter("edge_unsolicited_ack")
            record = self.dispatcher.decode_classified(c).record
            return InboundResult(kind=c.kind, method=c.method, request_id=c.request_id, result=record)

        try:
            result = self.correlator.resolve(c.envelope)
        except RemoteError as e:
            self._fail_pending_open(c.request_id, e.message)
            raise
        event = result if isinstance(result, SessionEvent) else None
        return InboundResult(kind=c.kind, method=c.method, request_id=c.request_id, result=result, event=event)

    def _fail_pending_open(self, request_id: int, reason: str) -> None:
        if self.sessions.pending_session(request_id) is not None:
            self.sessions.apply(PortOpen(ref=0, ok=False, reason=reason), request_id=request_id)

    def _receive_control(self, request_id: int, method: str, record: Any) -> InboundResult:
        if isinstance(record, PortOpen):
            try:
                event = self.sessions.apply(record)
            except SessionError as e:
                self.transport.send(self.codec.encode_error(request_id, method, e.reason))
                raise
            self.transport.send(self.codec.encode_response(request_id, method, PortOpen(ref=record.ref, ok=True)))
        else:
            event = self.sessions.apply(record)

        if isinstance(record, Goodbye):
            self.close(record.reason)
        return InboundResult(
            kind=EnvelopeKind.REQUEST,
            method=method,
            request_id=request_id,
            result=record,
            event=event,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self, reason: str = "connection closed") -> List[SessionEvent]:
        with self._lock:
            if self._closed:
                return []
            self._closed = True
            self.close_reason = reason

        events = self.sessions.teardown(reason)
        failed = self.correlator.fail_all(reason)
        try:
            self.transport.close()
        finally:
            inc_counter("edge_connections_closed")
            log_event(log, "connection_closed", reason=reason, sessions=len(events), requests=failed)
        return events


