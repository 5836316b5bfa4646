# src/edgewire/edge/session.py
"""
Tunnel sessions

Multiplexed byte streams over one edge connection, keyed by ``ref``.

Lifecycle per stream:
  PENDING -> OPEN -> CLOSED
  PENDING -> CLOSED            (open refused, no ref allocated)

  - open() creates a PENDING session keyed by the portopen request id.
  - A portopen reply with ok=True assigns the ref and moves it to OPEN.
    ok=False closes it with the server's reason; it never becomes OPEN.
  - An inbound portopen from the server creates an OPEN session directly.
  - portsend / portclose on a ref that is not OPEN is a SessionError
    (UnknownRef). No state is invented for unknown refs.
  - goodbye closes every OPEN session and reports one event per session.
  - teardown() closes everything, PENDING included (connection gone).

The engine does no I/O. It returns events and outbound request records;
the connection sends them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from edgewire.edge.codec import Envelope
from edgewire.edge.dispatch import Dispatcher, EnvelopeKind
from edgewire.edge.edge_logging import log_event
from edgewire.edge.messages import (
    AnyControl,
    Goodbye,
    Method,
    PortClose,
    PortCloseRequest,
    PortOpen,
    PortSend,
    PortSendRequest,
)
from edgewire.errors import DuplicateRef, SessionError, UnknownRef
from edgewire.metrics import inc_counter, set_gauge

log = logging.getLogger("edgewire.session")


class SessionStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(slots=True)
class TunnelSession:
    port: int
    device_id: bytes
    request_id: Optional[int] = None
    ref: Optional[int] = None
    status: SessionStatus = SessionStatus.PENDING
    inbound: bool = False
    reason: str = ""
    bytes_in: int = 0
    bytes_out: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN


class EventKind(str, Enum):
    OPENED = "opened"
    OPEN_FAILED = "open_failed"
    DATA = "data"
    CLOSED = "closed"
    GOODBYE = "goodbye"


@dataclass(frozen=True, slots=True)
class SessionEvent:
    kind: EventKind
    session: Optional[TunnelSession] = None
    data: bytes = b""
    reason: str = ""
    affected: Tuple["SessionEvent", ...] = field(default_factory=tuple)


class TunnelSessionEngine:
    def __init__(self, dispatcher: Optional[Dispatcher] = None) -> None:
        self.dispatcher = dispatcher
        self._lock = threading.RLock()
        self._pending: Dict[int, TunnelSession] = {}
        self._open: Dict[int, TunnelSession] = {}

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    def open(self, port: int, device_id: bytes, *, request_id: int) -> TunnelSession:
        s = TunnelSession(port=int(port), device_id=bytes(device_id), request_id=int(request_id))
        with self._lock:
            if s.request_id in self._pending:
                raise SessionError("open already pending for request", code="duplicate_open", ref=None)
            self._pending[s.request_id] = s
        inc_counter("edge_session_pending")
        return s

    def send(self, ref: int, data: bytes) -> PortSendRequest:
        payload = bytes(data)
        with self._lock:
            s = self._require_open(ref)
            s.bytes_out += len(payload)
        return PortSendRequest(ref=int(ref), data=payload)

    def close(self, ref: int, reason: str = "closed locally") -> PortCloseRequest:
        with self._lock:
            s = self._require_open(ref)
            self._close(s, reason)
        return PortCloseRequest(ref=int(ref))

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def handle_inbound(self, data: Union[bytes, Envelope]) -> SessionEvent:
        """Decode one envelope and apply it. portopen replies are matched by request id."""
        if self.dispatcher is None:
            raise SessionError("session engine has no dispatcher", code="no_dispatcher")
        d = self.dispatcher.decode(data)
        c = d.classified
        if c.kind == EnvelopeKind.RESPONSE and c.method == Method.PORT_OPEN.value:
            return self.apply(d.record, request_id=c.request_id)
        if c.kind != EnvelopeKind.REQUEST:
            raise SessionError(f"not a tunnel control message: {c.kind.value} {c.method}", code="not_tunnel_control")
        return self.apply(d.record)

    def apply(self, record: AnyControl, *, request_id: Optional[int] = None) -> SessionEvent:
        """Apply a decoded control record.

        request_id is set only for replies to our own portopen.
        """
        with self._lock:
            if isinstance(record, PortOpen):
                if request_id is not None:
                    return self._open_reply(record, int(request_id))
                return self._open_inbound(record)
            if isinstance(record, PortSend):
                s = self._require_open(record.ref)
                s.bytes_in += len(record.data)
                return SessionEvent(kind=EventKind.DATA, session=s, data=record.data)
            if isinstance(record, PortClose):
                s = self._require_open(record.ref)
                self._close(s, "closed by server")
                return SessionEvent(kind=EventKind.CLOSED, session=s, reason=s.reason)
            if isinstance(record, Goodbye):
                affected = tuple(
                    SessionEvent(kind=EventKind.CLOSED, session=s, reason=record.reason)
                    for s in self._close_all(record.reason, include_pending=False)
                )
                log_event(log, "goodbye", reason=record.reason, affected=len(affected))
                return SessionEvent(kind=EventKind.GOODBYE, reason=record.reason, affected=affected)
        raise SessionError(f"not a tunnel control record: {type(record).__name__}", code="not_tunnel_control")

    def abandon(self, request_id: int, reason: str) -> Optional[TunnelSession]:
        """Close the PENDING session of an open whose request never went out."""
        with self._lock:
            s = self._pending.get(int(request_id))
            if s is None:
                return None
            self._close(s, reason)
        return s

    def teardown(self, reason: str = "connection closed") -> List[SessionEvent]:
        """Force every PENDING and OPEN session to CLOSED."""
        with self._lock:
            closed = self._close_all(reason, include_pending=True)
        return [SessionEvent(kind=EventKind.CLOSED, session=s, reason=reason) for s in closed]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def session(self, ref: int) -> Optional[TunnelSession]:
        with self._lock:
            return self._open.get(int(ref))

    def pending_session(self, request_id: int) -> Optional[TunnelSession]:
        with self._lock:
            return self._pending.get(int(request_id))

    def open_refs(self) -> List[int]:
        with self._lock:
            return sorted(self._open.keys())

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _require_open(self, ref: int) -> TunnelSession:
        s = self._open.get(int(ref))
        if s is None or s.status != SessionStatus.OPEN:
            inc_counter("edge_session_unknown_ref")
            raise UnknownRef(int(ref))
        return s

    def _open_reply(self, record: PortOpen, request_id: int) -> SessionEvent:
        s = self._pending.get(request_id)
        if s is None:
            raise SessionError("portopen reply without pending open", code="unexpected_open_reply", ref=record.ref)

        if not record.ok:
            del self._pending[request_id]
            s.status = SessionStatus.CLOSED
            s.reason = record.reason or "open refused"
            inc_counter("edge_session_open_failed")
            log_event(log, "session_open_failed", port=s.port, request_id=request_id, reason=s.reason)
            return SessionEvent(kind=EventKind.OPEN_FAILED, session=s, reason=s.reason)

        if record.ref in self._open:
            self._close(s, f"ref {record.ref} already open")
            raise DuplicateRef(record.ref)
        del self._pending[request_id]
        return self._mark_open(s, record.ref)

    def _open_inbound(self, record: PortOpen) -> SessionEvent:
        if not record.ok:
            raise SessionError("inbound portopen must not carry a failure", code="bad_inbound_open", ref=record.ref)
        if record.ref in self._open:
            raise DuplicateRef(record.ref)
        s = TunnelSession(port=record.port, device_id=record.device_id, inbound=True)
        return self._mark_open(s, record.ref)

    def _mark_open(self, s: TunnelSession, ref: int) -> SessionEvent:
        s.ref = int(ref)
        s.status = SessionStatus.OPEN
        self._open[s.ref] = s
        inc_counter("edge_session_opened")
        set_gauge("edge_sessions_open", len(self._open))
        log_event(log, "session_opened", ref=s.ref, port=s.port, inbound=s.inbound)
        return SessionEvent(kind=EventKind.OPENED, session=s)

    def _close(self, s: TunnelSession, reason: str) -> None:
        if s.ref is not None:
            self._open.pop(s.ref, None)
        if s.request_id is not None and self._pending.get(s.request_id) is s:
            del self._pending[s.request_id]
        s.status = SessionStatus.CLOSED
        s.reason = reason
        inc_counter("edge_session_closed")
        set_gauge("edge_sessions_open", len(self._open))
        log_event(log, "session_closed", ref=s.ref, port=s.port, reason=reason)

    def _close_all(self, reason: str, *, include_pending: bool) -> List[TunnelSession]:
        victims = [self._open[r] for r in sorted(self._open)]
        if include_pending:
            victims += list(self._pending.values())
        for s in victims:
            self._close(s, reason)
        return victims
