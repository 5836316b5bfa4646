# src/edgewire/edge/dispatch.py
"""
Method dispatch

Classifies an inbound envelope as response / error / inbound request, finds
its method, and produces the matching typed record.

Two strategies:

  structural (default)
    Decode the generic envelope once, read the outer tag and the method
    field, look the method up in a read-only table. A payload byte sequence
    can never change the classification.

  legacy sniffing (legacy_sniffing=True, EDGE_LEGACY_DISPATCH=1)
    Search the raw buffer for method markers before any structural read,
    as older edge clients did. Markers are tried in LEGACY_MARKERS order:
    longest first (so "getblockheader2" beats "getblockheader" beats
    "getblock"), ties in table order. When two unrelated markers occur the
    first in that order wins. A payload that happens to contain a marker
    (binary data holding b"ticket", say) can be misclassified; that risk is
    accepted for the legacy path only. The kind is sniffed the same way:
    b"response" first, then b"error".

Unknown methods raise ResponseHandlerNotFound; nothing is dropped silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Union

from edgewire.edge import rlp
from edgewire.edge.codec import INBOUND_METHODS, RESPONSE_SHAPES, EdgeCodec, Envelope
from edgewire.edge.edge_logging import log_event
from edgewire.edge.messages import ERROR_TAG, RESPONSE_TAG
from edgewire.errors import DecodeError, ResponseHandlerNotFound
from edgewire.metrics import inc_counter

log = logging.getLogger("edgewire.dispatch")


class EnvelopeKind(str, Enum):
    RESPONSE = "response"
    ERROR = "error"
    REQUEST = "request"


def _legacy_markers() -> Tuple[Tuple[bytes, str], ...]:
    methods = list(dict.fromkeys(list(RESPONSE_SHAPES.keys()) + sorted(INBOUND_METHODS)))
    ordered = sorted(methods, key=lambda m: -len(m))  # stable: ties keep table order
    return tuple((m.encode("ascii"), m) for m in ordered)


LEGACY_MARKERS: Tuple[Tuple[bytes, str], ...] = _legacy_markers()

_RESPONSE_MARKER = RESPONSE_TAG.encode("ascii")
_ERROR_MARKER = ERROR_TAG.encode("ascii")


@dataclass(frozen=True, slots=True)
class Classified:
    kind: EnvelopeKind
    method: str
    request_id: int
    envelope: Envelope


@dataclass(frozen=True, slots=True)
class Dispatched:
    classified: Classified
    record: Any


class Dispatcher:
    def __init__(self, codec: EdgeCodec, *, legacy_sniffing: bool = False) -> None:
        self.codec = codec
        self.legacy_sniffing = bool(legacy_sniffing)

    def classify(self, data: Union[bytes, Envelope]) -> Classified:
        env = self.codec.decode_envelope(data)
        if self.legacy_sniffing and not isinstance(data, Envelope):
            kind, method = self._sniff(bytes(data))
        else:
            kind, method = self._structural(env)

        known = INBOUND_METHODS if kind == EnvelopeKind.REQUEST else RESPONSE_SHAPES
        if kind != EnvelopeKind.ERROR and method not in known:
            inc_counter("edge_dispatch_miss")
            log_event(log, "dispatch_miss", kind=kind.value, method=method, request_id=env.request_id)
            raise ResponseHandlerNotFound(details={"kind": kind.value, "method": method})
        return Classified(kind=kind, method=method, request_id=env.request_id, envelope=env)

    def decode(self, data: Union[bytes, Envelope]) -> Dispatched:
        return self.decode_classified(self.classify(data))

    def decode_classified(self, c: Classified) -> Dispatched:
        if c.kind == EnvelopeKind.ERROR:
            record: Any = self.codec.decode_error(c.envelope)
        elif c.kind == EnvelopeKind.RESPONSE:
            record = self.codec.response_decoder(c.method)(c.envelope)
        else:
            record = self.codec.decode_inbound(c.envelope)
        return Dispatched(classified=c, record=record)

    # ------------------------------------------------------------------

    @staticmethod
    def _structural(env: Envelope) -> Tuple[EnvelopeKind, str]:
        p = env.payload
        head = rlp.to_text(p[0], "$[1][0]")
        if head == RESPONSE_TAG:
            if len(p) < 2:
                raise DecodeError("response without method", path="$[1]")
            return EnvelopeKind.RESPONSE, rlp.to_text(p[1], "$[1][1]")
        if head == ERROR_TAG:
            method = rlp.to_text(p[1], "$[1][1]") if len(p) >= 3 else ""
            return EnvelopeKind.ERROR, method
        return EnvelopeKind.REQUEST, head

    @staticmethod
    def _sniff(buf: bytes) -> Tuple[EnvelopeKind, str]:
        if _RESPONSE_MARKER in buf:
            kind = EnvelopeKind.RESPONSE
        elif _ERROR_MARKER in buf:
            return EnvelopeKind.ERROR, ""
        else:
            kind = EnvelopeKind.REQUEST

        method = sniff_method(buf, inbound=kind == EnvelopeKind.REQUEST)
        return kind, method or ""


def sniff_method(buf: bytes, *, inbound: bool = False) -> Optional[str]:
    """First legacy marker found in buf, in precedence order."""
    for marker, method in LEGACY_MARKERS:
        if inbound and method not in INBOUND_METHODS:
            continue
        if marker in buf:
            return method
    return None
