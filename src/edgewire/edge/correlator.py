# src/edgewire/edge/correlator.py
"""
Response correlation

Each outbound request registers (request_id -> decoder) before its bytes
leave. When a response with that id arrives the registered decoder is used,
never the dispatcher's guess, so the decode shape always matches what the
caller asked for.

Lifecycle of a request id:
  register -> resolve (result or error delivered once) -> consumed
  register -> fail_all (connection closed)             -> consumed

A consumed id is remembered for a bounded window so a duplicate response is
reported as RequestAlreadyResolved rather than as an unknown id.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from edgewire.edge import rlp
from edgewire.edge.codec import EdgeCodec, Envelope, ResponseDecoder
from edgewire.edge.edge_logging import log_event
from edgewire.edge.messages import ERROR_TAG
from edgewire.errors import (
    ConnectionClosed,
    DispatchError,
    EdgeError,
    RemoteError,
    RequestAlreadyResolved,
    ResponseHandlerNotFound,
)
from edgewire.metrics import inc_counter

log = logging.getLogger("edgewire.correlator")

_CONSUMED_WINDOW = 4096


@dataclass
class _Pending:
    method: str
    decoder: ResponseDecoder
    future: "Future[Any]"


def _settle(fut: "Future[Any]", *, result: Any = None, error: BaseException | None = None) -> None:
    if fut.done():
        return
    if error is not None:
        fut.set_exception(error)
    else:
        fut.set_result(result)


class ResponseCorrelator:
    def __init__(self, codec: EdgeCodec) -> None:
        self.codec = codec
        self._lock = threading.Lock()
        self._pending: Dict[int, _Pending] = {}
        self._consumed: "OrderedDict[int, None]" = OrderedDict()
        self._closed_reason: str | None = None

    def register(self, request_id: int, decoder: ResponseDecoder, method: str = "") -> "Future[Any]":
        fut: "Future[Any]" = Future()
        with self._lock:
            if self._closed_reason is not None:
                raise ConnectionClosed(self._closed_reason)
            if request_id in self._pending:
                raise DispatchError(
                    "request id already registered",
                    code="duplicate_request_id",
                    details={"request_id": int(request_id)},
                )
            self._consumed.pop(request_id, None)
            self._pending[request_id] = _Pending(method=method, decoder=decoder, future=fut)
        return fut

    def resolve(self, data: Union[bytes, Envelope]) -> Any:
        """Decode a response/error envelope with the decoder registered for its id.

        Error envelopes raise RemoteError. Decode failures propagate. In both
        cases the same error is delivered to the request's future first.
        """
        env = self.codec.decode_envelope(data)
        rid = env.request_id

        with self._lock:
            pending = self._pending.pop(rid, None)
            if pending is None:
                if rid in self._consumed:
                    raise RequestAlreadyResolved(rid)
                raise ResponseHandlerNotFound(details={"request_id": rid})
            self._consumed[rid] = None
            while len(self._consumed) > _CONSUMED_WINDOW:
                self._consumed.popitem(last=False)

        try:
            if rlp.to_text(env.payload[0], "$[1][0]") == ERROR_TAG:
                reply = self.codec.decode_error(env)
                raise RemoteError(reply.method or pending.method, reply.message)
            result = pending.decoder(env)
        except EdgeError as e:
            inc_counter("edge_response_failed")
            log_event(log, "response_failed", request_id=rid, method=pending.method, code=e.code)
            _settle(pending.future, error=e)
            raise

        _settle(pending.future, result=result)
        return result

    def abandon(self, request_id: int, error: BaseException) -> bool:
        """Fail one outstanding request (its bytes never left). False if it was not pending."""
        with self._lock:
            pending = self._pending.pop(request_id, None)
            if pending is None:
                return False
            self._consumed[request_id] = None
        _settle(pending.future, error=error)
        return True

    def fail_all(self, reason: str = "connection closed") -> int:
        """Fail every outstanding request with ConnectionClosed; later registers are refused."""
        with self._lock:
            self._closed_reason = reason
            pending = list(self._pending.items())
            self._pending.clear()
            for rid, _ in pending:
                self._consumed[rid] = None

        for _, p in pending:
            _settle(p.future, error=ConnectionClosed(reason))
        if pending:
            log_event(log, "requests_failed", count=len(pending), reason=reason)
        return len(pending)

    def is_pending(self, request_id: int) -> bool:
        with self._lock:
            return int(request_id) in self._pending

    def pending_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._pending.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
