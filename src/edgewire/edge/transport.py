# src/edgewire/edge/transport.py
"""
Transport abstraction

The engine never opens sockets. A transport takes one framed envelope per
send() and is closed once when the connection ends. TLS/TCP backends live
with the caller.
"""

from __future__ import annotations

from typing import List, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    def send(self, payload: bytes) -> None: ...
    def close(self) -> None: ...


class InMemoryTransport:
    """
    Minimal in-process transport used for unit tests.

    - Records every frame sent, in order
    - send() after close() raises, like a dead socket would
    """

    def __init__(self) -> None:
        self._out: List[bytes] = []
        self.closed = False

    def send(self, payload: bytes) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        self._out.append(bytes(payload))

    def close(self) -> None:
        self.closed = True

    # ---- helpers for tests / harness ----

    def drain(self) -> List[bytes]:
        out = list(self._out)
        self._out.clear()
        return out
