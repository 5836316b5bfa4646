# src/edgewire/__init__.py
"""
edgewire: client-side edge protocol engine

This package lets a device talk to relay ("edge") servers over a single
binary envelope format:
  - edge.rlp: nested-value grammar (byte strings, unsigned ints, lists)
  - edge.messages: typed request / response / tunnel control records
  - edge.codec: per-method shape registry, encode/decode
  - edge.dispatch: classify inbound envelopes and route to decoders
  - edge.merkle: Merkle state proof verification
  - edge.ticket: usage tickets and renegotiation
  - edge.session: multiplexed tunnel sessions keyed by ref
  - edge.correlator: match responses to pending requests
  - edge.connection: one connection's engine wiring the above together

Transport (TCP/TLS), peer discovery and key management stay outside; the
engine only sees bytes in and bytes out.
"""

from __future__ import annotations

__all__ = [
    "config",
    "errors",
    "metrics",
    "edge",
]

__version__ = "0.1.0"
