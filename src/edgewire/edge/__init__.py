"""
edgewire.edge

Wire protocol engine for one edge connection:
  rlp -> messages -> codec -> dispatch -> correlator / session / ticket -> connection
"""

from __future__ import annotations

__all__ = [
    "rlp",
    "messages",
    "codec",
    "blockquick",
    "merkle",
    "dispatch",
    "correlator",
    "ticket",
    "session",
    "transport",
    "connection",
    "edge_logging",
]
