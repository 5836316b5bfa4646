# src/edgewire/edge/blockquick.py
"""
Light-client header contract

Window validation (blockquick consensus) lives outside this package. The
engine only needs two things from it:
  - a canonical header hash for a set of header fields
  - a fail-closed comparison against the hash a server claims

HeaderHasher is the injection point. Sha256HeaderHasher is the shipped
implementation: hash_fn over
  rlp([prev_block, miner_pubkey_uncompressed, state_hash, tx_hash,
       timestamp, number, nonce, miner_sig])
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from edgewire.crypto.hashing import HashFn, sha256
from edgewire.crypto.signer import decompress_pubkey
from edgewire.edge import rlp
from edgewire.edge.messages import BlockHeader
from edgewire.errors import DecodeError, ProtocolMismatch


@runtime_checkable
class HeaderHasher(Protocol):
    def header_hash(self, header: BlockHeader) -> bytes: ...


@dataclass(frozen=True)
class Sha256HeaderHasher:
    hash_fn: HashFn = sha256

    def header_hash(self, header: BlockHeader) -> bytes:
        try:
            miner = decompress_pubkey(header.miner_pubkey)
        except ValueError as e:
            raise DecodeError(f"invalid miner public key: {e}", path="miner_pubkey") from e
        return self.hash_fn(
            rlp.encode(
                [
                    header.prev_block,
                    miner,
                    header.state_hash,
                    header.tx_hash,
                    header.timestamp,
                    header.number,
                    header.nonce,
                    header.miner_sig,
                ]
            )
        )


def verify_header(header: BlockHeader, hasher: HeaderHasher) -> BlockHeader:
    """Return the header if its recomputed hash equals header.block_hash.

    Raises ProtocolMismatch otherwise; the claim is rejected, no header returned.
    """
    computed = hasher.header_hash(header)
    if not hmac.compare_digest(computed, header.block_hash):
        raise ProtocolMismatch(
            f"block hash mismatch at height {header.number}",
            claimed=header.block_hash,
            computed=computed,
        )
    return header
