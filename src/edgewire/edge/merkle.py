# src/edgewire/edge/merkle.py
"""
Merkle state proofs

A proof arrives as a nested value. Node kinds:

  b""                              absent child of a sparse branch
  <32 bytes>                       embedded sub-hash (sibling), used as is
  [left, right]                    branch
  [prefix, modulo, [k, v], ...]    leaf bucket, one or more key/value pairs

Hashing rules (hash_fn injected, sha256 by default):
  absent   -> hash_fn(rlp.encode(b""))
  sub-hash -> the 32 bytes themselves
  branch   -> hash_fn(rlp.encode([hash(left), hash(right)]))
  bucket   -> hash_fn(rlp.encode(bucket))

The walk is depth-first, left to right. `module` is the number of branch
levels traversed to reach the deepest leaf bucket; a proof that is a single
bucket has module 0 and its root hash is the bucket's own hash.

The verifier trusts no root. Callers compare MerkleTree.root_hash against a
state root obtained independently (e.g. from a verified block header).
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from edgewire.crypto.hashing import DIGEST_SIZE, HashFn, sha256
from edgewire.edge import rlp
from edgewire.edge.rlp import NestedValue
from edgewire.errors import DecodeError, ProofError

_MAX_PROOF_DEPTH = 256


@dataclass(frozen=True, slots=True)
class Leaf:
    key: bytes
    value: bytes


@dataclass(frozen=True, slots=True)
class MerkleTree:
    root_hash: bytes
    module: int
    leaves: Tuple[Leaf, ...] = field(default_factory=tuple)
    raw: Optional[NestedValue] = field(default=None, compare=False, repr=False)

    def get(self, key: bytes) -> Optional[bytes]:
        for leaf in self.leaves:
            if leaf.key == key:
                return leaf.value
        return None

    def contains(self, key: bytes) -> bool:
        return self.get(key) is not None

    def verify_root(self, trusted_root: bytes) -> bool:
        return hmac.compare_digest(self.root_hash, bytes(trusted_root))


@dataclass
class _Walk:
    hash_fn: HashFn
    leaves: List[Leaf] = field(default_factory=list)
    module: int = -1

    def node(self, node: NestedValue, depth: int, path: str) -> bytes:
        if depth > _MAX_PROOF_DEPTH:
            raise ProofError("proof too deep", path=path)

        if isinstance(node, bytes):
            if not node:
                return self.hash_fn(rlp.encode(b""))
            if len(node) == DIGEST_SIZE:
                return node
            raise ProofError(f"embedded hash must be {DIGEST_SIZE} bytes, got {len(node)}", path=path)

        if len(node) == 2:
            left = self.node(node[0], depth + 1, f"{path}[0]")
            right = self.node(node[1], depth + 1, f"{path}[1]")
            return self.hash_fn(rlp.encode([left, right]))

        if len(node) >= 3:
            return self.bucket(node, depth, path)

        raise ProofError(f"truncated node with {len(node)} items", path=path)

    def bucket(self, node: List[NestedValue], depth: int, path: str) -> bytes:
        try:
            rlp.to_bytes(node[0], f"{path}[0]")
            rlp.to_uint(node[1], f"{path}[1]")
            for i, pair in enumerate(node[2:], start=2):
                kv = rlp.to_list(pair, f"{path}[{i}]", arity=2)
                self.leaves.append(
                    Leaf(key=rlp.to_bytes(kv[0], f"{path}[{i}][0]"), value=rlp.to_bytes(kv[1], f"{path}[{i}][1]"))
                )
        except DecodeError as e:
            raise ProofError(f"bad leaf bucket: {e.reason}", path=e.path) from e
        self.module = max(self.module, depth)
        return self.hash_fn(rlp.encode(node))


def build_merkle_tree(raw_proof: NestedValue, hash_fn: HashFn = sha256) -> MerkleTree:
    """Parse a raw proof into a MerkleTree. Raises ProofError on malformed shape."""
    walk = _Walk(hash_fn=hash_fn)
    root = walk.node(raw_proof, 0, "$")
    if not walk.leaves:
        raise ProofError("proof has no leaves")
    return MerkleTree(root_hash=root, module=walk.module, leaves=tuple(walk.leaves), raw=raw_proof)
