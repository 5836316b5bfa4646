# src/edgewire/crypto/signer.py
from __future__ import annotations

import base64
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

_CURVE = ec.SECP256K1()


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except ValueError as e:
        raise ValueError("not hex or base64") from e


@runtime_checkable
class Signer(Protocol):
    """Signing capability supplied by the caller. The engine never generates keys."""

    @property
    def public_key(self) -> bytes: ...

    def sign(self, preimage: bytes) -> bytes: ...


class Secp256k1Signer:
    """ECDSA/secp256k1 signer over SHA-256; signatures are DER encoded."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        if not isinstance(private_key.curve, ec.SECP256K1):
            raise ValueError("private key must be on secp256k1")
        self._key = private_key

    @classmethod
    def from_secret(cls, secret: bytes | str) -> "Secp256k1Signer":
        """Build from a 32-byte secret (raw bytes, hex or base64 string)."""
        raw = _decode_bytes(secret) if isinstance(secret, str) else bytes(secret)
        if len(raw) != 32:
            raise ValueError("secp256k1 secret must be 32 bytes")
        return cls(ec.derive_private_key(int.from_bytes(raw, "big"), _CURVE))

    @classmethod
    def generate(cls) -> "Secp256k1Signer":
        """Fresh random key. Dev/test only."""
        return cls(ec.generate_private_key(_CURVE))

    @property
    def public_key(self) -> bytes:
        return self._key.public_key().public_bytes(Encoding.X962, PublicFormat.CompressedPoint)

    def sign(self, preimage: bytes) -> bytes:
        return self._key.sign(bytes(preimage), ec.ECDSA(hashes.SHA256()))


def verify_signature(*, public_key: bytes, signature: bytes, message: bytes) -> bool:
    try:
        key = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(public_key))
        key.verify(bytes(signature), bytes(message), ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


def decompress_pubkey(public_key: bytes) -> bytes:
    """Return the 65-byte uncompressed SEC1 form of a secp256k1 public key.

    Raises ValueError if the bytes are not a point on the curve.
    """
    pk = bytes(public_key)
    if len(pk) == 65 and pk[0] == 0x04:
        return pk
    if len(pk) != 33 or pk[0] not in (0x02, 0x03):
        raise ValueError("public key must be 33-byte compressed or 65-byte uncompressed")
    point = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, pk)
    return point.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
