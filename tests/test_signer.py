# tests/test_signer.py
from __future__ import annotations

import base64

import pytest

from edgewire.crypto.signer import Secp256k1Signer, Signer, decompress_pubkey, verify_signature

SECRET = bytes(range(1, 33))


def test_from_secret_is_deterministic_across_encodings() -> None:
    a = Secp256k1Signer.from_secret(SECRET)
    b = Secp256k1Signer.from_secret(SECRET.hex())
    c = Secp256k1Signer.from_secret("0x" + SECRET.hex())
    d = Secp256k1Signer.from_secret(base64.b64encode(SECRET).decode("ascii"))
    assert a.public_key == b.public_key == c.public_key == d.public_key
    assert len(a.public_key) == 33
    assert a.public_key[0] in (0x02, 0x03)


def test_sign_and_verify() -> None:
    s = Secp256k1Signer.from_secret(SECRET)
    assert isinstance(s, Signer)
    sig = s.sign(b"preimage")
    assert verify_signature(public_key=s.public_key, signature=sig, message=b"preimage")
    assert not verify_signature(public_key=s.public_key, signature=sig, message=b"other")
    assert not verify_signature(public_key=b"\x02" + b"\xff" * 32, signature=sig, message=b"preimage")


def test_decompress_pubkey() -> None:
    s = Secp256k1Signer.generate()
    full = decompress_pubkey(s.public_key)
    assert len(full) == 65 and full[0] == 0x04
    assert decompress_pubkey(full) == full
    with pytest.raises(ValueError):
        decompress_pubkey(b"\x05" * 33)
    with pytest.raises(ValueError):
        decompress_pubkey(b"\x02" * 10)


def test_bad_secrets() -> None:
    with pytest.raises(ValueError):
        Secp256k1Signer.from_secret(b"\x01" * 31)
    with pytest.raises(ValueError):
        Secp256k1Signer.from_secret("")
