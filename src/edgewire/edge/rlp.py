# src/edgewire/edge/rlp.py
"""
Nested-value grammar (RLP)

Every wire record is a projection of one recursive shape:
  - a byte string, or
  - an ordered list of nested values.

Unsigned integers travel as minimal big-endian byte strings (0 is b""), text
as UTF-8. The grammar itself is untyped: whether a byte string is an int, a
hash or text is decided by the shape descriptor reading it (see to_uint /
to_bytes / to_text / to_list below).

Decoding is strict:
  - non-canonical length prefixes are rejected
  - a single byte < 0x80 must not carry a prefix
  - truncated input and trailing bytes are rejected
Every failure raises DecodeError with the path of the offending element,
e.g. "$[1][0]".
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

from edgewire.errors import DecodeError, EncodeError

NestedValue = Union[bytes, List["NestedValue"]]
Encodable = Union[bytes, bytearray, memoryview, str, int, Sequence["Encodable"]]

_SHORT = 55
_STR_OFFSET = 0x80
_LIST_OFFSET = 0xC0
_MAX_DEPTH = 128


# ---------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------


def uint_to_bytes(n: int) -> bytes:
    if isinstance(n, bool) or not isinstance(n, int):
        raise EncodeError(f"expected int, got {type(n).__name__}")
    if n < 0:
        raise EncodeError("negative integers are not encodable")
    return n.to_bytes((n.bit_length() + 7) // 8, "big")


def _length_prefix(length: int, offset: int) -> bytes:
    if length <= _SHORT:
        return bytes([offset + length])
    lb = uint_to_bytes(length)
    return bytes([offset + _SHORT + len(lb)]) + lb


def _encode(value: Encodable, path: str) -> bytes:
    if isinstance(value, bool):
        raise EncodeError("bool is not encodable", path=path)
    if isinstance(value, int):
        if value < 0:
            raise EncodeError("negative integers are not encodable", path=path)
        value = uint_to_bytes(value)
    elif isinstance(value, str):
        value = value.encode("utf-8")

    if isinstance(value, (bytes, bytearray, memoryview)):
        b = bytes(value)
        if len(b) == 1 and b[0] < _STR_OFFSET:
            return b
        return _length_prefix(len(b), _STR_OFFSET) + b

    if isinstance(value, (list, tuple)):
        body = b"".join(_encode(item, f"{path}[{i}]") for i, item in enumerate(value))
        return _length_prefix(len(body), _LIST_OFFSET) + body

    raise EncodeError(f"unsupported type {type(value).__name__}", path=path)


def encode(value: Encodable) -> bytes:
    return _encode(value, "$")


# ---------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------


def _read_length(data: bytes, pos: int, width: int, limit: int, path: str) -> int:
    if pos + width > limit:
        raise DecodeError("truncated length prefix", path=path)
    if data[pos] == 0:
        raise DecodeError("length prefix has leading zero", path=path)
    n = int.from_bytes(data[pos : pos + width], "big")
    if n <= _SHORT:
        raise DecodeError("non-canonical long length", path=path)
    return n


def _decode_at(data: bytes, pos: int, limit: int, path: str, depth: int) -> Tuple[NestedValue, int]:
    if depth > _MAX_DEPTH:
        raise DecodeError("nesting too deep", path=path)
    if pos >= limit:
        raise DecodeError("truncated input", path=path)

    b0 = data[pos]

    if b0 < _STR_OFFSET:
        return data[pos : pos + 1], pos + 1

    if b0 < _LIST_OFFSET:
        if b0 <= _STR_OFFSET + _SHORT:
            n = b0 - _STR_OFFSET
            start = pos + 1
        else:
            width = b0 - _STR_OFFSET - _SHORT
            n = _read_length(data, pos + 1, width, limit, path)
            start = pos + 1 + width
        end = start + n
        if end > limit:
            raise DecodeError("truncated byte string", path=path)
        if n == 1 and data[start] < _STR_OFFSET:
            raise DecodeError("single byte must not be prefixed", path=path)
        return data[start:end], end

    if b0 <= _LIST_OFFSET + _SHORT:
        n = b0 - _LIST_OFFSET
        start = pos + 1
    else:
        width = b0 - _LIST_OFFSET - _SHORT
        n = _read_length(data, pos + 1, width, limit, path)
        start = pos + 1 + width
    end = start + n
    if end > limit:
        raise DecodeError("truncated list", path=path)

    items: List[NestedValue] = []
    cur = start
    while cur < end:
        item, cur = _decode_at(data, cur, end, f"{path}[{len(items)}]", depth + 1)
        items.append(item)
    return items, end


def decode(data: bytes) -> NestedValue:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise DecodeError(f"expected bytes, got {type(data).__name__}")
    buf = bytes(data)
    value, end = _decode_at(buf, 0, len(buf), "$", 0)
    if end != len(buf):
        raise DecodeError(f"{len(buf) - end} trailing bytes after value")
    return value


# ---------------------------------------------------------------------
# Kind checks used by shape descriptors
# ---------------------------------------------------------------------


def to_bytes(value: NestedValue, path: str) -> bytes:
    if not isinstance(value, bytes):
        raise DecodeError("expected byte string, got list", path=path)
    return value


def to_uint(value: NestedValue, path: str, *, bits: int = 64) -> int:
    b = to_bytes(value, path)
    if b and b[0] == 0:
        raise DecodeError("integer has leading zero byte", path=path)
    n = int.from_bytes(b, "big")
    if n.bit_length() > bits:
        raise DecodeError(f"integer exceeds {bits} bits", path=path)
    return n


def to_text(value: NestedValue, path: str) -> str:
    b = to_bytes(value, path)
    try:
        return b.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"invalid utf-8: {e.reason}", path=path) from e


def to_list(
    value: NestedValue,
    path: str,
    *,
    arity: Optional[int] = None,
    min_arity: Optional[int] = None,
) -> List[NestedValue]:
    if not isinstance(value, list):
        raise DecodeError("expected list, got byte string", path=path)
    if arity is not None and len(value) != arity:
        raise DecodeError(f"expected {arity} items, got {len(value)}", path=path)
    if min_arity is not None and len(value) < min_arity:
        raise DecodeError(f"expected at least {min_arity} items, got {len(value)}", path=path)
    return value
