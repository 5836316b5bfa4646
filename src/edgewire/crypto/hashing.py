from __future__ import annotations

import hashlib
from typing import Callable

HashFn = Callable[[bytes], bytes]

DIGEST_SIZE = 32


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()
