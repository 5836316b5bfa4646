from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class EdgeError(Exception):
    """Canonical error type for codec, dispatch, proof, ticket and session failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class EncodeError(EdgeError):
    def __init__(self, reason: str, *, path: str = "$") -> None:
        super().__init__(code="encode_error", reason=reason, details={"path": path})
        self.path = path


class DecodeError(EdgeError):
    """Malformed bytes. The envelope must be discarded; no partial records."""

    def __init__(self, reason: str, *, path: str = "$") -> None:
        super().__init__(code="decode_error", reason=reason, details={"path": path})
        self.path = path


class UnsupportedMethod(EdgeError):
    def __init__(self, method: str) -> None:
        super().__init__(code="rpc_not_supported", reason="rpc method not supported", details={"method": method})
        self.method = method


# ---------------------------------------------------------------------
# Dispatch / correlation
# ---------------------------------------------------------------------


class DispatchError(EdgeError):
    def __init__(self, reason: str, *, code: str = "dispatch_error", details: Any | None = None) -> None:
        super().__init__(code=code, reason=reason, details=details)


class ResponseHandlerNotFound(DispatchError):
    def __init__(self, reason: str = "couldn't find handler for response", *, details: Any | None = None) -> None:
        super().__init__(reason, code="response_handler_not_found", details=details)


class RequestAlreadyResolved(DispatchError):
    def __init__(self, request_id: int) -> None:
        super().__init__(
            "request id already consumed",
            code="request_already_resolved",
            details={"request_id": int(request_id)},
        )
        self.request_id = int(request_id)


# ---------------------------------------------------------------------
# Proofs / headers / tickets
# ---------------------------------------------------------------------


class ProofError(EdgeError):
    def __init__(self, reason: str, *, path: str = "$") -> None:
        super().__init__(code="invalid_proof", reason=reason, details={"path": path})
        self.path = path


class ProtocolMismatch(EdgeError):
    """A recomputed hash disagrees with the hash the server claimed."""

    def __init__(self, reason: str, *, claimed: bytes = b"", computed: bytes = b"") -> None:
        super().__init__(
            code="protocol_mismatch",
            reason=reason,
            details={"claimed": claimed.hex(), "computed": computed.hex()},
        )
        self.claimed = claimed
        self.computed = computed


class TicketError(EdgeError):
    def __init__(self, reason: str = "failed to parse ticket", *, details: Any | None = None) -> None:
        super().__init__(code="failed_to_parse_ticket", reason=reason, details=details)


# ---------------------------------------------------------------------
# Sessions / connection
# ---------------------------------------------------------------------


class SessionError(EdgeError):
    def __init__(self, reason: str, *, code: str = "session_error", ref: int | None = None) -> None:
        super().__init__(code=code, reason=reason, details=None if ref is None else {"ref": int(ref)})
        self.ref = ref


class UnknownRef(SessionError):
    def __init__(self, ref: int) -> None:
        super().__init__("ref is not open", code="unknown_ref", ref=ref)


class DuplicateRef(SessionError):
    def __init__(self, ref: int) -> None:
        super().__init__("ref already open", code="duplicate_ref", ref=ref)


class RemoteError(EdgeError):
    """The server answered a request with an ``error`` envelope."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(code="remote_error", reason=message, details={"method": method})
        self.method = method
        self.message = message


class ConnectionClosed(EdgeError):
    def __init__(self, reason: str = "connection closed") -> None:
        super().__init__(code="connection_closed", reason=reason)
