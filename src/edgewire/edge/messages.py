from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import ClassVar, FrozenSet, Optional, Tuple, Union

from edgewire.edge.merkle import MerkleTree
from edgewire.edge.rlp import NestedValue
from edgewire.errors import UnsupportedMethod

# Outer tags
RESPONSE_TAG = "response"
ERROR_TAG = "error"

# Ticket outcome tokens
TICKET_THANKS = "thanks!"
TICKET_TOO_OLD = "too_old"
TICKET_TOO_LOW = "too_low"

PORT_OK = "ok"

ADDRESS_SIZE = 20


class Method(str, Enum):
    HELLO = "hello"
    PORT_OPEN = "portopen"
    PORT_SEND = "portsend"
    PORT_CLOSE = "portclose"
    GOODBYE = "goodbye"

    GET_BLOCK = "getblock"
    GET_BLOCK2 = "getblock2"
    GET_BLOCK_HEADER = "getblockheader"
    GET_BLOCK_HEADER2 = "getblockheader2"
    GET_BLOCKQUICK = "getblockquick"
    GET_BLOCKQUICK2 = "getblockquick2"
    GET_BLOCK_PEAK = "getblockpeak"

    GET_ACCOUNT = "getaccount"
    GET_ACCOUNT_VALUE = "getaccountvalue"
    GET_ACCOUNT_ROOTS = "getaccountroots"
    GET_STATE_ROOTS = "getstateroots"

    GET_OBJECT = "getobject"
    GET_NODE = "getnode"
    TICKET = "ticket"


# ----------------------------
# Outbound requests
# ----------------------------


@dataclass(frozen=True, slots=True)
class EdgeRequest:
    """Base for outbound requests: one frozen record per method, args in wire order."""

    METHOD: ClassVar[str] = ""
    # Alternative tokens a record may carry in its `method` field.
    VARIANTS: ClassVar[FrozenSet[str]] = frozenset()

    @property
    def method_name(self) -> str:
        return str(getattr(self, "method", self.METHOD))

    def args(self) -> Tuple[object, ...]:
        return tuple(getattr(self, f.name) for f in fields(self) if f.name != "method")


def _check_variant(req: EdgeRequest) -> None:
    m = getattr(req, "method")
    if m != req.METHOD and m not in req.VARIANTS:
        raise UnsupportedMethod(m)


@dataclass(frozen=True, slots=True)
class HelloRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.HELLO.value
    flag: int = 1000


@dataclass(frozen=True, slots=True)
class PortOpenRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.PORT_OPEN.value
    device_id: bytes
    port: int
    mode: str = "rw"


@dataclass(frozen=True, slots=True)
class PortSendRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.PORT_SEND.value
    ref: int
    data: bytes


@dataclass(frozen=True, slots=True)
class PortCloseRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.PORT_CLOSE.value
    ref: int


@dataclass(frozen=True, slots=True)
class GoodbyeRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GOODBYE.value
    reason: str


@dataclass(frozen=True, slots=True)
class GetBlockRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_BLOCK.value
    VARIANTS: ClassVar[FrozenSet[str]] = frozenset({Method.GET_BLOCK2.value})
    block_number: int
    method: str = Method.GET_BLOCK.value

    def __post_init__(self) -> None:
        _check_variant(self)


@dataclass(frozen=True, slots=True)
class GetBlockHeaderRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_BLOCK_HEADER.value
    VARIANTS: ClassVar[FrozenSet[str]] = frozenset({Method.GET_BLOCK_HEADER2.value})
    block_number: int
    method: str = Method.GET_BLOCK_HEADER2.value

    def __post_init__(self) -> None:
        _check_variant(self)


@dataclass(frozen=True, slots=True)
class GetBlockquickRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_BLOCKQUICK.value
    VARIANTS: ClassVar[FrozenSet[str]] = frozenset({Method.GET_BLOCKQUICK2.value})
    last_valid: int
    window_size: int
    method: str = Method.GET_BLOCKQUICK2.value

    def __post_init__(self) -> None:
        _check_variant(self)


@dataclass(frozen=True, slots=True)
class GetBlockPeakRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_BLOCK_PEAK.value


@dataclass(frozen=True, slots=True)
class GetAccountRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_ACCOUNT.value
    block_number: int
    address: bytes


@dataclass(frozen=True, slots=True)
class GetAccountValueRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_ACCOUNT_VALUE.value
    block_number: int
    address: bytes
    key: bytes


@dataclass(frozen=True, slots=True)
class GetAccountRootsRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_ACCOUNT_ROOTS.value
    block_number: int
    address: bytes


@dataclass(frozen=True, slots=True)
class GetStateRootsRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_STATE_ROOTS.value
    block_number: int


@dataclass(frozen=True, slots=True)
class GetObjectRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_OBJECT.value
    device_id: bytes


@dataclass(frozen=True, slots=True)
class GetNodeRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.GET_NODE.value
    server_id: bytes


@dataclass(frozen=True, slots=True)
class TicketRequest(EdgeRequest):
    METHOD: ClassVar[str] = Method.TICKET.value
    block_number: int
    fleet_addr: bytes
    total_connections: int
    total_bytes: int
    local_addr: bytes
    device_sig: bytes


AnyRequest = Union[
    HelloRequest,
    PortOpenRequest,
    PortSendRequest,
    PortCloseRequest,
    GoodbyeRequest,
    GetBlockRequest,
    GetBlockHeaderRequest,
    GetBlockquickRequest,
    GetBlockPeakRequest,
    GetAccountRequest,
    GetAccountValueRequest,
    GetAccountRootsRequest,
    GetStateRootsRequest,
    GetObjectRequest,
    GetNodeRequest,
    TicketRequest,
]


# ----------------------------
# Tunnel control (both directions)
# ----------------------------


@dataclass(frozen=True, slots=True)
class PortOpen:
    ref: int
    port: int = 0
    device_id: bytes = b""
    ok: bool = True
    reason: str = ""


@dataclass(frozen=True, slots=True)
class PortSend:
    ref: int
    data: bytes
    ok: bool = True


@dataclass(frozen=True, slots=True)
class PortClose:
    ref: int
    ok: bool = True


@dataclass(frozen=True, slots=True)
class Goodbye:
    reason: str


AnyControl = Union[PortOpen, PortSend, PortClose, Goodbye]


# ----------------------------
# Responses
# ----------------------------


@dataclass(frozen=True, slots=True)
class Ack:
    """Plain result reply (portsend / portclose / hello / goodbye)."""

    method: str
    result: str = PORT_OK

    @property
    def ok(self) -> bool:
        return self.result == PORT_OK


@dataclass(frozen=True, slots=True)
class ErrorReply:
    method: str
    message: str


@dataclass(frozen=True, slots=True)
class BlockPeak:
    number: int


@dataclass(frozen=True, slots=True)
class Block:
    items: Tuple[Tuple[str, NestedValue], ...] = field(default_factory=tuple)

    def get(self, key: str) -> Optional[NestedValue]:
        for k, v in self.items:
            if k == key:
                return v
        return None


@dataclass(frozen=True, slots=True)
class BlockHeader:
    tx_hash: bytes
    state_hash: bytes
    prev_block: bytes
    miner_sig: bytes
    miner_pubkey: bytes
    timestamp: int
    number: int
    nonce: int
    block_hash: bytes = b""


@dataclass(frozen=True, slots=True)
class BlockquickWindow:
    headers: Tuple[BlockHeader, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class Account:
    storage_root: bytes
    nonce: int
    code: bytes
    balance: int
    proof: MerkleTree


@dataclass(frozen=True, slots=True)
class AccountValue:
    proof: MerkleTree


@dataclass(frozen=True, slots=True)
class AccountRoots:
    roots: Tuple[bytes, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class StateRoots:
    roots: Tuple[bytes, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ServerObj:
    host: bytes
    edge_port: int
    server_port: int
    sig: bytes


class TicketErrorKind(str, Enum):
    TOO_OLD = TICKET_TOO_OLD
    TOO_LOW = TICKET_TOO_LOW


@dataclass(frozen=True, slots=True)
class DeviceTicket:
    """Usage entitlement. Replaced wholesale on renegotiation, never patched."""

    server_id: bytes = bytes(ADDRESS_SIZE)
    fleet_addr: bytes = bytes(ADDRESS_SIZE)
    total_connections: int = 0
    total_bytes: int = 0
    local_addr: bytes = b""
    device_sig: bytes = b""
    server_sig: bytes = b""
    block_hash: bytes = b""
    block_number: int = 0
    error: Optional[TicketErrorKind] = None

    @property
    def is_void(self) -> bool:
        return self == DeviceTicket()


AnyResponse = Union[
    PortOpen,
    Ack,
    BlockPeak,
    Block,
    BlockHeader,
    BlockquickWindow,
    Account,
    AccountValue,
    AccountRoots,
    StateRoots,
    ServerObj,
    DeviceTicket,
]
