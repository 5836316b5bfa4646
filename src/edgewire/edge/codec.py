# src/edgewire/edge/codec.py
"""
Edge codec

Wire shapes (all RLP, see edge/rlp.py):

  request   [request_id, [method, arg...]]
  response  [request_id, ["response", method, field...]]
  error     [request_id, ["error", method, message]]
  inbound   [request_id, [method, arg...]]       (server -> device tunnel control)

The codec knows shapes, not semantics: it validates list arity and element
kind, then builds typed records. Every failure raises DecodeError (with the
field path) and no partial record is returned. Proof and header checks that
are part of building a record raise ProofError / ProtocolMismatch.

Shape descriptors are keyed by method name in process-wide read-only tables.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, Union

from edgewire.crypto.hashing import HashFn, sha256
from edgewire.edge import rlp
from edgewire.edge.blockquick import HeaderHasher, Sha256HeaderHasher, verify_header
from edgewire.edge.merkle import MerkleTree, build_merkle_tree
from edgewire.edge.messages import (
    ADDRESS_SIZE,
    ERROR_TAG,
    PORT_OK,
    RESPONSE_TAG,
    TICKET_THANKS,
    TICKET_TOO_LOW,
    TICKET_TOO_OLD,
    Account,
    AccountRoots,
    AccountValue,
    Ack,
    AnyControl,
    Block,
    BlockHeader,
    BlockPeak,
    BlockquickWindow,
    DeviceTicket,
    EdgeRequest,
    ErrorReply,
    GetAccountRequest,
    GetAccountRootsRequest,
    GetAccountValueRequest,
    GetBlockHeaderRequest,
    GetBlockPeakRequest,
    GetBlockquickRequest,
    GetBlockRequest,
    GetNodeRequest,
    GetObjectRequest,
    GetStateRootsRequest,
    Goodbye,
    GoodbyeRequest,
    HelloRequest,
    Method,
    PortClose,
    PortCloseRequest,
    PortOpen,
    PortOpenRequest,
    PortSend,
    PortSendRequest,
    ServerObj,
    StateRoots,
    TicketErrorKind,
    TicketRequest,
)
from edgewire.edge.rlp import NestedValue
from edgewire.errors import DecodeError, EncodeError, TicketError, UnsupportedMethod


@dataclass(frozen=True, slots=True)
class Envelope:
    request_id: int
    payload: Tuple[NestedValue, ...]


ResponseDecoder = Callable[[Envelope], Any]


REQUEST_TYPES: Mapping[str, Type[EdgeRequest]] = MappingProxyType(
    {
        Method.HELLO.value: HelloRequest,
        Method.PORT_OPEN.value: PortOpenRequest,
        Method.PORT_SEND.value: PortSendRequest,
        Method.PORT_CLOSE.value: PortCloseRequest,
        Method.GOODBYE.value: GoodbyeRequest,
        Method.GET_BLOCK.value: GetBlockRequest,
        Method.GET_BLOCK2.value: GetBlockRequest,
        Method.GET_BLOCK_HEADER.value: GetBlockHeaderRequest,
        Method.GET_BLOCK_HEADER2.value: GetBlockHeaderRequest,
        Method.GET_BLOCKQUICK.value: GetBlockquickRequest,
        Method.GET_BLOCKQUICK2.value: GetBlockquickRequest,
        Method.GET_BLOCK_PEAK.value: GetBlockPeakRequest,
        Method.GET_ACCOUNT.value: GetAccountRequest,
        Method.GET_ACCOUNT_VALUE.value: GetAccountValueRequest,
        Method.GET_ACCOUNT_ROOTS.value: GetAccountRootsRequest,
        Method.GET_STATE_ROOTS.value: GetStateRootsRequest,
        Method.GET_OBJECT.value: GetObjectRequest,
        Method.GET_NODE.value: GetNodeRequest,
        Method.TICKET.value: TicketRequest,
    }
)

# method -> response shape name (resolved to EdgeCodec._read_<shape> / _write_<shape>)
RESPONSE_SHAPES: Mapping[str, str] = MappingProxyType(
    {
        Method.HELLO.value: "ack",
        Method.PORT_OPEN.value: "port_open",
        Method.PORT_SEND.value: "ack",
        Method.PORT_CLOSE.value: "ack",
        Method.GOODBYE.value: "ack",
        Method.GET_BLOCK.value: "block",
        Method.GET_BLOCK2.value: "block",
        Method.GET_BLOCK_HEADER.value: "block_header",
        Method.GET_BLOCK_HEADER2.value: "block_header",
        Method.GET_BLOCKQUICK.value: "blockquick",
        Method.GET_BLOCKQUICK2.value: "blockquick",
        Method.GET_BLOCK_PEAK.value: "block_peak",
        Method.GET_ACCOUNT.value: "account",
        Method.GET_ACCOUNT_VALUE.value: "account_value",
        Method.GET_ACCOUNT_ROOTS.value: "account_roots",
        Method.GET_STATE_ROOTS.value: "state_roots",
        Method.GET_OBJECT.value: "object",
        Method.GET_NODE.value: "node",
        Method.TICKET.value: "ticket",
    }
)

# Requests the server does not answer; a reply that does arrive still decodes as an Ack.
NO_REPLY_METHODS = frozenset(
    {
        Method.HELLO.value,
        Method.PORT_SEND.value,
        Method.PORT_CLOSE.value,
        Method.GOODBYE.value,
    }
)

# Tunnel control the server may send unsolicited.
INBOUND_METHODS = frozenset(
    {
        Method.PORT_OPEN.value,
        Method.PORT_SEND.value,
        Method.PORT_CLOSE.value,
        Method.GOODBYE.value,
    }
)

_FIELD_READERS: Mapping[str, Callable[[NestedValue, str], Any]] = MappingProxyType(
    {
        "int": rlp.to_uint,
        "bytes": rlp.to_bytes,
        "str": rlp.to_text,
    }
)

_HEADER_KEYS = (
    "transaction_hash",
    "state_hash",
    "block_hash",
    "previous_block",
    "nonce",
    "miner_signature",
    "timestamp",
    "number",
)


def _fp(i: int) -> str:
    """Path of the i-th response field (after tag and method)."""
    return f"$[1][{i + 2}]"


def _arity(f: List[NestedValue], n: int, what: str) -> None:
    if len(f) != n:
        raise DecodeError(f"{what}: expected {n} fields, got {len(f)}", path="$[1]")


def _address(value: NestedValue, path: str) -> bytes:
    b = rlp.to_bytes(value, path)
    if len(b) != ADDRESS_SIZE:
        raise DecodeError(f"address must be {ADDRESS_SIZE} bytes, got {len(b)}", path=path)
    return b


class EdgeCodec:
    """Encode requests, decode replies. Stateless apart from its hash capabilities."""

    def __init__(self, *, hash_fn: HashFn = sha256, header_hasher: Optional[HeaderHasher] = None) -> None:
        self.hash_fn = hash_fn
        self.header_hasher: HeaderHasher = header_hasher or Sha256HeaderHasher(hash_fn=hash_fn)

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def encode_envelope(self, request_id: int, payload: List[Any]) -> bytes:
        return rlp.encode([int(request_id), list(payload)])

    def decode_envelope(self, data: Union[bytes, Envelope]) -> Envelope:
        if isinstance(data, Envelope):
            return data
        top = rlp.to_list(rlp.decode(data), "$", arity=2)
        request_id = rlp.to_uint(top[0], "$[0]")
        payload = rlp.to_list(top[1], "$[1]", min_arity=1)
        return Envelope(request_id=request_id, payload=tuple(payload))

    def response_id(self, data: bytes) -> int:
        return self.decode_envelope(data).request_id

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def encode_request(self, request_id: int, request: EdgeRequest) -> Tuple[bytes, Optional[ResponseDecoder]]:
        """Encode an outbound request and return the decoder bound to its method.

        The decoder is None for methods in NO_REPLY_METHODS.
        """
        method = request.method_name
        cls = REQUEST_TYPES.get(method)
        if cls is None or not isinstance(request, cls):
            raise UnsupportedMethod(method)
        data = self.encode_envelope(request_id, [method, *request.args()])
        if method in NO_REPLY_METHODS:
            return data, None
        return data, self.response_decoder(method)

    def decode_request(self, data: Union[bytes, Envelope]) -> Tuple[int, EdgeRequest]:
        env = self.decode_envelope(data)
        method = rlp.to_text(env.payload[0], "$[1][0]")
        cls = REQUEST_TYPES.get(method)
        if cls is None:
            raise UnsupportedMethod(method)

        arg_fields = [f for f in fields(cls) if f.name != "method"]
        args = env.payload[1:]
        if len(args) != len(arg_fields):
            raise DecodeError(f"{method}: expected {len(arg_fields)} args, got {len(args)}", path="$[1]")

        values: Dict[str, Any] = {}
        for i, (f, raw) in enumerate(zip(arg_fields, args)):
            values[f.name] = _FIELD_READERS[str(f.type)](raw, f"$[1][{i + 1}]")
        if any(f.name == "method" for f in fields(cls)):
            values["method"] = method
        return env.request_id, cls(**values)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def response_decoder(self, method: str) -> ResponseDecoder:
        shape = RESPONSE_SHAPES.get(method)
        if shape is None:
            raise UnsupportedMethod(method)
        reader = getattr(self, f"_read_{shape}")

        def decode(env: Envelope) -> Any:
            return reader(self._response_fields(env, method), method)

        decode.__name__ = f"decode_{method}"
        return decode

    def decode_response(self, data: Union[bytes, Envelope], method: str) -> Any:
        return self.response_decoder(method)(self.decode_envelope(data))

    def encode_response(self, request_id: int, method: str, record: Any) -> bytes:
        shape = RESPONSE_SHAPES.get(method)
        if shape is None:
            raise UnsupportedMethod(method)
        body = getattr(self, f"_write_{shape}")(record)
        return self.encode_envelope(request_id, [RESPONSE_TAG, method, *body])

    def _response_fields(self, env: Envelope, method: str) -> List[NestedValue]:
        p = env.payload
        tag = rlp.to_text(p[0], "$[1][0]")
        if tag != RESPONSE_TAG:
            raise DecodeError(f"expected {RESPONSE_TAG!r} tag, got {tag!r}", path="$[1][0]")
        if len(p) < 2:
            raise DecodeError("response without method", path="$[1]")
        got = rlp.to_text(p[1], "$[1][1]")
        if got != method:
            raise DecodeError(f"response is for {got!r}, expected {method!r}", path="$[1][1]")
        return list(p[2:])

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def encode_error(self, request_id: int, method: str, message: str) -> bytes:
        return self.encode_envelope(request_id, [ERROR_TAG, method, message])

    def decode_error(self, data: Union[bytes, Envelope]) -> ErrorReply:
        p = self.decode_envelope(data).payload
        if rlp.to_text(p[0], "$[1][0]") != ERROR_TAG:
            raise DecodeError(f"expected {ERROR_TAG!r} tag", path="$[1][0]")
        if len(p) < 2:
            raise DecodeError("error without message", path="$[1]")
        # The message is always the last element; the method is present when there are three.
        method = rlp.to_text(p[1], "$[1][1]") if len(p) >= 3 else ""
        return ErrorReply(method=method, message=rlp.to_text(p[-1], f"$[1][{len(p) - 1}]"))

    # ------------------------------------------------------------------
    # Inbound tunnel control
    # ------------------------------------------------------------------

    def encode_inbound(self, request_id: int, record: AnyControl) -> bytes:
        if isinstance(record, PortOpen):
            body: List[Any] = [Method.PORT_OPEN.value, record.port, record.ref, record.device_id]
        elif isinstance(record, PortSend):
            body = [Method.PORT_SEND.value, record.ref, record.data]
        elif isinstance(record, PortClose):
            body = [Method.PORT_CLOSE.value, record.ref]
        elif isinstance(record, Goodbye):
            body = [Method.GOODBYE.value, record.reason]
        else:
            raise EncodeError(f"not a tunnel control record: {type(record).__name__}")
        return self.encode_envelope(request_id, body)

    def decode_inbound(self, data: Union[bytes, Envelope]) -> AnyControl:
        p = self.decode_envelope(data).payload
        method = rlp.to_text(p[0], "$[1][0]")
        args = list(p[1:])

        if method == Method.PORT_OPEN.value:
            _arity(args, 3, method)
            return PortOpen(
                port=rlp.to_uint(args[0], "$[1][1]"),
                ref=rlp.to_uint(args[1], "$[1][2]"),
                device_id=rlp.to_bytes(args[2], "$[1][3]"),
                ok=True,
            )
        if method == Method.PORT_SEND.value:
            _arity(args, 2, method)
            return PortSend(ref=rlp.to_uint(args[0], "$[1][1]"), data=rlp.to_bytes(args[1], "$[1][2]"))
        if method == Method.PORT_CLOSE.value:
            _arity(args, 1, method)
            return PortClose(ref=rlp.to_uint(args[0], "$[1][1]"))
        if method == Method.GOODBYE.value:
            if not args:
                raise DecodeError("goodbye without reason", path="$[1]")
            # Servers may split the reason over several strings.
            parts = [rlp.to_text(a, f"$[1][{i + 1}]") for i, a in enumerate(args)]
            return Goodbye(reason=": ".join(parts))
        raise UnsupportedMethod(method)

    # ------------------------------------------------------------------
    # Shared field groups
    # ------------------------------------------------------------------

    def _items(self, value: NestedValue, path: str) -> Tuple[Tuple[str, NestedValue], ...]:
        out = []
        for i, raw in enumerate(rlp.to_list(value, path)):
            pair = rlp.to_list(raw, f"{path}[{i}]", arity=2)
            out.append((rlp.to_text(pair[0], f"{path}[{i}][0]"), pair[1]))
        return tuple(out)

    @staticmethod
    def _item(items: Mapping[str, NestedValue], key: str, path: str) -> NestedValue:
        if key not in items:
            raise DecodeError(f"missing item {key!r}", path=path)
        return items[key]

    def _header(self, items_value: NestedValue, pubkey_value: NestedValue, path: str) -> BlockHeader:
        items = dict(self._items(items_value, f"{path}[0]"))
        ip = f"{path}[0]"

        def b(key: str) -> bytes:
            return rlp.to_bytes(self._item(items, key, ip), f"{ip}.{key}")

        def n(key: str) -> int:
            return rlp.to_uint(self._item(items, key, ip), f"{ip}.{key}")

        header = BlockHeader(
            tx_hash=b("transaction_hash"),
            state_hash=b("state_hash"),
            prev_block=b("previous_block"),
            miner_sig=b("miner_signature"),
            miner_pubkey=rlp.to_bytes(pubkey_value, f"{path}[1]"),
            timestamp=n("timestamp"),
            number=n("number"),
            nonce=n("nonce"),
            block_hash=b("block_hash"),
        )
        return verify_header(header, self.header_hasher)

    @staticmethod
    def _header_body(h: BlockHeader) -> List[Any]:
        values = {
            "transaction_hash": h.tx_hash,
            "state_hash": h.state_hash,
            "block_hash": h.block_hash,
            "previous_block": h.prev_block,
            "nonce": h.nonce,
            "miner_signature": h.miner_sig,
            "timestamp": h.timestamp,
            "number": h.number,
        }
        return [[[k, values[k]] for k in _HEADER_KEYS], h.miner_pubkey]

    def _proof(self, value: NestedValue) -> MerkleTree:
        return build_merkle_tree(value, self.hash_fn)

    @staticmethod
    def _raw_proof(tree: MerkleTree) -> NestedValue:
        if tree.raw is None:
            raise EncodeError("merkle tree carries no raw proof")
        return tree.raw

    # ------------------------------------------------------------------
    # Response shapes
    # ------------------------------------------------------------------

    def _read_ack(self, f: List[NestedValue], method: str) -> Ack:
        _arity(f, 1, method)
        return Ack(method=method, result=rlp.to_text(f[0], _fp(0)))

    def _write_ack(self, r: Ack) -> List[Any]:
        return [r.result]

    def _read_port_open(self, f: List[NestedValue], method: str) -> PortOpen:
        _arity(f, 2, method)
        result = rlp.to_text(f[0], _fp(0))
        ok = result == PORT_OK
        return PortOpen(ref=rlp.to_uint(f[1], _fp(1)), ok=ok, reason="" if ok else result)

    def _write_port_open(self, r: PortOpen) -> List[Any]:
        return [PORT_OK if r.ok else (r.reason or "error"), r.ref]

    def _read_block_peak(self, f: List[NestedValue], method: str) -> BlockPeak:
        _arity(f, 1, method)
        return BlockPeak(number=rlp.to_uint(f[0], _fp(0)))

    def _write_block_peak(self, r: BlockPeak) -> List[Any]:
        return [r.number]

    def _read_block(self, f: List[NestedValue], method: str) -> Block:
        _arity(f, 1, method)
        return Block(items=self._items(f[0], _fp(0)))

    def _write_block(self, r: Block) -> List[Any]:
        return [[[k, v] for k, v in r.items]]

    def _read_block_header(self, f: List[NestedValue], method: str) -> BlockHeader:
        _arity(f, 2, method)
        return self._header(f[0], f[1], "$[1][2:]")

    def _write_block_header(self, r: BlockHeader) -> List[Any]:
        return self._header_body(r)

    def _read_blockquick(self, f: List[NestedValue], method: str) -> BlockquickWindow:
        _arity(f, 1, method)
        headers = []
        for i, raw in enumerate(rlp.to_list(f[0], _fp(0))):
            entry = rlp.to_list(raw, f"{_fp(0)}[{i}]", arity=2)
            headers.append(self._header(entry[0], entry[1], f"{_fp(0)}[{i}]"))
        return BlockquickWindow(headers=tuple(headers))

    def _write_blockquick(self, r: BlockquickWindow) -> List[Any]:
        return [[self._header_body(h) for h in r.headers]]

    def _read_account(self, f: List[NestedValue], method: str) -> Account:
        _arity(f, 2, method)
        path = _fp(0)
        items = dict(self._items(f[0], path))
        return Account(
            storage_root=rlp.to_bytes(self._item(items, "storageRoot", path), f"{path}.storageRoot"),
            nonce=rlp.to_uint(self._item(items, "nonce", path), f"{path}.nonce"),
            code=rlp.to_bytes(self._item(items, "code", path), f"{path}.code"),
            balance=rlp.to_uint(self._item(items, "balance", path), f"{path}.balance", bits=256),
            proof=self._proof(f[1]),
        )

    def _write_account(self, r: Account) -> List[Any]:
        items = [
            ["storageRoot", r.storage_root],
            ["nonce", r.nonce],
            ["code", r.code],
            ["balance", r.balance],
        ]
        return [items, self._raw_proof(r.proof)]

    def _read_account_value(self, f: List[NestedValue], method: str) -> AccountValue:
        _arity(f, 1, method)
        return AccountValue(proof=self._proof(f[0]))

    def _write_account_value(self, r: AccountValue) -> List[Any]:
        return [self._raw_proof(r.proof)]

    def _roots(self, f: List[NestedValue], method: str) -> Tuple[bytes, ...]:
        _arity(f, 1, method)
        return tuple(rlp.to_bytes(x, f"{_fp(0)}[{i}]") for i, x in enumerate(rlp.to_list(f[0], _fp(0))))

    def _read_account_roots(self, f: List[NestedValue], method: str) -> AccountRoots:
        return AccountRoots(roots=self._roots(f, method))

    def _write_account_roots(self, r: AccountRoots) -> List[Any]:
        return [list(r.roots)]

    def _read_state_roots(self, f: List[NestedValue], method: str) -> StateRoots:
        return StateRoots(roots=self._roots(f, method))

    def _write_state_roots(self, r: StateRoots) -> List[Any]:
        return [list(r.roots)]

    def _read_object(self, f: List[NestedValue], method: str) -> DeviceTicket:
        _arity(f, 1, method)
        base = _fp(0)
        t = rlp.to_list(f[0], base, arity=8)
        return DeviceTicket(
            server_id=_address(t[0], f"{base}[0]"),
            block_number=rlp.to_uint(t[1], f"{base}[1]"),
            fleet_addr=_address(t[2], f"{base}[2]"),
            total_connections=rlp.to_uint(t[3], f"{base}[3]"),
            total_bytes=rlp.to_uint(t[4], f"{base}[4]"),
            local_addr=rlp.to_bytes(t[5], f"{base}[5]"),
            device_sig=rlp.to_bytes(t[6], f"{base}[6]"),
            server_sig=rlp.to_bytes(t[7], f"{base}[7]"),
        )

    def _write_object(self, r: DeviceTicket) -> List[Any]:
        return [
            [
                r.server_id,
                r.block_number,
                r.fleet_addr,
                r.total_connections,
                r.total_bytes,
                r.local_addr,
                r.device_sig,
                r.server_sig,
            ]
        ]

    def _read_node(self, f: List[NestedValue], method: str) -> ServerObj:
        _arity(f, 1, method)
        base = _fp(0)
        s = rlp.to_list(f[0], base, arity=4)
        return ServerObj(
            host=rlp.to_bytes(s[0], f"{base}[0]"),
            edge_port=rlp.to_uint(s[1], f"{base}[1]", bits=16),
            server_port=rlp.to_uint(s[2], f"{base}[2]", bits=16),
            sig=rlp.to_bytes(s[3], f"{base}[3]"),
        )

    def _write_node(self, r: ServerObj) -> List[Any]:
        return [[r.host, r.edge_port, r.server_port, r.sig]]

    def _read_ticket(self, f: List[NestedValue], method: str) -> DeviceTicket:
        """Ticket replies: "thanks!" / "too_old" / "too_low". Anything else is a TicketError."""
        try:
            if not f:
                raise TicketError("ticket reply without outcome")
            tag = rlp.to_text(f[0], _fp(0))

            if tag == TICKET_THANKS:
                # An optional trailing paid-bytes counter is accepted and dropped.
                if len(f) > 2:
                    raise TicketError("malformed thanks reply")
                if len(f) == 2:
                    rlp.to_uint(f[1], _fp(1))
                return DeviceTicket()

            if tag == TICKET_TOO_OLD:
                _arity(f, 2, TICKET_TOO_OLD)
                return DeviceTicket(block_number=rlp.to_uint(f[1], _fp(1)), error=TicketErrorKind.TOO_OLD)

            if tag == TICKET_TOO_LOW:
                _arity(f, 6, TICKET_TOO_LOW)
                return DeviceTicket(
                    block_hash=rlp.to_bytes(f[1], _fp(1)),
                    total_connections=rlp.to_uint(f[2], _fp(2)),
                    total_bytes=rlp.to_uint(f[3], _fp(3)),
                    local_addr=rlp.to_bytes(f[4], _fp(4)),
                    device_sig=rlp.to_bytes(f[5], _fp(5)),
                    error=TicketErrorKind.TOO_LOW,
                )
        except DecodeError as e:
            raise TicketError(details={"path": e.path, "reason": e.reason}) from e

        raise TicketError(details={"tag": tag})

    def _write_ticket(self, r: DeviceTicket) -> List[Any]:
        if r.error is None:
            return [TICKET_THANKS]
        if r.error == TicketErrorKind.TOO_OLD:
            return [TICKET_TOO_OLD, r.block_number]
        return [
            TICKET_TOO_LOW,
            r.block_hash,
            r.total_connections,
            r.total_bytes,
            r.local_addr,
            r.device_sig,
        ]
