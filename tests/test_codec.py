# tests/test_codec.py
from __future__ import annotations

from dataclasses import replace

import pytest

from edgewire.crypto.signer import Secp256k1Signer
from edgewire.edge import rlp
from edgewire.edge.blockquick import Sha256HeaderHasher
from edgewire.edge.codec import EdgeCodec
from edgewire.edge.merkle import build_merkle_tree
from edgewire.edge.messages import (
    Account,
    AccountRoots,
    Ack,
    Block,
    BlockHeader,
    BlockPeak,
    BlockquickWindow,
    DeviceTicket,
    GetBlockHeaderRequest,
    GetBlockPeakRequest,
    GetBlockquickRequest,
    GetBlockRequest,
    Goodbye,
    GoodbyeRequest,
    HelloRequest,
    PortCloseRequest,
    PortOpen,
    PortOpenRequest,
    PortSend,
    PortSendRequest,
    ServerObj,
    TicketErrorKind,
    TicketRequest,
)
from edgewire.errors import DecodeError, TicketError, UnsupportedMethod

MINER = Secp256k1Signer.from_secret("11" * 32)


def _header(number: int = 42) -> BlockHeader:
    h = BlockHeader(
        tx_hash=b"\x01" * 32,
        state_hash=b"\x02" * 32,
        prev_block=b"\x03" * 32,
        miner_sig=b"\x04" * 65,
        miner_pubkey=MINER.public_key,
        timestamp=1_700_000_000,
        number=number,
        nonce=7,
    )
    return replace(h, block_hash=Sha256HeaderHasher().header_hash(h))


def test_request_wire_shape() -> None:
    codec = EdgeCodec()
    data, _ = codec.encode_request(7, GetBlockPeakRequest())
    assert data == rlp.encode([7, ["getblockpeak"]])

    data, _ = codec.encode_request(8, HelloRequest())
    assert data == rlp.encode([8, ["hello", 1000]])

    data, _ = codec.encode_request(9, PortOpenRequest(device_id=b"\xaa" * 20, port=80))
    assert data == rlp.encode([9, ["portopen", b"\xaa" * 20, 80, "rw"]])


@pytest.mark.parametrize(
    "req",
    [
        HelloRequest(flag=5),
        PortOpenRequest(device_id=b"\x01" * 20, port=8080, mode="r"),
        GetBlockRequest(12, method="getblock2"),
        GetBlockHeaderRequest(99),
        GetBlockquickRequest(last_valid=10, window_size=100),
        TicketRequest(
            block_number=5,
            fleet_addr=b"\x02" * 20,
            total_connections=3,
            total_bytes=4096,
            local_addr=b"\x7f\x00\x00\x01",
            device_sig=b"\x30" * 70,
        ),
    ],
)
def test_requests_decode_back_to_the_same_record(req) -> None:
    codec = EdgeCodec()
    data, _ = codec.encode_request(3, req)
    rid, back = codec.decode_request(data)
    assert rid == 3
    assert back == req


def test_request_variant_tokens_are_checked() -> None:
    assert GetBlockHeaderRequest(1).method_name == "getblockheader2"
    with pytest.raises(UnsupportedMethod) as e:
        GetBlockRequest(1, method="getblockheader")
    assert e.value.method == "getblockheader"


def test_unknown_request_method() -> None:
    codec = EdgeCodec()
    with pytest.raises(UnsupportedMethod):
        codec.decode_request(rlp.encode([1, ["frobnicate", 1]]))
    with pytest.raises(UnsupportedMethod):
        codec.response_decoder("frobnicate")


@pytest.mark.parametrize(
    "method,record",
    [
        ("getblockpeak", BlockPeak(number=123456)),
        ("portsend", Ack(method="portsend")),
        ("hello", Ack(method="hello", result="welcome")),
        ("portopen", PortOpen(ref=7, ok=True)),
        ("portopen", PortOpen(ref=0, ok=False, reason="port closed")),
        ("getaccountroots", AccountRoots(roots=(b"\x01" * 32, b"\x02" * 32))),
        ("getnode", ServerObj(host=b"edge.example", edge_port=41046, server_port=51054, sig=b"\x05" * 65)),
        ("getblock", Block(items=(("number", b"\x2a"), ("miner", b"\x09" * 20)))),
        (
            "getobject",
            DeviceTicket(
                server_id=b"\x01" * 20,
                block_number=77,
                fleet_addr=b"\x02" * 20,
                total_connections=1,
                total_bytes=2,
                local_addr=b"\x0a\x00\x00\x01",
                device_sig=b"\x03" * 65,
                server_sig=b"\x04" * 65,
            ),
        ),
    ],
)
def test_responses_decode_back_to_the_same_record(method, record) -> None:
    codec = EdgeCodec()
    data = codec.encode_response(11, method, record)
    assert codec.response_id(data) == 11
    assert codec.decode_response(data, method) == record


def test_block_items_lookup() -> None:
    b = Block(items=(("number", b"\x2a"), ("miner", b"\x09" * 20)))
    assert b.get("miner") == b"\x09" * 20
    assert b.get("parent") is None


def test_block_header_and_window_round_trip() -> None:
    codec = EdgeCodec()
    h = _header()
    data = codec.encode_response(1, "getblockheader2", h)
    assert codec.decode_response(data, "getblockheader2") == h

    window = BlockquickWindow(headers=(_header(1), _header(2)))
    data = codec.encode_response(2, "getblockquick2", window)
    assert codec.decode_response(data, "getblockquick2") == window


def test_account_carries_verified_proof() -> None:
    codec = EdgeCodec()
    raw = [b"\x00", 0, [b"balance", b"\x10"]]
    proof = build_merkle_tree(rlp.decode(rlp.encode(raw)))
    acct = Account(storage_root=b"\x09" * 32, nonce=3, code=b"", balance=10**30, proof=proof)

    back = codec.decode_response(codec.encode_response(4, "getaccount", acct), "getaccount")
    assert back == acct
    assert back.proof.root_hash == proof.root_hash
    assert back.proof.get(b"balance") == b"\x10"


def test_response_for_another_method_is_rejected() -> None:
    codec = EdgeCodec()
    data = codec.encode_response(1, "getblockpeak", BlockPeak(number=5))
    with pytest.raises(DecodeError) as e:
        codec.decode_response(data, "getstateroots")
    assert e.value.path == "$[1][1]"


def test_wrong_arity_and_kind_fail_with_path() -> None:
    codec = EdgeCodec()
    with pytest.raises(DecodeError):
        codec.decode_response(rlp.encode([1, ["response", "getblockpeak"]]), "getblockpeak")
    with pytest.raises(DecodeError) as e:
        codec.decode_response(rlp.encode([1, ["response", "getblockpeak", [b"5"]]]), "getblockpeak")
    assert e.value.path == "$[1][2]"
    with pytest.raises(DecodeError):
        codec.decode_response(b"\xc5\x01\xc3\x88", "getblockpeak")


def test_object_addresses_must_be_20_bytes() -> None:
    codec = EdgeCodec()
    bad = rlp.encode([1, ["response", "getobject", [b"\x01" * 19, 1, b"\x02" * 20, 0, 0, b"", b"", b""]]])
    with pytest.raises(DecodeError) as e:
        codec.decode_response(bad, "getobject")
    assert e.value.path == "$[1][2][0]"


def test_node_ports_are_16_bit() -> None:
    codec = EdgeCodec()
    bad = rlp.encode([1, ["response", "getnode", [b"h", 70000, 1, b""]]])
    with pytest.raises(DecodeError):
        codec.decode_response(bad, "getnode")


def test_error_envelope() -> None:
    codec = EdgeCodec()
    data = codec.encode_error(5, "getaccount", "account not found")
    reply = codec.decode_error(data)
    assert (reply.method, reply.message) == ("getaccount", "account not found")


# ----------------------------
# Ticket replies
# ----------------------------


def test_ticket_thanks_is_void() -> None:
    codec = EdgeCodec()
    t = codec.decode_response(rlp.encode([1, ["response", "ticket", "thanks!"]]), "ticket")
    assert t.is_void
    assert t.error is None
    assert (t.total_connections, t.total_bytes) == (0, 0)

    # servers may append the paid byte counter
    t = codec.decode_response(rlp.encode([1, ["response", "ticket", "thanks!", 4096]]), "ticket")
    assert t.is_void


def test_ticket_too_old_and_too_low() -> None:
    codec = EdgeCodec()
    t = codec.decode_response(rlp.encode([1, ["response", "ticket", "too_old", 900]]), "ticket")
    assert t.error == TicketErrorKind.TOO_OLD
    assert t.block_number == 900

    reply = ["response", "ticket", "too_low", b"\xbb" * 32, 12, 65536, b"\x0a\x00\x00\x02", b"\x30" * 70]
    t = codec.decode_response(rlp.encode([2, reply]), "ticket")
    assert t.error == TicketErrorKind.TOO_LOW
    assert t.block_hash == b"\xbb" * 32
    assert (t.total_connections, t.total_bytes) == (12, 65536)
    assert t.local_addr == b"\x0a\x00\x00\x02"
    assert t.device_sig == b"\x30" * 70


@pytest.mark.parametrize(
    "fields",
    [
        ["maybe"],
        [],
        ["too_low", b"\xbb" * 32, 12],
        ["too_old", [b"x"]],
        ["thanks!", 1, 2],
    ],
)
def test_unparseable_ticket_replies(fields) -> None:
    codec = EdgeCodec()
    with pytest.raises(TicketError) as e:
        codec.decode_response(rlp.encode([1, ["response", "ticket", *fields]]), "ticket")
    assert e.value.code == "failed_to_parse_ticket"


# ----------------------------
# Inbound tunnel control
# ----------------------------


def test_inbound_control_round_trip() -> None:
    codec = EdgeCodec()
    for record in (
        PortOpen(ref=9, port=22, device_id=b"\x01" * 20),
        PortSend(ref=9, data=b"\x00\xffpayload"),
        Goodbye(reason="maintenance"),
    ):
        assert codec.decode_inbound(codec.encode_inbound(4, record)) == record


def test_goodbye_joins_reason_parts() -> None:
    codec = EdgeCodec()
    g = codec.decode_inbound(rlp.encode([3, ["goodbye", "ticket_error", "too many bytes"]]))
    assert g == Goodbye(reason="ticket_error: too many bytes")


@pytest.mark.parametrize(
    "req,has_reply",
    [
        (HelloRequest(), False),
        (PortSendRequest(ref=1, data=b"x"), False),
        (PortCloseRequest(ref=1), False),
        (GoodbyeRequest(reason="done"), False),
        (PortOpenRequest(device_id=b"\x01" * 20, port=80), True),
        (GetBlockPeakRequest(), True),
    ],
)
def test_only_answered_methods_get_a_decoder(req, has_reply: bool) -> None:
    _, decoder = EdgeCodec().encode_request(1, req)
    assert (decoder is not None) == has_reply
