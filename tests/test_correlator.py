# tests/test_correlator.py
from __future__ import annotations

import threading

import pytest

from edgewire.edge import rlp
from edgewire.edge.codec import EdgeCodec
from edgewire.edge.correlator import ResponseCorrelator
from edgewire.edge.messages import BlockPeak, GetBlockPeakRequest, StateRoots
from edgewire.errors import (
    ConnectionClosed,
    DecodeError,
    DispatchError,
    RemoteError,
    RequestAlreadyResolved,
    ResponseHandlerNotFound,
)


def _registered(corr: ResponseCorrelator, rid: int):
    _, decoder = corr.codec.encode_request(rid, GetBlockPeakRequest())
    return corr.register(rid, decoder, "getblockpeak")


def test_resolve_uses_registered_decoder() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 1)
    data = corr.codec.encode_response(1, "getblockpeak", BlockPeak(number=900))

    assert corr.resolve(data) == BlockPeak(number=900)
    assert fut.result(timeout=0) == BlockPeak(number=900)
    assert corr.pending_ids() == []


def test_decoder_shape_wins_over_what_the_response_claims() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 2)
    data = corr.codec.encode_response(2, "getstateroots", StateRoots(roots=(b"\x01" * 32,)))

    with pytest.raises(DecodeError):
        corr.resolve(data)
    with pytest.raises(DecodeError):
        fut.result(timeout=0)


def test_unregistered_id() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    with pytest.raises(ResponseHandlerNotFound):
        corr.resolve(corr.codec.encode_response(42, "getblockpeak", BlockPeak(number=1)))


def test_second_resolve_is_rejected() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    _registered(corr, 3)
    data = corr.codec.encode_response(3, "getblockpeak", BlockPeak(number=1))
    corr.resolve(data)
    with pytest.raises(RequestAlreadyResolved) as e:
        corr.resolve(data)
    assert e.value.request_id == 3


def test_error_envelope_fails_the_request() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 4)
    with pytest.raises(RemoteError) as e:
        corr.resolve(corr.codec.encode_error(4, "getblockpeak", "not synced"))
    assert e.value.message == "not synced"
    assert isinstance(fut.exception(timeout=0), RemoteError)


def test_duplicate_registration() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    _registered(corr, 5)
    with pytest.raises(DispatchError):
        _registered(corr, 5)


def test_fail_all_on_teardown() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    futs = [_registered(corr, rid) for rid in (1, 2, 3)]
    assert corr.pending_ids() == [1, 2, 3]

    assert corr.fail_all("server went away") == 3
    for f in futs:
        err = f.exception(timeout=0)
        assert isinstance(err, ConnectionClosed)
        assert err.reason == "server went away"

    with pytest.raises(ConnectionClosed):
        _registered(corr, 9)
    with pytest.raises(RequestAlreadyResolved):
        corr.resolve(rlp.encode([1, ["response", "getblockpeak", 1]]))


def test_cancelled_future_does_not_break_resolve() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 6)
    assert fut.cancel()
    assert corr.resolve(corr.codec.encode_response(6, "getblockpeak", BlockPeak(number=2))) == BlockPeak(number=2)


def test_abandon() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 7)
    assert corr.abandon(7, ConnectionClosed("send failed"))
    assert not corr.abandon(7, ConnectionClosed("send failed"))
    assert isinstance(fut.exception(timeout=0), ConnectionClosed)


def test_is_pending() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    _registered(corr, 8)
    assert corr.is_pending(8)
    corr.resolve(corr.codec.encode_response(8, "getblockpeak", BlockPeak(number=1)))
    assert not corr.is_pending(8)


def test_concurrent_register_and_resolve() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    errors = []

    def worker(base: int) -> None:
        try:
            for rid in range(base, base + 200):
                fut = _registered(corr, rid)
                corr.resolve(corr.codec.encode_response(rid, "getblockpeak", BlockPeak(number=rid)))
                assert fut.result(timeout=1) == BlockPeak(number=rid)
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(1 + n * 1000,)) for n in range(4)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert errors == []
    assert len(corr) == 0


def test_racing_resolves_settle_once() -> None:
    corr = ResponseCorrelator(EdgeCodec())
    fut = _registered(corr, 11)
    data = corr.codec.encode_response(11, "getblockpeak", BlockPeak(number=5))
    barrier = threading.Barrier(4)
    outcomes = []

    def worker() -> None:
        barrier.wait()
        try:
            outcomes.append(corr.resolve(data))
        except RequestAlreadyResolved as e:
            outcomes.append(e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert outcomes.count(BlockPeak(number=5)) == 1
    assert sum(isinstance(o, RequestAlreadyResolved) for o in outcomes) == 3
    assert fut.result(timeout=0) == BlockPeak(number=5)
