"""Tests for the stream/unary workers and the dispatcher."""

import sys
import os
import asyncio
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import grpc
import pytest

from raft_bench.core import (
    Dispatcher,
    KeySynthesizer,
    SetupError,
    StreamWorker,
    UnaryWorker,
    WorkerState,
    WorkItem,
    default_bindings,
)

from fakes import FakeBackend


def make_worker(cls, backend, worker_id=0, address="node:1", **kwargs):
    return cls(worker_id, address, connect=backend.connect, **kwargs)


def test_stream_worker_lifecycle():
    """A stream worker writes without waiting, then drains every ack on close."""
    print("Testing stream worker lifecycle...")
    backend = FakeBackend()

    async def go():
        worker = make_worker(StreamWorker, backend)
        assert worker.state == WorkerState.IDLE
        await worker.start()
        assert worker.state == WorkerState.STREAMING
        # acknowledgments drain while the worker is still streaming
        assert worker.draining
        for i in range(10):
            assert await worker.send(WorkItem(key=bytes([i]), value=b"v"))
        await worker.close()
        return worker

    worker = asyncio.run(go())
    assert worker.sent == 10
    assert worker.acks == 10
    assert worker.state == WorkerState.CLOSED
    assert worker.drain_done.is_set()
    assert not worker.draining
    assert len(backend.writes) == 10
    print("  ✓ Stream worker lifecycle test passed\n")


def test_shutdown_order_and_single_close():
    """Half-close, drain to EOF, then close the connection; only once."""
    print("Testing shutdown order...")
    backend = FakeBackend()

    async def go():
        worker = make_worker(StreamWorker, backend)
        async with worker:
            await worker.update(b"k", b"v")
        await worker.close()
        await worker.close()
        return worker

    worker = asyncio.run(go())
    kinds = [kind for kind, _ in backend.events]
    assert kinds == ["done_writing", "eof", "close"]
    assert backend.clients[0].closes == 1
    assert worker.closed
    print("  ✓ Shutdown order test passed\n")


def test_drain_grace_expiry():
    """A drain that never sees EOF is cancelled after the grace period."""
    print("Testing drain grace expiry...")
    backend = FakeBackend(ack=False)
    backend.hang_on_close = True

    async def go():
        worker = make_worker(StreamWorker, backend, drain_grace=0.05)
        await worker.start()
        await worker.send(WorkItem(key=b"k", value=b"v"))
        await worker.close()
        return worker

    worker = asyncio.run(go())
    kinds = [kind for kind, _ in backend.events]
    assert kinds == ["done_writing", "cancel", "close"]
    assert worker.sent == 1
    assert worker.acks == 0
    assert worker.state == WorkerState.CLOSED
    print("  ✓ Drain grace expiry test passed\n")


def test_no_sends_after_cancellation():
    """Once cancelled a worker drops further items without writing them."""
    print("Testing sends after cancellation...")
    backend = FakeBackend()

    async def go():
        worker = make_worker(StreamWorker, backend)
        await worker.start()
        await worker.send(WorkItem(key=b"a", value=b"v"))
        await worker.close()
        assert not await worker.send(WorkItem(key=b"b", value=b"v"))

        queue = asyncio.Queue()
        stop = asyncio.Event()
        for key in (b"c", b"d"):
            queue.put_nowait(WorkItem(key=key, value=b"v"))
        queue.put_nowait(None)
        await worker.run(queue, stop)
        return worker

    worker = asyncio.run(go())
    assert worker.sent == 1
    assert backend.writes == [(b"a", b"v")]
    print("  ✓ Sends after cancellation test passed\n")


def test_stop_event_halts_run():
    """The send loop checks the run's stop signal before every send."""
    print("Testing stop event...")
    backend = FakeBackend()

    async def go():
        worker = make_worker(UnaryWorker, backend)
        await worker.start()
        queue = asyncio.Queue()
        stop = asyncio.Event()
        queue.put_nowait(WorkItem(key=b"a", value=b"v"))
        stop.set()
        queue.put_nowait(WorkItem(key=b"b", value=b"v"))
        sent = await worker.run(queue, stop)
        await worker.close()
        return sent

    assert asyncio.run(go()) == 0
    assert backend.writes == []
    print("  ✓ Stop event test passed\n")


def test_send_errors_are_counted():
    """Write failures are counted per worker and do not stop the loop."""
    print("Testing send errors...")
    backend = FakeBackend()
    backend.fail_writes = True

    async def go():
        worker = make_worker(StreamWorker, backend)
        await worker.start()
        results = [await worker.send(WorkItem(key=b"k", value=b"v")) for _ in range(3)]
        await worker.close()
        return worker, results

    worker, results = asyncio.run(go())
    assert results == [False, False, False]
    assert worker.send_errors == 3
    assert worker.sent == 0
    print("  ✓ Send errors test passed\n")


def test_stream_rejected_on_connect():
    """A stream that has already failed when start() checks it is a setup error."""
    print("Testing stream rejected on connect...")
    backend = FakeBackend()
    backend.reject_stream = True
    backend.reject_on_connect = True

    async def go():
        worker = make_worker(StreamWorker, backend)
        with pytest.raises(SetupError):
            await worker.start()
        return worker

    worker = asyncio.run(go())
    assert backend.clients[0].closes == 1
    assert worker.state == WorkerState.CLOSED
    print("  ✓ Stream rejected on connect test passed\n")


def test_stream_rejected_after_start():
    """A rejection seen after start() turns the first failed send into a setup error."""
    print("Testing stream rejected after start...")
    backend = FakeBackend()
    backend.reject_stream = True

    async def go():
        worker = make_worker(StreamWorker, backend)
        await worker.start()
        assert worker.state == WorkerState.STREAMING
        with pytest.raises(SetupError):
            await worker.send(WorkItem(key=b"k", value=b"v"))
        await worker.close()
        return worker

    worker = asyncio.run(go())
    assert worker.setup_error is not None
    assert worker.setup_error.code() == grpc.StatusCode.UNIMPLEMENTED
    assert worker.sent == 0
    assert backend.writes == []
    assert backend.clients[0].closes == 1
    with pytest.raises(SetupError):
        worker.check_setup()
    print("  ✓ Stream rejected after start test passed\n")


def test_unary_worker_and_deletes():
    """The unary path awaits each put; deletes are empty-value puts."""
    print("Testing unary worker...")
    backend = FakeBackend()

    async def go():
        async with make_worker(UnaryWorker, backend) as worker:
            await worker.insert(b"a", b"1")
            await worker.delete(b"a")
            value = await worker.read(b"a")
        return worker, value

    worker, value = asyncio.run(go())
    assert worker.sent == worker.acks == 2
    assert backend.writes == [(b"a", b"1"), (b"a", b"")]
    assert value == b""
    assert set(default_bindings()) == {"stream", "unary"}
    print("  ✓ Unary worker test passed\n")


def test_dispatcher_delivers_exactly_once():
    """Every submitted item is written by exactly one worker."""
    print("Testing dispatcher delivery...")
    backend = FakeBackend()
    keygen = KeySynthesizer(key_size=8, key_space=1 << 32)
    items = [WorkItem(key=keygen.encode(i), value=b"v") for i in range(1000)]
    progress = []

    async def go():
        workers = [make_worker(StreamWorker, backend, worker_id=i) for i in range(4)]
        for w in workers:
            await w.start()
        dispatcher = Dispatcher(4, progress=progress.append)
        stop = asyncio.Event()
        await asyncio.gather(dispatcher.produce(items),
                             *(w.run(dispatcher.queue, stop) for w in workers))
        for w in workers:
            await w.close()
        return dispatcher, workers

    dispatcher, workers = asyncio.run(go())
    written = [key for key, _ in backend.writes]
    assert sorted(written) == sorted(item.key for item in items)
    assert len(set(written)) == 1000
    assert dispatcher.submitted == 1000
    assert sum(w.sent for w in workers) == 1000
    assert sum(w.acks for w in workers) == 1000
    assert len(progress) == 1000
    print("  ✓ Dispatcher delivery test passed\n")


if __name__ == "__main__":
    print("="*60)
    print("WORKERS AND DISPATCHER - TEST SUITE")
    print("="*60)
    print()

    test_stream_worker_lifecycle()
    test_shutdown_order_and_single_close()
    test_drain_grace_expiry()
    test_no_sends_after_cancellation()
    test_stop_event_halts_run()
    test_send_errors_are_counted()
    test_stream_rejected_on_connect()
    test_stream_rejected_after_start()
    test_unary_worker_and_deletes()
    test_dispatcher_delivers_exactly_once()

    print("="*60)
    print("ALL TESTS PASSED!")
    print("="*60)
