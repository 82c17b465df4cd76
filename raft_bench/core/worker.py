"""Per-worker backend connections.

Each worker owns exactly one connection for its whole lifetime. Two
interchangeable put paths implement the same surface:

* ``StreamWorker`` keeps one long-lived ``StreamProposals`` call open, writes
  puts without waiting for their replies and drains acknowledgments in a
  separate task.
* ``UnaryWorker`` issues one ``Put`` per item and awaits each reply.

Point reads always go through a unary ``Get`` on the worker's connection so
they are never queued behind streamed writes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Type

import grpc

from .errors import SetupError
from .rpc import DEFAULT_WINDOW_SIZE, PutRequest, RaftKVClient
from .types import WorkerState, WorkItem

logger = logging.getLogger(__name__)

Connector = Callable[[str, float, int], Awaitable[RaftKVClient]]

# Errors a write on a finished or half-closed stream can raise.
SEND_ERRORS = (grpc.RpcError, asyncio.InvalidStateError, grpc.aio.UsageError)


class Worker:
    """Common surface of the streaming and unary put paths."""

    binding = ""

    def __init__(self, worker_id: int, address: str,
                 dial_timeout: float = 2.0,
                 connect: Optional[Connector] = None,
                 window_size: int = DEFAULT_WINDOW_SIZE,
                 drain_grace: float = 5.0):
        self.worker_id = worker_id
        self.address = address
        self.dial_timeout = dial_timeout
        self.connect = connect or RaftKVClient.dial
        self.window_size = window_size
        self.drain_grace = drain_grace

        self.client: Optional[RaftKVClient] = None
        self.state = WorkerState.IDLE
        self.sent = 0
        self.acks = 0
        self.send_errors = 0
        # set when the backend refused the connection's put path outright
        self.setup_error: Optional[grpc.RpcError] = None
        self._cancelled = asyncio.Event()
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def check_setup(self) -> None:
        """Raise ``SetupError`` if the backend rejected this worker's stream."""
        if self.setup_error is not None:
            raise SetupError(
                f"[Worker {self.worker_id}] stream to {self.address} was rejected: "
                f"{self.setup_error}") from self.setup_error

    async def _dial(self) -> None:
        self.client = await self.connect(self.address, self.dial_timeout, self.window_size)
        self.state = WorkerState.CONNECTED
        logger.debug(f"[Worker {self.worker_id}] connected to {self.address}")

    async def start(self) -> None:
        raise NotImplementedError

    async def send(self, item: WorkItem) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def update(self, key: bytes, value: bytes) -> bool:
        return await self.send(WorkItem(key=key, value=value))

    async def insert(self, key: bytes, value: bytes) -> bool:
        # The raft service has no insert-only RPC.
        return await self.send(WorkItem(key=key, value=value))

    async def delete(self, key: bytes) -> bool:
        return await self.send(WorkItem(key=key, value=b""))

    async def read(self, key: bytes) -> bytes:
        return await self.client.get(key)

    async def run(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> int:
        """Send loop: consume work items until the queue is closed or the run stops."""
        while True:
            item = await queue.get()
            if item is None:
                break
            if stop_event.is_set() or self.cancelled:
                break
            await self.send(item)
        return self.sent

    def _log_send_error(self, err: Exception) -> None:
        self.send_errors += 1
        if self.send_errors == 1:
            logger.warning(f"[Worker {self.worker_id}] send failed: {err}")
        else:
            logger.debug(f"[Worker {self.worker_id}] send failed ({self.send_errors} total): {err}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class StreamWorker(Worker):
    """Owns one connection and one open StreamProposals call."""

    binding = "stream"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.call = None
        self.drain_done = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def draining(self) -> bool:
        """True while the acknowledgment drain task is running."""
        return self._drain_task is not None and not self._drain_task.done()

    async def start(self) -> None:
        try:
            await self._dial()
            self.call = self.client.open_stream()
            # fails fast if the call already ended, e.g. with UNIMPLEMENTED
            await self.call.wait_for_connection()
        except grpc.RpcError as e:
            await self.close()
            raise SetupError(
                f"[Worker {self.worker_id}] failed to open stream to {self.address}: {e}") from e
        except BaseException:
            await self.close()
            raise
        self.state = WorkerState.STREAMING
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while True:
                resp = await self.call.read()
                if resp is grpc.aio.EOF:
                    logger.debug(f"[Worker {self.worker_id}] stream closed after {self.acks} acks")
                    break
                self.acks += 1
        except grpc.RpcError as e:
            if self.acks == 0 and e.code() != grpc.StatusCode.CANCELLED:
                # a stream that fails before its first ack was never usable
                self.setup_error = e
                logger.error(f"[Worker {self.worker_id}] stream rejected by {self.address}: {e}")
            elif self.cancelled:
                logger.debug(f"[Worker {self.worker_id}] stream ended after {self.acks} acks: {e}")
            else:
                logger.warning(f"[Worker {self.worker_id}] stream terminated after {self.acks} acks: {e}")
        finally:
            self.drain_done.set()

    async def send(self, item: WorkItem) -> bool:
        self.check_setup()
        if self.cancelled or self.call is None:
            return False
        try:
            await self.call.write(PutRequest(key=item.key, value=item.value))
        except SEND_ERRORS as e:
            if self.acks == 0 and self.call.done():
                # let the drain task record how the call ended
                await self.drain_done.wait()
                self.check_setup()
            self._log_send_error(e)
            return False
        self.sent += 1
        return True

    async def close(self) -> None:
        """Half-close, cancel, wait for the drain loop, close the connection.

        Runs its steps exactly once, in this order, whatever the exit path.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self.call is not None:
                self.state = WorkerState.DRAINING
                try:
                    await self.call.done_writing()
                except SEND_ERRORS as e:
                    logger.debug(f"[Worker {self.worker_id}] half-close failed: {e}")
            self._cancelled.set()
            if self._drain_task is not None:
                done, _ = await asyncio.wait({self._drain_task}, timeout=self.drain_grace)
                if not done:
                    logger.warning(
                        f"[Worker {self.worker_id}] drain grace of {self.drain_grace}s expired "
                        f"with {self.acks}/{self.sent} acks")
                    self.call.cancel()
                    self._drain_task.cancel()
                    await asyncio.gather(self._drain_task, return_exceptions=True)
        finally:
            self._cancelled.set()
            if self.client is not None:
                await self.client.close()
            self.state = WorkerState.CLOSED


class UnaryWorker(Worker):
    """One Put per item; every reply is awaited before the next send."""

    binding = "unary"

    async def start(self) -> None:
        await self._dial()

    async def send(self, item: WorkItem) -> bool:
        if self.cancelled or self.client is None:
            return False
        try:
            await self.client.put(item.key, item.value)
        except grpc.RpcError as e:
            self._log_send_error(e)
            return False
        self.sent += 1
        self.acks += 1
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancelled.set()
        try:
            if self.client is not None:
                await self.client.close()
        finally:
            self.state = WorkerState.CLOSED


def default_bindings() -> Dict[str, Type[Worker]]:
    """Binding name -> worker class, handed explicitly to the runner."""
    return {
        StreamWorker.binding: StreamWorker,
        UnaryWorker.binding: UnaryWorker,
    }
