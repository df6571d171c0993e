"""Client-side request dispatch.

The dispatcher owns the client end of a transport. It writes staged
requests and cancellations to the wire, hands responses to the callers
waiting for them and fails requests whose deadline has passed.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rpcwire.context import Context
from rpcwire.in_flight_requests import InFlightRequests
from rpcwire.messages import Cancel, Request, Response, ServerError

__all__ = [
    "Config",
    "Transport",
    "RpcError",
    "Disconnected",
    "DeadlineExceeded",
    "ServerAborted",
    "ChannelError",
    "DispatchRequest",
    "RequestDispatch",
]

_log = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class Config:
    """Settings that control the behaviour of a client."""

    max_in_flight_requests: int = 1_000
    """How many requests may await a response at once."""
    pending_request_buffer: int = 100
    """How many requests may be staged before being written to the wire."""

    def __post_init__(self) -> None:
        if self.pending_request_buffer < 1:
            raise ValueError("pending_request_buffer must be at least 1")
        if self.max_in_flight_requests < 0:
            raise ValueError("max_in_flight_requests must not be negative")


class Transport:
    """One end of an in-memory, unbounded, bidirectional message channel.

    Any object with the coroutine methods ``send``, ``receive`` and ``close``
    can serve as a transport; ``receive`` returns ``None`` once the peer has
    closed its sending side.
    """

    def __init__(self) -> None:
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._peer: Transport | None = None
        self._closed = False

    @classmethod
    def pair(cls) -> tuple[Transport, Transport]:
        """Return two connected ends: what one sends, the other receives."""
        first, second = cls(), cls()
        first._peer = second
        second._peer = first
        return first, second

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}({state}, queued={self._incoming.qsize()})"

    async def send(self, message: Any) -> None:
        """Deliver ``message`` to the peer."""
        if self._closed:
            raise ConnectionError("the transport is closed for writing")
        if self._peer is None:
            raise ConnectionError("the transport is not connected")
        self._peer._incoming.put_nowait(message)

    async def receive(self) -> Any:
        """Return the next message from the peer, or None once it has closed."""
        message = await self._incoming.get()
        if message is _CLOSED:
            self._incoming.put_nowait(_CLOSED)
            return None
        return message

    async def close(self) -> None:
        """Close the sending side; the peer sees the end of its stream."""
        if self._closed:
            return
        self._closed = True
        if self._peer is not None:
            self._peer._incoming.put_nowait(_CLOSED)


class RpcError(Exception):
    """A failure that can happen to any RPC, independent of the request."""


class Disconnected(RpcError):
    """The client disconnected from the server."""

    def __init__(self) -> None:
        super().__init__("the client disconnected from the server")


class DeadlineExceeded(RpcError):
    """The request exceeded its deadline."""

    def __init__(self) -> None:
        super().__init__("the request exceeded its deadline")


class ServerAborted(RpcError):
    """The server aborted request processing."""

    def __init__(self, error: ServerError) -> None:
        super().__init__("the server aborted request processing")
        self.error = error
        self.__cause__ = error


class ChannelError(Exception):
    """A critical transport failure that ends request dispatch."""

    class Operation(enum.Enum):
        READ = "could not read from the transport"
        WRITE = "could not write to the transport"
        CLOSE = "could not close the write end of the transport"

    def __init__(self, operation: ChannelError.Operation, source: BaseException) -> None:
        super().__init__(operation.value)
        self.operation = operation
        self.source = source


@dataclass
class DispatchRequest:
    """A request staged for dispatch, with the future that receives its response."""

    ctx: Context
    request_id: int
    request: Any
    response_completion: asyncio.Future


def _fail(completion: asyncio.Future) -> None:
    if not completion.done():
        completion.set_exception(Disconnected())


class RequestDispatch:
    """Drives the lifecycle of requests over one transport.

    Callers stage requests with :meth:`submit` and cancel them with
    :meth:`cancel`; :meth:`run` must be running for anything to happen.
    After :meth:`close`, no more requests are accepted, the write side of the
    transport is closed, and dispatch ends once every in-flight request is
    settled. When dispatch ends, all waiting callers fail with
    :class:`Disconnected`.
    """

    def __init__(self, transport: Any, config: Config | None = None) -> None:
        self.config = config if config is not None else Config()
        self.transport = transport
        self.in_flight_requests = InFlightRequests()
        self._pending: asyncio.Queue[Any] = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.config.pending_request_buffer)
        self._canceled: asyncio.Queue[int] = asyncio.Queue()
        self._completions: dict[int, asyncio.Future] = {}
        self._closing = False
        self._started = False
        self._finished = False
        self._write_open = True

    def __repr__(self) -> str:
        return (
            f"RequestDispatch(in_flight={len(self.in_flight_requests)}, "
            f"closing={self._closing}, finished={self._finished})"
        )

    @property
    def finished(self) -> bool:
        """Whether dispatch has ended."""
        return self._finished

    async def submit(self, request: DispatchRequest) -> None:
        """Stage a request, waiting while the pending buffer is full."""
        if self._closing or self._finished:
            raise Disconnected()
        await self._slots.acquire()
        if self._closing or self._finished:
            self._slots.release()
            raise Disconnected()
        self._pending.put_nowait(request)

    def cancel(self, request_id: int) -> None:
        """Ask dispatch to drop the request with ``request_id``."""
        if not self._finished:
            self._canceled.put_nowait(request_id)

    def close(self) -> None:
        """Accept no further requests; dispatch winds down once drained."""
        if not self._closing:
            self._closing = True
            self._pending.put_nowait(_CLOSED)

    async def run(self) -> None:
        """Dispatch requests until the transport or the client is done.

        Raises :class:`ChannelError` if the transport fails.
        """
        if self._started:
            raise RuntimeError("request dispatch has already been run")
        self._started = True
        try:
            await self._pump()
        finally:
            await self._shut_down()

    async def _pump(self) -> None:
        read_task: asyncio.Future = asyncio.ensure_future(self.transport.receive())
        pending_task: asyncio.Future | None = None
        cancel_task: asyncio.Future | None = None
        pending_open = True
        try:
            while True:
                if pending_open and pending_task is None:
                    if len(self.in_flight_requests) < self.config.max_in_flight_requests:
                        pending_task = asyncio.ensure_future(self._pending.get())
                    else:
                        _log.info(
                            "At in-flight request capacity (%d/%d).",
                            len(self.in_flight_requests),
                            self.config.max_in_flight_requests,
                        )
                if cancel_task is None:
                    cancel_task = asyncio.ensure_future(self._canceled.get())
                waiting = {t for t in (read_task, pending_task, cancel_task) if t is not None}
                done, _ = await asyncio.wait(
                    waiting,
                    timeout=self._time_until_next_deadline(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                self._expire()

                if read_task in done:
                    try:
                        response = read_task.result()
                    except Exception as exc:
                        raise ChannelError(ChannelError.Operation.READ, exc) from exc
                    if response is None:
                        _log.info("Shutdown: read half closed, so shutting down.")
                        return
                    self._complete(response)
                    read_task = asyncio.ensure_future(self.transport.receive())

                if cancel_task in done:
                    request_id = cancel_task.result()
                    cancel_task = None
                    await self._write_cancel(request_id)

                if pending_task is not None and pending_task in done:
                    item = pending_task.result()
                    pending_task = None
                    if item is _CLOSED:
                        pending_open = False
                    else:
                        self._slots.release()
                        await self._write_request(item)

                if self._write_open and not pending_open and self._canceled.empty():
                    await self._close_write()

                if not self._write_open:
                    if not len(self.in_flight_requests):
                        _log.info("Shutdown: write half closed, and no requests in flight.")
                        return
                    _log.info(
                        "Shutdown: write half closed, and %d requests in flight.",
                        len(self.in_flight_requests),
                    )
        finally:
            leftovers = [t for t in (read_task, pending_task, cancel_task) if t is not None]
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)
            if pending_task is not None and not pending_task.cancelled():
                # A request taken off the queue but never handled.
                item = pending_task.result() if pending_task.exception() is None else None
                if isinstance(item, DispatchRequest):
                    _fail(item.response_completion)

    def _time_until_next_deadline(self) -> float | None:
        deadline = self.in_flight_requests.next_deadline()
        if deadline is None:
            return None
        remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, remaining)

    def _expire(self) -> None:
        # Expired requests count as complete: no cancellation is sent, since
        # the server has already used up the time it was given.
        for request_id in self.in_flight_requests.pop_expired():
            self._completions.pop(request_id, None)

    def _complete(self, response: Any) -> None:
        if not isinstance(response, Response):
            _log.warning("Ignoring a message that is not a response: %r", response)
            return
        if self.in_flight_requests.complete_request(response):
            self._completions.pop(response.request_id, None)

    async def _write_request(self, staged: DispatchRequest) -> None:
        if staged.response_completion.done():
            _log.info("AbortRequest request_id=%s", staged.request_id)
            return
        message = Request(context=staged.ctx, id=staged.request_id, message=staged.request)
        try:
            await self.transport.send(message)
        except Exception as exc:
            _fail(staged.response_completion)
            raise ChannelError(ChannelError.Operation.WRITE, exc) from exc
        _log.info(
            "SendRequest request_id=%s deadline=%s",
            staged.request_id,
            staged.ctx.deadline.isoformat(),
        )
        self.in_flight_requests.insert_request(
            staged.request_id, staged.ctx, staged.response_completion
        )
        self._completions[staged.request_id] = staged.response_completion

    async def _write_cancel(self, request_id: int) -> None:
        ctx = self.in_flight_requests.cancel_request(request_id)
        if ctx is None:
            return
        self._completions.pop(request_id, None)
        if not self._write_open:
            return
        try:
            await self.transport.send(
                Cancel(request_id=request_id, trace_context=ctx.trace_context)
            )
        except Exception as exc:
            raise ChannelError(ChannelError.Operation.WRITE, exc) from exc
        _log.info("CancelRequest request_id=%s", request_id)

    async def _close_write(self) -> None:
        self._write_open = False
        try:
            await self.transport.close()
        except Exception as exc:
            raise ChannelError(ChannelError.Operation.CLOSE, exc) from exc

    async def _shut_down(self) -> None:
        self._finished = True
        for request_id, completion in self._completions.items():
            self.in_flight_requests.cancel_request(request_id)
            _fail(completion)
        self._completions.clear()
        while True:
            try:
                item = self._pending.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, DispatchRequest):
                _fail(item.response_completion)
                self._slots.release()
        if self._write_open:
            self._write_open = False
            with contextlib.suppress(Exception):
                await self.transport.close()