import asyncio
import contextlib
from datetime import datetime, timedelta, timezone

import pytest

from rpcwire.context import Context
from rpcwire.dispatch import (
    ChannelError,
    Config,
    DeadlineExceeded,
    Disconnected,
    DispatchRequest,
    RequestDispatch,
    ServerAborted,
    Transport,
)
from rpcwire.in_flight_requests import DeadlineExceededError
from rpcwire.messages import Cancel, ErrorKind, Request, Response, ServerError


async def _recv(transport, timeout=1.0):
    return await asyncio.wait_for(transport.receive(), timeout)


def _set_up(config=None):
    client_end, server_end = Transport.pair()
    return RequestDispatch(client_end, config), server_end


async def _submit(dispatch, request_id=0, body="hi", ctx=None):
    loop = asyncio.get_running_loop()
    staged = DispatchRequest(ctx or Context(), request_id, body, loop.create_future())
    await dispatch.submit(staged)
    return staged


async def _issue(dispatch, server, request_id=0, body="hi", ctx=None):
    """Submit a request and return it together with what reached the server."""
    staged = await _submit(dispatch, request_id, body, ctx)
    return staged, await _recv(server)


@contextlib.asynccontextmanager
async def _running(config=None):
    dispatch, server = _set_up(config)
    task = asyncio.create_task(dispatch.run())
    try:
        yield dispatch, server, task
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


class _BrokenReadTransport:
    async def send(self, message):
        return None

    async def receive(self):
        raise OSError("read failed")

    async def close(self):
        return None


class _BrokenWriteTransport:
    def __init__(self):
        self._never = asyncio.Event()

    async def send(self, message):
        raise OSError("write failed")

    async def receive(self):
        await self._never.wait()

    async def close(self):
        return None


def test_config_defaults():
    config = Config()
    assert (config.max_in_flight_requests, config.pending_request_buffer) == (1000, 100)


def test_config_rejects_empty_buffer():
    with pytest.raises(ValueError):
        Config(pending_request_buffer=0)


@pytest.mark.asyncio
async def test_transport_pair_delivers_and_closes():
    left, right = Transport.pair()
    await left.send("a")
    assert await _recv(right) == "a"
    await left.close()
    assert [await _recv(right), await _recv(right)] == [None, None]
    with pytest.raises(ConnectionError):
        await left.send("b")


@pytest.mark.asyncio
async def test_stage_request():
    async with _running() as (dispatch, server, _task):
        _, message = await _issue(dispatch, server)
        assert isinstance(message, Request)
        assert (message.id, message.message) == (0, "hi")


@pytest.mark.asyncio
async def test_response_completes_request_future():
    async with _running() as (dispatch, server, _task):
        staged, _ = await _issue(dispatch, server)
        await server.send(Response(request_id=0, message="Resp"))
        response = await asyncio.wait_for(staged.response_completion, 1.0)
        assert response == Response(request_id=0, message="Resp")
        assert len(dispatch.in_flight_requests) == 0


@pytest.mark.asyncio
async def test_channel_closed_after_request_still_completes():
    async with _running() as (dispatch, server, task):
        staged = await _submit(dispatch)
        dispatch.close()
        assert isinstance(await _recv(server), Request)
        assert await _recv(server) is None
        await server.send(Response(request_id=0, message="hello"))
        await asyncio.wait_for(task, 1.0)
        assert staged.response_completion.result().message == "hello"
        assert dispatch.finished


@pytest.mark.asyncio
async def test_request_canceled_before_sending_is_skipped():
    dispatch, server = _set_up()
    staged = await _submit(dispatch)
    staged.response_completion.cancel()
    dispatch.close()
    await asyncio.wait_for(dispatch.run(), 1.0)
    assert await _recv(server) is None
    assert len(dispatch.in_flight_requests) == 0


@pytest.mark.asyncio
async def test_request_canceled_after_sending_sends_cancel():
    async with _running() as (dispatch, server, _task):
        staged, _ = await _issue(dispatch, server)
        assert len(dispatch.in_flight_requests) == 1
        staged.response_completion.cancel()
        dispatch.cancel(0)
        message = await _recv(server)
        assert isinstance(message, Cancel)
        assert message.request_id == 0
        assert len(dispatch.in_flight_requests) == 0


@pytest.mark.asyncio
async def test_expired_request_fails_with_deadline_error():
    async with _running() as (dispatch, server, _task):
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        staged, _ = await _issue(dispatch, server, ctx=Context(deadline=past))
        with pytest.raises(DeadlineExceededError):
            await asyncio.wait_for(staged.response_completion, 1.0)
        assert len(dispatch.in_flight_requests) == 0


@pytest.mark.asyncio
async def test_read_half_closed_disconnects_waiting_callers():
    async with _running() as (dispatch, server, task):
        staged, _ = await _issue(dispatch, server)
        await server.close()
        await asyncio.wait_for(task, 1.0)
        with pytest.raises(Disconnected):
            staged.response_completion.result()
        with pytest.raises(Disconnected):
            await _submit(dispatch, 1, "again")


@pytest.mark.asyncio
async def test_read_error_raises_channel_error():
    dispatch = RequestDispatch(_BrokenReadTransport())
    with pytest.raises(ChannelError) as info:
        await asyncio.wait_for(dispatch.run(), 1.0)
    assert info.value.operation is ChannelError.Operation.READ
    assert str(info.value) == "could not read from the transport"
    assert isinstance(info.value.__cause__, OSError)


@pytest.mark.asyncio
async def test_write_error_raises_channel_error():
    dispatch = RequestDispatch(_BrokenWriteTransport())
    staged = await _submit(dispatch)
    with pytest.raises(ChannelError) as info:
        await asyncio.wait_for(dispatch.run(), 1.0)
    assert info.value.operation is ChannelError.Operation.WRITE
    with pytest.raises(Disconnected):
        staged.response_completion.result()


@pytest.mark.asyncio
async def test_in_flight_capacity_holds_back_requests():
    async with _running(Config(max_in_flight_requests=1)) as (dispatch, server, _task):
        await _submit(dispatch, 0, "first")
        await _submit(dispatch, 1, "second")
        assert (await _recv(server)).id == 0
        with pytest.raises(asyncio.TimeoutError):
            await _recv(server, timeout=0.05)
        await server.send(Response(request_id=0, message="done"))
        assert (await _recv(server)).id == 1


@pytest.mark.asyncio
async def test_unknown_response_is_ignored():
    async with _running() as (dispatch, server, _task):
        staged, _ = await _issue(dispatch, server)
        for request_id, body in [(42, "stray"), (0, "mine")]:
            await server.send(Response(request_id=request_id, message=body))
        response = await asyncio.wait_for(staged.response_completion, 1.0)
        assert response.message == "mine"


@pytest.mark.asyncio
async def test_run_twice_is_rejected():
    dispatch, _server = _set_up()
    dispatch.close()
    await asyncio.wait_for(dispatch.run(), 1.0)
    with pytest.raises(RuntimeError):
        await dispatch.run()


def test_error_messages():
    assert str(Disconnected()) == "the client disconnected from the server"
    assert str(DeadlineExceeded()) == "the request exceeded its deadline"
    error = ServerError(ErrorKind.OTHER, "throttled")
    aborted = ServerAborted(error)
    assert str(aborted) == "the server aborted request processing"
    assert aborted.error == error
    assert aborted.__cause__ is error