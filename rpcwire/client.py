"""Client channel that sends multiplexed requests through request dispatch."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from rpcwire.context import Context
from rpcwire.dispatch import (
    Config,
    DeadlineExceeded,
    DispatchRequest,
    RequestDispatch,
    ServerAborted,
)
from rpcwire.in_flight_requests import DeadlineExceededError
from rpcwire.messages import ServerError

__all__ = ["Channel", "NewClient", "new"]

_log = logging.getLogger(__name__)


class Channel:
    """Hands requests to request dispatch and waits for their responses.

    A channel may be shared freely; request IDs are unique across all of its
    users.
    """

    def __init__(self, dispatch: RequestDispatch) -> None:
        self._dispatch = dispatch
        self._ids = itertools.count()

    def __repr__(self) -> str:
        return f"Channel({self._dispatch!r})"

    async def call(self, ctx: Context, request_name: str, request: Any) -> Any:
        """Send ``request`` to the server and return the response body.

        Raises :class:`~rpcwire.dispatch.Disconnected`,
        :class:`~rpcwire.dispatch.DeadlineExceeded` or
        :class:`~rpcwire.dispatch.ServerAborted`. If the awaiting task is
        cancelled, the server is told to cancel the request.
        """
        ctx = replace(ctx, trace_context=ctx.trace_context.new_child())
        request_id = next(self._ids)
        completion = asyncio.get_running_loop().create_future()
        staged = DispatchRequest(
            ctx=ctx,
            request_id=request_id,
            request=request,
            response_completion=completion,
        )
        _log.debug(
            "RPC %s request_id=%s trace_id=%032x", request_name, request_id, ctx.trace_id()
        )
        try:
            await self._dispatch.submit(staged)
            response = await completion
        except asyncio.CancelledError:
            # Mark the completion done first so dispatch skips a request it
            # has not yet written, then ask it to cancel one already written.
            completion.cancel()
            self._dispatch.cancel(request_id)
            raise
        except DeadlineExceededError:
            raise DeadlineExceeded() from None
        try:
            return response.unwrap()
        except ServerError as exc:
            raise ServerAborted(exc) from exc

    def close(self) -> None:
        """Send no more requests; dispatch ends once pending responses arrive."""
        self._dispatch.close()


async def _drive(dispatch: RequestDispatch) -> None:
    try:
        await dispatch.run()
    except Exception as exc:
        _log.warning("Connection broken: %r", exc)


@dataclass
class NewClient:
    """A client and the dispatch that must run for the client to work."""

    client: Channel
    dispatch: RequestDispatch
    task: asyncio.Task | None = field(default=None, init=False, repr=False)

    def spawn(self) -> Channel:
        """Run the dispatch in a background task and return the client."""
        if self.task is not None:
            raise RuntimeError("request dispatch has already been spawned")
        self.task = asyncio.get_running_loop().create_task(_drive(self.dispatch))
        return self.client


def new(config: Config | None, transport: Any) -> NewClient:
    """Return a channel and the dispatch that manages its requests over ``transport``."""
    dispatch = RequestDispatch(transport, config if config is not None else Config())
    return NewClient(client=Channel(dispatch), dispatch=dispatch)