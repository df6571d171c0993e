"""Bookkeeping for requests written to the wire that await a response."""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from rpcwire.context import Context
from rpcwire.messages import Response

__all__ = ["DeadlineExceededError", "AlreadyExistsError", "InFlightRequests"]

_log = logging.getLogger(__name__)


class DeadlineExceededError(Exception):
    """The request exceeded its deadline."""

    def __init__(self) -> None:
        super().__init__("the request exceeded its deadline")


class AlreadyExistsError(Exception):
    """A request with the same ID is already in flight."""

    def __init__(self, request_id: int) -> None:
        super().__init__(f"request {request_id} is already in flight")
        self.request_id = request_id


class _Completion(Protocol):
    def done(self) -> bool: ...

    def set_result(self, result: Any) -> None: ...

    def set_exception(self, exception: BaseException) -> None: ...


@dataclass
class _RequestData:
    ctx: Context
    completion: _Completion
    seq: int


class InFlightRequests:
    """Requests already sent that have not yet received responses.

    Each request carries a completion (a future) that is resolved with the
    :class:`Response`, or failed with :class:`DeadlineExceededError` once the
    request's deadline passes.
    """

    def __init__(self) -> None:
        self._data: dict[int, _RequestData] = {}
        self._deadlines: list[tuple[datetime, int, int]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._data

    def __repr__(self) -> str:
        return f"InFlightRequests(in_flight={len(self._data)})"

    def insert_request(
        self, request_id: int, ctx: Context, response_completion: _Completion
    ) -> None:
        """Start tracking a request, unless one with the same ID is in flight."""
        if request_id in self._data:
            raise AlreadyExistsError(request_id)
        seq = next(self._seq)
        self._data[request_id] = _RequestData(ctx, response_completion, seq)
        heapq.heappush(self._deadlines, (ctx.deadline, seq, request_id))
        self._maybe_compact()

    def complete_request(self, response: Response) -> bool:
        """Hand ``response`` to its waiting caller. Return whether it was found."""
        data = self._data.pop(response.request_id, None)
        if data is None:
            # The request was already canceled or expired.
            _log.debug("No in-flight request found for request_id = %s.", response.request_id)
            return False
        _log.info("ReceiveResponse request_id=%s", response.request_id)
        if not data.completion.done():
            data.completion.set_result(response)
        self._maybe_compact()
        return True

    def cancel_request(self, request_id: int) -> Context | None:
        """Stop tracking a request without completing it; return its context if found."""
        data = self._data.pop(request_id, None)
        if data is None:
            return None
        self._maybe_compact()
        return data.ctx

    def next_deadline(self) -> datetime | None:
        """Return the earliest deadline among requests in flight, or None."""
        self._prune_head()
        return self._deadlines[0][0] if self._deadlines else None

    def pop_expired(self, now: datetime | None = None) -> list[int]:
        """Fail every request whose deadline is at or before ``now``.

        Returns the IDs of the expired requests, earliest deadline first.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        expired: list[int] = []
        while True:
            self._prune_head()
            if not self._deadlines or self._deadlines[0][0] > now:
                break
            _, _, request_id = heapq.heappop(self._deadlines)
            data = self._data.pop(request_id)
            _log.error("DeadlineExceeded request_id=%s", request_id)
            if not data.completion.done():
                data.completion.set_exception(DeadlineExceededError())
            expired.append(request_id)
        return expired

    def _is_live(self, entry: tuple[datetime, int, int]) -> bool:
        _, seq, request_id = entry
        data = self._data.get(request_id)
        return data is not None and data.seq == seq

    def _prune_head(self) -> None:
        while self._deadlines and not self._is_live(self._deadlines[0]):
            heapq.heappop(self._deadlines)

    def _maybe_compact(self) -> None:
        if len(self._deadlines) > 2 * len(self._data) + 32:
            self._deadlines = [e for e in self._deadlines if self._is_live(e)]
            heapq.heapify(self._deadlines)