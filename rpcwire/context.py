"""Request-scoped context carrying a deadline and trace information.

A context travels from client to server with every request. The server uses
its deadline to stop work that the client no longer waits for, and its trace
context to tie related requests together across services.
"""

from __future__ import annotations

import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

__all__ = ["TraceContext", "Context", "ten_seconds_from_now", "current", "scope"]

_DEFAULT_TIMEOUT = timedelta(seconds=10)


def _new_trace_id() -> int:
    return secrets.randbits(128) or 1


def _new_span_id() -> int:
    return secrets.randbits(64) or 1


@dataclass(frozen=True)
class TraceContext:
    """Identifies a request within a chain of causally related actions."""

    trace_id: int = field(default_factory=_new_trace_id)
    span_id: int = field(default_factory=_new_span_id)
    sampled: bool = False

    def new_child(self) -> TraceContext:
        """Return a context in the same trace with a fresh span ID."""
        span_id = _new_span_id()
        while span_id == self.span_id:
            span_id = _new_span_id()
        return replace(self, span_id=span_id)


def ten_seconds_from_now() -> datetime:
    """Return the default deadline: ten seconds after the current time."""
    return datetime.now(timezone.utc) + _DEFAULT_TIMEOUT


@dataclass(frozen=True)
class Context:
    """Request-scoped information sent from client to server.

    The server should cancel the request if it is not complete by ``deadline``.
    """

    deadline: datetime = field(default_factory=ten_seconds_from_now)
    trace_context: TraceContext = field(default_factory=TraceContext)

    def trace_id(self) -> int:
        """Return the ID of the request-scoped trace."""
        return self.trace_context.trace_id


_active: ContextVar[Context | None] = ContextVar("rpcwire_active_context", default=None)


def current() -> Context:
    """Return the context of the request being handled, or a fresh default one."""
    active = _active.get()
    return active if active is not None else Context()


@contextmanager
def scope(ctx: Context) -> Iterator[Context]:
    """Make ``ctx`` the current context for the duration of the block."""
    token = _active.set(ctx)
    try:
        yield ctx
    finally:
        _active.reset(token)