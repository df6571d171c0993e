"""Messages exchanged between client and server."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar, Union

from rpcwire.context import Context, TraceContext

__all__ = [
    "ErrorKind",
    "ServerError",
    "Request",
    "Cancel",
    "ClientMessage",
    "Response",
]

T = TypeVar("T")


class ErrorKind(enum.Enum):
    """The category of an error that failed a request."""

    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    CONNECTION_REFUSED = "ConnectionRefused"
    CONNECTION_RESET = "ConnectionReset"
    CONNECTION_ABORTED = "ConnectionAborted"
    NOT_CONNECTED = "NotConnected"
    ADDR_IN_USE = "AddrInUse"
    ADDR_NOT_AVAILABLE = "AddrNotAvailable"
    BROKEN_PIPE = "BrokenPipe"
    ALREADY_EXISTS = "AlreadyExists"
    WOULD_BLOCK = "WouldBlock"
    INVALID_INPUT = "InvalidInput"
    INVALID_DATA = "InvalidData"
    TIMED_OUT = "TimedOut"
    WRITE_ZERO = "WriteZero"
    INTERRUPTED = "Interrupted"
    UNEXPECTED_EOF = "UnexpectedEof"
    OTHER = "Other"

    def __str__(self) -> str:
        return self.value


class ServerError(Exception):
    """The server aborted the request early, e.g. because of throttling."""

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(kind, detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"

    def __repr__(self) -> str:
        return f"ServerError(kind={self.kind!r}, detail={self.detail!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServerError):
            return NotImplemented
        return (self.kind, self.detail) == (other.kind, other.detail)

    def __hash__(self) -> int:
        return hash((self.kind, self.detail))


@dataclass(frozen=True)
class Request(Generic[T]):
    """A request from a client to a server."""

    context: Context
    id: int
    message: T

    def deadline(self) -> datetime:
        """Return the deadline for this request."""
        return self.context.deadline


@dataclass(frozen=True)
class Cancel:
    """A command to cancel an in-flight request, sent when a caller gives up."""

    request_id: int
    trace_context: TraceContext = field(default_factory=TraceContext)


ClientMessage = Union[Request, Cancel]


@dataclass(frozen=True)
class Response(Generic[T]):
    """A response from a server to a client: a message body or an error."""

    request_id: int
    message: T | None = None
    error: ServerError | None = None

    def __post_init__(self) -> None:
        if self.error is not None and self.message is not None:
            raise ValueError("a response carries either a message or an error, not both")

    def unwrap(self) -> T | None:
        """Return the message body, or raise the server's error."""
        if self.error is not None:
            raise self.error
        return self.message