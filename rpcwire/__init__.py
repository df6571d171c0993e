"""Client side of an asyncio RPC framework: contexts, messages, dispatch and channels."""

__version__ = "0.1.0"

__all__ = [
    "client",
    "context",
    "dispatch",
    "in_flight_requests",
    "messages",
    "naming",
]