# rpcwire

`rpcwire` is the client side of an asyncio RPC framework. It gives you:

- `rpcwire.context`: request contexts that carry a deadline and trace
  information.
- `rpcwire.messages`: the messages that travel between client and server.
- `rpcwire.dispatch`: a request dispatcher that multiplexes many requests over
  one transport, sends cancellations and enforces deadlines.
- `rpcwire.client`: a channel that callers use to make requests.
- `rpcwire.naming`: helpers for checking a service declaration and naming its
  methods.

It has no dependencies outside the standard library.

## Installation

```
pip install rpcwire
```

## Contexts

`rpcwire.context.Context` is a frozen dataclass with two fields:

- `deadline`, an aware `datetime`. It defaults to `ten_seconds_from_now()`.
- `trace_context`, a `TraceContext`. It holds a 128-bit `trace_id`, a 64-bit
  `span_id` and a `sampled` flag.

`Context.trace_id()` returns the trace ID. `TraceContext.new_child()` returns a
context in the same trace with a fresh span ID.

`context.current()` returns the context made active by `context.scope(ctx)`. If
no context is active, it returns a new default one.

```python
from rpcwire import context

with context.scope(context.Context()) as ctx:
    assert context.current() is ctx
```

## Messages

These types live in `rpcwire.messages`.

- `Request(context, id, message)` is a request from the client.
  `Request.deadline()` returns `context.deadline`.
- `Cancel(request_id, trace_context)` asks the server to drop a request.
- `Response(request_id, message=None, error=None)` is the server's answer. It
  holds either a message or a `ServerError`, never both. `Response.unwrap()`
  returns the message or raises the error.
- `ServerError(kind, detail)` is an exception. Its `kind` is an `ErrorKind`, and
  it formats as `"<kind>: <detail>"`.

## Making calls

`client.new(config, transport)` returns a `NewClient` that holds a `Channel`
and its `RequestDispatch`. Call `NewClient.spawn()` inside a running event
loop. It starts the dispatcher as a background task and returns the channel.

`Channel.call(ctx, request_name, request)` sends `request` and returns the body
of the response. The call raises these errors:

- `rpcwire.dispatch.Disconnected` when dispatch has ended or the channel is
  closed.
- `rpcwire.dispatch.DeadlineExceeded` when the context's deadline passes before
  a response arrives.
- `rpcwire.dispatch.ServerAborted` when the response carries a `ServerError`.
  The original error is in `.error`.

If the task awaiting `call` is cancelled, the dispatcher still handles the
request. It skips a request that has not been written yet. For a request
already on the wire, it sends a `Cancel` to the server.

`Channel.close()` stops new requests. The dispatcher then closes the write side
of the transport and ends once every in-flight request is settled.

`rpcwire.dispatch.Transport.pair()` returns two connected in-memory transports.
The example below uses them and a small hand-written responder:

```python
import asyncio

from rpcwire import client, context
from rpcwire.dispatch import Config, Transport
from rpcwire.messages import Request, Response


async def responder(transport):
    while (message := await transport.receive()) is not None:
        if isinstance(message, Request):
            await transport.send(
                Response(request_id=message.id, message=f"Hello, {message.message}!")
            )


async def main():
    client_end, server_end = Transport.pair()
    responder_task = asyncio.create_task(responder(server_end))
    channel = client.new(Config(), client_end).spawn()
    print(await channel.call(context.current(), "World.hello", "Stim"))
    channel.close()
    await responder_task


asyncio.run(main())
```

### Transports

A transport is any object with three coroutine methods:

- `send(message)` writes a message to the other end.
- `receive()` returns the next message, or `None` once the peer has closed.
- `close()` closes the sending side.

If the transport raises, dispatch ends with `rpcwire.dispatch.ChannelError`.
Its `operation` says whether a read, write or close failed, and `source` holds
the original exception.

### Configuration

`rpcwire.dispatch.Config` has two settings:

| Setting | Default | Meaning |
|---|---|---|
| `max_in_flight_requests` | 1000 | How many requests may wait for responses at once. |
| `pending_request_buffer` | 100 | How many requests may be staged before being written. |

## Service declarations

`rpcwire.naming` checks classes whose `async def` methods declare RPCs.

`parse_methods(cls)` returns one `RpcMethod` for each method, in declaration
order. An `RpcMethod` holds the method's name, argument names, return
annotation and docstring. It also has a `camel_case_name` and a
`future_type_name`.

`parse_methods` rejects declarations that break these rules:

- Every method must be async.
- Every method must take `self` first.
- A method may not have variadic parameters.
- A method may not be named `new` or `serve`.

It reports every problem at once in a single `ServiceDefinitionError`.

`snake_to_camel("abc_def")` returns `"AbcDef"`.

`parse_derive_serde(items, serde_enabled)` validates a `derive_serde` option.

## What this package does not do

- It has no server. Nothing reads `Request` messages and calls a service
  implementation for you. The other end of a transport must be written by hand,
  as in the example above.
- It generates no client stubs or request and response types from a service
  declaration. `rpcwire.naming` only checks a declaration and names its methods.
- It has no network transports and no serialization. The only transport it
  provides is the in-memory `Transport.pair()`.
- It has no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```