"""Naming rules and checks for service definitions.

A service is declared as a class whose ``async def`` methods are its RPCs.
This module validates such a declaration and derives the names that the
service machinery builds from it.
"""

from __future__ import annotations

import inspect
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

__all__ = [
    "ServiceDefinitionError",
    "RpcMethod",
    "snake_to_camel",
    "parse_derive_serde",
    "parse_methods",
]

_RESERVED_CLIENT_NAME = "new"
_RESERVED_SERVER_NAME = "serve"
_NO_ANNOTATION = object()


class ServiceDefinitionError(Exception):
    """A service declaration is invalid; holds every problem that was found."""

    def __init__(self, messages: Iterable[str]) -> None:
        self.messages: tuple[str, ...] = tuple(messages)
        if not self.messages:
            raise ValueError("a service definition error needs at least one message")
        super().__init__("; ".join(self.messages))


def snake_to_camel(ident_str: str) -> str:
    """Convert a snake_case identifier to CamelCase.

    Underscores are dropped; the character after each run of underscores is
    upper-cased and every other character is lower-cased.
    """
    parts: list[str] = []
    last_char_was_underscore = True
    for char in ident_str:
        if char == "_":
            last_char_was_underscore = True
        elif last_char_was_underscore:
            parts.append(char.upper())
            last_char_was_underscore = False
        else:
            parts.append(char.lower())
    return "".join(parts)


@dataclass(frozen=True)
class RpcMethod:
    """One RPC of a service: its name, argument names and return annotation."""

    name: str
    args: tuple[str, ...] = ()
    returns: Any = None
    doc: str | None = None

    @property
    def camel_case_name(self) -> str:
        """The method name in CamelCase, used for request and response variants."""
        return snake_to_camel(self.name)

    @property
    def future_type_name(self) -> str:
        """The name of the response future associated with this RPC."""
        return self.camel_case_name + "Fut"


def parse_derive_serde(
    items: Mapping[str, Any] | Iterable[tuple[str, Any]] = (),
    serde_enabled: bool = False,
) -> bool:
    """Decide whether a service's messages should be made serializable.

    ``items`` are the name/value options given to the service declaration.
    The only option understood is ``derive_serde``, a bool, given at most
    once; ``True`` is allowed only when ``serde_enabled``. Without the option
    the answer is ``serde_enabled``. All problems are reported together.
    """
    pairs = items.items() if isinstance(items, Mapping) else items
    errors: list[str] = []
    choice: bool | None = None
    occurrences = 0
    for name, value in pairs:
        if name != "derive_serde":
            errors.append(f"service does not support this meta item: `{name}`")
            continue
        if value is True:
            if serde_enabled:
                choice = True
            else:
                errors.append("to derive serialization, first enable serde support")
        elif value is False:
            choice = False
        else:
            errors.append("`derive_serde` expects a value of type `bool`")
        occurrences += 1
    if occurrences > 1:
        errors.extend(
            f"`derive_serde` appears more than once (occurrence #{number})"
            for number in range(1, occurrences + 1)
        )
    if errors:
        raise ServiceDefinitionError(errors)
    return serde_enabled if choice is None else choice


def _normalise_return(annotation: Any) -> Any:
    if annotation is _NO_ANNOTATION or annotation is None or annotation == "None":
        return None
    return annotation


def _parameters(function: Any) -> tuple[int, list[tuple[str, bool]]]:
    """Return the positional count and every parameter as (name, is_variadic)."""
    code = function.__code__
    names = code.co_varnames
    positional = code.co_argcount
    keyword_only = code.co_kwonlyargcount
    index = positional + keyword_only
    params: list[tuple[str, bool]] = [(name, False) for name in names[:positional]]
    if code.co_flags & inspect.CO_VARARGS:
        params.append((names[index], True))
        index += 1
    params.extend((name, False) for name in names[positional : positional + keyword_only])
    if code.co_flags & inspect.CO_VARKEYWORDS:
        params.append((names[index], True))
    return positional, params


def _parse_method(name: str, function: Any, errors: list[str]) -> RpcMethod | None:
    if not inspect.iscoroutinefunction(function):
        errors.append(f"`{name}` is not async; RPC methods must be declared with `async def`")
        return None
    target = inspect.unwrap(function)
    positional, parameters = _parameters(target)
    if positional == 0:
        errors.append(f"`{name}` must take `self` as its first parameter")
        return None
    args: list[str] = []
    method_ok = True
    for parameter_name, variadic in parameters[1:]:
        if variadic:
            errors.append(
                f"variadic parameter `{parameter_name}` of `{name}` isn't allowed in RPC args"
            )
            method_ok = False
        else:
            args.append(parameter_name)
    if not method_ok:
        return None
    annotations = getattr(target, "__annotations__", None) or {}
    return RpcMethod(
        name=name,
        args=tuple(args),
        returns=_normalise_return(annotations.get("return", _NO_ANNOTATION)),
        doc=inspect.getdoc(function),
    )


def parse_methods(cls: type) -> list[RpcMethod]:
    """Collect the RPC methods declared directly on ``cls``, in declaration order.

    Every function defined on the class is an RPC and must be ``async def``
    with ``self`` first and no variadic parameters. The names ``new`` and
    ``serve`` are reserved. All problems are reported together in one
    :class:`ServiceDefinitionError`.
    """
    service_name = cls.__name__
    errors: list[str] = []
    methods: list[RpcMethod] = []
    for name, member in vars(cls).items():
        if name.startswith("__") and name.endswith("__"):
            continue
        if isinstance(member, (staticmethod, classmethod)):
            errors.append(f"`{name}` must be a plain method that takes `self`")
            continue
        if not inspect.isfunction(member):
            continue
        if name == _RESERVED_CLIENT_NAME:
            errors.append(
                f"method name conflicts with generated fn `{service_name}Client.new`"
            )
        if name == _RESERVED_SERVER_NAME:
            errors.append(f"method name conflicts with generated fn `{service_name}.serve`")
        method = _parse_method(name, member, errors)
        if method is not None:
            methods.append(method)
    if errors:
        raise ServiceDefinitionError(errors)
    return methods