# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from functools import wraps
from sys import stderr
from traceback import print_exc
from typing import Any, Optional, TypeVar

from google.protobuf.message import Message
from google.protobuf.text_format import MessageToString
from grpc import StatusCode  # type: ignore
from grpc.aio import AbortError, ServicerContext  # type: ignore
from mypy_extensions import Arg

from kube_listener.shared.config import (
    LISTENER_CLASS_KEY,
    LISTENER_CLASS_KIND,
    LISTENER_NAME_KEY,
)
from kube_listener.shared.kubernetes import (
    Client,
    ObjectNotFound,
    ObjectRef,
    ObjectStoreError,
)
from kube_listener.shared.listeners import InvalidListenerClass, ListenerClass
from kube_listener.shared.util import error_full_message, log

# ---------------------------------------------------------------------------- #


class CsiError(Exception):
    """An error that is reported to the CSI caller with the given status
    code, and a message made of the error and all of its causes."""

    code: StatusCode = StatusCode.INTERNAL


class InvalidArgument(CsiError):
    code = StatusCode.INVALID_ARGUMENT


class Unavailable(CsiError):
    code = StatusCode.UNAVAILABLE


class FailedPrecondition(CsiError):
    code = StatusCode.FAILED_PRECONDITION


class Internal(CsiError):
    code = StatusCode.INTERNAL


T = TypeVar("T")


async def fetch(
    awaitable: Awaitable[T], *, not_found: type[CsiError] = Unavailable
) -> T:
    """Await an object store operation, turning its failure into a CSI error:
    `not_found` if the object does not exist, `Unavailable` otherwise."""

    try:
        return await awaitable
    except ObjectNotFound as e:
        raise not_found(f"{e.ref} does not exist") from None
    except ObjectStoreError as e:
        raise Unavailable(str(e)) from e.__cause__


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ListenerSelector:
    """Either the name of a Listener, or the name of a ListenerClass for which
    a Listener is created on demand. Exactly one of the two is set."""

    listener_name: Optional[str] = None
    class_name: Optional[str] = None

    @staticmethod
    def from_volume_context(context: Mapping[str, str]) -> ListenerSelector:

        listener_name = context.get(LISTENER_NAME_KEY) or None
        class_name = context.get(LISTENER_CLASS_KEY) or None

        if (listener_name is None) == (class_name is None):
            raise InvalidArgument(
                f"exactly one of {LISTENER_NAME_KEY!r} and"
                f" {LISTENER_CLASS_KEY!r} must be specified"
            )

        return ListenerSelector(
            listener_name=listener_name, class_name=class_name
        )


async def get_listener_class(client: Client, name: str) -> ListenerClass:
    """Fetch and parse a ListenerClass. A class that does not exist or is
    invalid is an `InvalidArgument`."""

    obj = await fetch(
        client.get(ObjectRef(LISTENER_CLASS_KIND, name)),
        not_found=InvalidArgument,
    )

    try:
        return ListenerClass.from_obj(obj)
    except InvalidListenerClass as e:
        raise InvalidArgument(f"ListenerClass {name} is invalid") from e


def require(parameters: Mapping[str, str], key: str) -> str:

    value = parameters.get(key)

    if not value:
        raise InvalidArgument(f"missing required parameter {key!r}")

    return value


# ---------------------------------------------------------------------------- #

_Servicer = TypeVar("_Servicer", contravariant=True)
_Request = TypeVar("_Request", bound=Message, contravariant=True)
_Response = TypeVar("_Response", bound=Message, covariant=True)

_Rpc = Callable[
    [
        Arg(_Servicer, "self"),
        Arg(_Request, "request"),
        Arg(ServicerContext, "context"),
    ],
    Coroutine[Any, Any, _Response],
]

_call_seqnum = 0


def log_grpc(
    method: _Rpc[_Servicer, _Request, _Response]
) -> _Rpc[_Servicer, _Request, _Response]:
    @wraps(method)
    async def wrapped(
        self: _Servicer, request: _Request, context: ServicerContext
    ) -> _Response:

        global _call_seqnum
        seqnum = _call_seqnum
        _call_seqnum += 1

        header = f"{seqnum}: {type(self).__name__}.{method.__name__}()"

        log(f"entering {header} <-- {_msg_to_str(request)}")

        try:
            response = await method(self, request, context)
        except AbortError:
            log(f"\033[31mexited   {header} --> aborted\033[0m")
            raise
        except CancelledError:
            log(f"\033[31mexited   {header} --> canceled\033[0m")
            raise
        except Exception:
            log(f"\033[31mexited   {header} --> unhandled exception:")
            print_exc()
            print("\033[0m", end="", file=stderr, flush=True)
            raise
        else:
            log(f"\033[32mexited   {header} --> {_msg_to_str(response)}\033[0m")
            return response

    return wrapped


def abort_on_csi_error(
    method: _Rpc[_Servicer, _Request, _Response]
) -> _Rpc[_Servicer, _Request, _Response]:
    """Abort the RPC with the status code of any `CsiError` that the method
    raises. Must be applied below `log_grpc`."""

    @wraps(method)
    async def wrapped(
        self: _Servicer, request: _Request, context: ServicerContext
    ) -> _Response:

        try:
            return await method(self, request, context)
        except CsiError as e:
            log(f"\033[31m{e.code.name}: {error_full_message(e)}\033[0m")
            await context.abort(code=e.code, details=error_full_message(e))
            raise  # unreachable, abort() always raises

    return wrapped


def _msg_to_str(message: Message) -> str:

    string = MessageToString(
        message, as_utf8=True, as_one_line=True, print_unknown_fields=True
    )

    bracketed_string = f"{{ {string} }}" if string else "{ }"

    return f"{type(message).__name__} {bracketed_string}"


# ---------------------------------------------------------------------------- #
